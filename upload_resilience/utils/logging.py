"""
Structured logging configuration for the upload resilience engine.

One structlog setup shared by the arq workers and tests. Log lines emitted
inside a job carry the job id, attempt, user and provider; credential
fields are masked before rendering.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for job-scoped data
job_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "job_context", default=None
)


class JobContextProcessor:
    """
    Add job context to all log entries.

    Queue workers set the job id, job name, attempt number and the
    (user, provider) pair being processed; every log line emitted while the
    job runs carries those fields.
    """

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        ctx = job_context.get()
        if ctx is not None:
            for key, value in ctx.items():
                event_dict.setdefault(key, value)
        return event_dict


class EnvironmentProcessor:
    """Add app version and environment to log entries."""

    def __init__(self, app_env: str, app_version: str):
        self.app_env = app_env
        self.app_version = app_version

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["env"] = self.app_env
        event_dict["version"] = self.app_version
        return event_dict


SENSITIVE_KEYS = (
    "password",
    "secret",
    "authorization",
    "access_token",
    "refresh_token",
    "credential",
    "fernet_key",
    "ciphertext",
)


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Mask credential material in log entries.

    Token counters such as ``refresh_failure_count`` stay visible; only keys
    naming actual secrets are masked.
    """
    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 8:
                event_dict[key] = f"{value[:4]}...{value[-4:]}"
            elif value is not None:
                event_dict[key] = "***REDACTED***"

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for workers and CLI entry points.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        app_env: Application environment (development, staging, production, test)
        app_version: Application version for tracking
        json_format: Force JSON output (None = auto-detect based on environment)
    """
    if json_format is None:
        json_format = app_env in ["staging", "production"]

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ]
        ),
        JobContextProcessor(),
        EnvironmentProcessor(app_env, app_version),
        filter_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


def set_job_context(**kwargs: Any) -> None:
    """
    Set job-scoped context that will be included in all logs.

    Example:
        set_job_context(job_id="token_refresh_7_google-drive", attempt=2)
    """
    ctx = dict(job_context.get() or {})
    ctx.update(kwargs)
    job_context.set(ctx)


def clear_job_context() -> None:
    """Clear the job context (called when a job finishes)."""
    job_context.set(None)
