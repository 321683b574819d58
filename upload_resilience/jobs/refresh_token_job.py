"""arq job: coordinated refresh of one (user, provider) token."""

from datetime import timedelta
from typing import Any, Dict

import structlog
from arq import Retry

from ..utils.clock import utc_now
from ..utils.logging import clear_job_context, set_job_context
from .queue import REFRESH_TOKEN_JOB, RefreshTokenPayload

logger = structlog.get_logger(__name__)


async def refresh_token_job(ctx: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Classified refresh failures are bookkept (and retried) by the renewal
    service and end the job. Only unexpected errors, such as a database
    outage, are retried by arq, until ``max_tries`` or ``retry_until``.
    """
    job = RefreshTokenPayload.model_validate(payload)
    app = ctx["app"]
    job_try = ctx.get("job_try", 1)
    set_job_context(
        job_id=ctx.get("job_id"),
        job_name=REFRESH_TOKEN_JOB,
        attempt=job_try,
        user_id=str(job.user_id),
        provider=job.provider,
    )
    try:
        logger.info("Token refresh job started", reason=job.reason, refresh_attempt=job.attempt, tags=job.tags)
        if utc_now() > job.retry_until:
            logger.warning("Token refresh job past its deadline, abandoning")
            return {"status": "expired"}

        try:
            result = await app.renewal.refresh_token_if_needed(
                job.user_id,
                job.provider,
                attempt=job.attempt,
                window_minutes=job.refresh_window_minutes,
            )
        except Exception as e:
            classified = app.classifier.classify_with_context(e)
            delay = classified.retry_delay(job_try) or 30
            if job_try < app.settings.refresh_job_max_tries and (
                utc_now() + timedelta(seconds=delay) < job.retry_until
            ):
                logger.warning(
                    "Token refresh job error, retrying",
                    error=str(e),
                    error_type=classified.kind.value,
                    defer_seconds=delay,
                )
                raise Retry(defer=delay) from e
            logger.error("Token refresh job failed", error=str(e), exc_info=True)
            return {"status": "error", "error": str(e), "error_type": classified.kind.value}

        return {
            "status": result.outcome.value,
            "message": result.message,
            "error_type": result.error_kind.value if result.error_kind else None,
        }
    finally:
        clear_job_context()
