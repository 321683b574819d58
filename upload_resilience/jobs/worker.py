"""
arq worker settings, one class per lane.

    arq upload_resilience.jobs.worker.HighWorkerSettings
    arq upload_resilience.jobs.worker.MaintenanceWorkerSettings
    arq upload_resilience.jobs.worker.DefaultWorkerSettings

Every worker registers every job function so a job runs whichever lane it
was enqueued on. The maintenance worker also runs the maintenance sweep cron.
"""

from typing import Any, Dict

from arq import cron, func
from arq.connections import RedisSettings

from ..app import create_app, shutdown_app
from ..config import get_settings
from .queue import MAINTENANCE_SWEEP_JOB
from .refresh_token_job import refresh_token_job
from .upload_job import upload_to_provider_job
from .upload_retry_job import pending_upload_retry_job


async def maintenance_sweep_job(ctx: Dict[str, Any]) -> Dict[str, Any]:
    report = await ctx["app"].maintenance.run_once()
    return report.to_dict()


async def _startup(ctx: Dict[str, Any]) -> None:
    ctx["app"] = await create_app()


async def _shutdown(ctx: Dict[str, Any]) -> None:
    app = ctx.get("app")
    if app is not None:
        await shutdown_app(app)


def _functions(settings):
    return [
        func(
            refresh_token_job,
            max_tries=settings.refresh_job_max_tries,
            timeout=settings.refresh_job_timeout_seconds,
        ),
        func(upload_to_provider_job, max_tries=1),
        func(pending_upload_retry_job, max_tries=settings.upload_retry_job_max_tries),
    ]


class _BaseWorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = _functions(settings)
    on_startup = _startup
    on_shutdown = _shutdown
    # Stable job ids must be reusable as soon as a job finishes.
    keep_result = 0


class HighWorkerSettings(_BaseWorkerSettings):
    queue_name = _BaseWorkerSettings.settings.queue_high_name


class MaintenanceWorkerSettings(_BaseWorkerSettings):
    queue_name = _BaseWorkerSettings.settings.queue_maintenance_name
    cron_jobs = [
        cron(
            maintenance_sweep_job,
            name=MAINTENANCE_SWEEP_JOB,
            minute=set(_BaseWorkerSettings.settings.maintenance_cron_minutes),
            unique=True,
            max_tries=1,
        )
    ]


class DefaultWorkerSettings(_BaseWorkerSettings):
    queue_name = _BaseWorkerSettings.settings.queue_default_name
