"""
arq job: retry a pending upload after its connection recovered.

Tries and backoff come from settings (3 tries, 30/60/120 s). A deferral
because the connection is still unhealthy is rescheduled with ``Retry``;
when the tries are used up the upload goes back to the sweep instead of
failing. Other errors are recorded on the upload and retried, and the last
one triggers the permanent failure hook.
"""

from datetime import timedelta
from typing import Any, Dict

import structlog
from arq import Retry

from ..services.upload_recovery import UploadRetryDeferred
from ..utils.clock import utc_now
from ..utils.logging import clear_job_context, set_job_context
from .queue import PENDING_UPLOAD_RETRY_JOB, UploadRetryPayload

logger = structlog.get_logger(__name__)


def backoff_for(backoff: list, job_try: int) -> int:
    return backoff[min(job_try, len(backoff)) - 1]


async def pending_upload_retry_job(ctx: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    job = UploadRetryPayload.model_validate(payload)
    app = ctx["app"]
    settings = app.settings
    job_try = ctx.get("job_try", 1)
    set_job_context(
        job_id=ctx.get("job_id"),
        job_name=PENDING_UPLOAD_RETRY_JOB,
        attempt=job_try,
        upload_id=job.upload_id,
        provider=job.provider,
    )
    try:
        logger.info("Pending upload retry job started", tags=job.tags)
        if utc_now() > job.retry_until:
            logger.warning("Upload retry job past its deadline, returning upload to the sweep")
            await app.recovery.postpone(job.upload_id, settings.upload_unhealthy_defer_seconds)
            return {"status": "expired", "upload_id": job.upload_id}

        try:
            decision = await app.recovery.process(job.upload_id, job.provider)
        except UploadRetryDeferred as e:
            can_retry = job_try < settings.upload_retry_job_max_tries and (
                utc_now() + timedelta(seconds=e.defer_seconds) < job.retry_until
            )
            if can_retry:
                raise Retry(defer=e.defer_seconds) from e
            await app.recovery.postpone(job.upload_id, e.defer_seconds)
            return {"status": "deferred", "upload_id": job.upload_id}
        except Exception as e:
            logger.error("Pending upload retry job error", error=str(e), exc_info=True)
            try:
                await app.recovery.record_retry_job_error(job.upload_id, e, job_try)
            except Exception as record_error:
                logger.error("Failed to record retry job error", error=str(record_error))

            if job_try < settings.upload_retry_job_max_tries:
                raise Retry(defer=backoff_for(settings.upload_retry_backoff_seconds, job_try)) from e

            await app.recovery.handle_permanent_failure(job.upload_id, job.provider, e, job_try)
            return {"status": "failed", "upload_id": job.upload_id, "error": str(e)}

        return decision.to_dict()
    finally:
        clear_job_context()
