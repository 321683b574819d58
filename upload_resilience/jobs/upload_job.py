"""arq job: transfer one upload to its cloud provider."""

from typing import Any, Dict

import structlog

from ..utils.logging import clear_job_context, set_job_context
from .queue import UPLOAD_TO_PROVIDER_JOB, UploadPayload

logger = structlog.get_logger(__name__)


async def upload_to_provider_job(ctx: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    job = UploadPayload.model_validate(payload)
    set_job_context(
        job_id=ctx.get("job_id"),
        job_name=UPLOAD_TO_PROVIDER_JOB,
        attempt=ctx.get("job_try", 1),
        upload_id=job.upload_id,
        provider=job.provider,
    )
    try:
        logger.info("Upload job started", tags=job.tags)
        result = await ctx["app"].transfer.transfer(job.upload_id)
        return result.to_dict()
    finally:
        clear_job_context()
