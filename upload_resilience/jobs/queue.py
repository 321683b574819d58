"""
Job queue facade over arq.

Services enqueue through the narrow ``JobQueue`` protocol; ``ArqJobQueue``
maps priority lanes to arq queue names and payload models to plain dicts.
Payload models are validated again in the worker with ``model_validate``.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

import structlog
from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field

from ..config import Settings

logger = structlog.get_logger(__name__)

REFRESH_TOKEN_JOB = "refresh_token_job"
UPLOAD_TO_PROVIDER_JOB = "upload_to_provider_job"
PENDING_UPLOAD_RETRY_JOB = "pending_upload_retry_job"
MAINTENANCE_SWEEP_JOB = "maintenance_sweep_job"


class Lane(str, Enum):
    HIGH = "high"
    MAINTENANCE = "maintenance"
    DEFAULT = "default"


class RefreshTokenPayload(BaseModel):
    user_id: uuid.UUID
    provider: str
    reason: str = Field(default="proactive", description="immediate, proactive or retry")
    attempt: int = Field(default=1, ge=1, description="Refresh attempt number")
    retry_until: datetime
    refresh_window_minutes: Optional[int] = Field(
        default=None, ge=1, description="Expiry window overriding the proactive default"
    )
    tags: List[str] = Field(default_factory=list)


class UploadPayload(BaseModel):
    upload_id: int
    provider: str
    tags: List[str] = Field(default_factory=list)


class UploadRetryPayload(BaseModel):
    upload_id: int
    provider: str
    retry_until: datetime
    tags: List[str] = Field(default_factory=list)


def refresh_job_id(user_id: uuid.UUID, provider: str, attempt: int = 1) -> str:
    base = f"token_refresh_{user_id}_{provider}"
    return base if attempt <= 1 else f"{base}_retry{attempt}"


def upload_retry_job_id(upload_id: int, provider: str) -> str:
    return f"pending_upload_retry_{upload_id}_{provider}"


class JobQueue(Protocol):
    async def enqueue(
        self,
        function: str,
        payload: BaseModel,
        *,
        lane: Lane,
        job_id: Optional[str] = None,
        defer_seconds: float = 0,
    ) -> Optional[str]:
        """Enqueue a job; returns None when ``job_id`` is already queued."""
        ...


class ArqJobQueue:
    """``JobQueue`` backed by an arq Redis pool."""

    def __init__(self, redis: ArqRedis, settings: Settings):
        self.redis = redis
        self.settings = settings

    @classmethod
    async def connect(cls, settings: Settings) -> "ArqJobQueue":
        redis = await create_pool(
            RedisSettings.from_dsn(settings.redis_url),
            default_queue_name=settings.queue_default_name,
        )
        return cls(redis, settings)

    def queue_name(self, lane: Lane) -> str:
        return {
            Lane.HIGH: self.settings.queue_high_name,
            Lane.MAINTENANCE: self.settings.queue_maintenance_name,
            Lane.DEFAULT: self.settings.queue_default_name,
        }[lane]

    async def enqueue(
        self,
        function: str,
        payload: BaseModel,
        *,
        lane: Lane,
        job_id: Optional[str] = None,
        defer_seconds: float = 0,
    ) -> Optional[str]:
        job = await self.redis.enqueue_job(
            function,
            payload.model_dump(mode="json"),
            _job_id=job_id,
            _queue_name=self.queue_name(lane),
            _defer_by=defer_seconds or None,
        )
        if job is None:
            logger.debug("Job already queued", function=function, job_id=job_id)
            return None
        logger.debug(
            "Job enqueued",
            function=function,
            job_id=job.job_id,
            lane=lane.value,
            defer_seconds=defer_seconds,
        )
        return job.job_id

    async def close(self) -> None:
        await self.redis.aclose()
