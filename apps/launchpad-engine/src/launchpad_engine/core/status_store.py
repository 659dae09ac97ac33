"""Durable job status store with TTL."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from launchpad_engine.core.config import settings
from launchpad_engine.core.status import JobState, JobStatus, StatusEvent, apply
from launchpad_engine.models.status import JobStatusRecord

logger = logging.getLogger(__name__)


class JobStatusStore:
    """Key-value store of job status records keyed by job id."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        ttl_seconds: Optional[int] = None,
    ):
        if session_maker is None:
            from launchpad_engine.core.database import async_session_maker
            session_maker = async_session_maker
        self._session_maker = session_maker
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.STATUS_TTL_SECONDS)

    async def get(self, job_id: str) -> Optional[JobStatus]:
        """Fetch a job's status, or None if unknown or expired."""
        async with self._session_maker() as db:
            record = await self._load(db, job_id)
            return self._to_status(record) if record else None

    async def record(self, job_id: str, event: StatusEvent) -> JobStatus:
        """Apply a status event to the stored record and persist the result.

        Every write refreshes the TTL.
        """
        async with self._session_maker() as db:
            record = await self._load(db, job_id)
            current = self._to_status(record) if record else None
            updated = apply(current, event, job_id=job_id)

            now = datetime.utcnow()
            if record is None:
                # Replace any expired leftover under the same key
                await db.execute(delete(JobStatusRecord).where(JobStatusRecord.job_id == job_id))
                record = JobStatusRecord(job_id=job_id)
                db.add(record)

            record.status = updated.status.value
            record.started_at = updated.started_at
            record.finished_at = updated.finished_at
            record.artifact_path = updated.artifact_path
            record.error = updated.error
            record.updated_at = now
            record.expires_at = now + self.ttl
            await db.commit()

        logger.info("Job %s status -> %s", job_id, updated.status.value)
        return updated

    async def purge_expired(self) -> int:
        """Delete expired records. Returns the number removed."""
        async with self._session_maker() as db:
            result = await db.execute(
                delete(JobStatusRecord).where(JobStatusRecord.expires_at <= datetime.utcnow())
            )
            await db.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d expired job status records", removed)
        return removed

    async def _load(self, db: AsyncSession, job_id: str) -> Optional[JobStatusRecord]:
        result = await db.execute(
            select(JobStatusRecord)
            .where(JobStatusRecord.job_id == job_id)
            .where(JobStatusRecord.expires_at > datetime.utcnow())
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_status(record: JobStatusRecord) -> JobStatus:
        return JobStatus(
            job_id=record.job_id,
            status=JobState(record.status),
            started_at=record.started_at,
            finished_at=record.finished_at,
            artifact_path=record.artifact_path,
            error=record.error,
        )
