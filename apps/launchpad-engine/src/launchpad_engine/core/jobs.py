"""Build queue and worker pool (persistent version)."""

import asyncio
import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from launchpad_engine.core.config import Settings, settings
from launchpad_engine.core.errors import InvalidTransition
from launchpad_engine.core.status import JobStatus, StatusEvent
from launchpad_engine.core.status_store import JobStatusStore
from launchpad_engine.models.job import QueueEntry
from launchpad_engine.services.pipeline import PipelineExecutor, PipelineResult
from launchpad_engine.services.stages import JobParams, Stage

logger = logging.getLogger(__name__)

QUEUE_NAME = "ios-build"
JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{12,64}$")


class QueueState:
    """Queue entry states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (WAITING, ACTIVE, COMPLETED, FAILED)


def new_job_id() -> str:
    """Generate a URL-safe job id with 72 bits of entropy (12 characters)."""
    return secrets.token_urlsafe(9)


class JobManager:
    """Queues build requests and runs them on a bounded pool of workers.

    Each worker claims one entry with an atomic conditional update, which
    acts as the job's execution lock until the pipeline finishes. The lock
    is renewed while the build runs.
    """

    _instance: Optional["JobManager"] = None

    def __init__(
        self,
        config: Optional[Settings] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        pipeline: Optional[PipelineExecutor] = None,
        status_store: Optional[JobStatusStore] = None,
    ):
        self.config = config or settings
        if session_maker is None:
            from launchpad_engine.core.database import async_session_maker
            session_maker = async_session_maker
        self._session_maker = session_maker
        self.pipeline = pipeline or PipelineExecutor(self.config)
        self.status_store = status_store or JobStatusStore(session_maker, self.config.STATUS_TTL_SECONDS)
        self._running = False
        self._workers: list[asyncio.Task] = []
        self._max_workers = max(1, self.config.WORKER_CONCURRENCY)
        self._lock_duration = timedelta(seconds=self.config.LOCK_DURATION_SECONDS)

    @classmethod
    def get_instance(cls) -> "JobManager":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return

        self._running = True

        await self.recover_stale_jobs()
        await self.status_store.purge_expired()

        for i in range(self._max_workers):
            worker = asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:6]}"))
            self._workers.append(worker)

        logger.info("Build job manager started with %d workers", self._max_workers)

    async def stop(self) -> None:
        """Stop the worker pool."""
        self._running = False
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Build job manager stopped")

    async def submit(
        self,
        project_path: str,
        version: str,
        build_number: str,
        profile: str = "production",
        message: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Enqueue a build request and record it as queued."""
        if job_id is None:
            job_id = new_job_id()
        elif not JOB_ID_PATTERN.match(job_id):
            raise ValueError("Job id must be 12-64 URL-safe characters")

        params = JobParams(
            job_id=job_id,
            project_path=project_path,
            version=version,
            build_number=build_number,
            profile=profile or "production",
            message=message,
        )

        async with self._session_maker() as db:
            if await db.get(QueueEntry, job_id) is not None:
                raise ValueError(f"Job {job_id} already exists")
            db.add(QueueEntry(
                id=job_id,
                queue=QUEUE_NAME,
                payload=params.to_dict(),
                state=QueueState.WAITING,
                attempts=0,
                max_attempts=1,
                created_at=datetime.utcnow(),
            ))
            await db.commit()

        await self.status_store.record(job_id, StatusEvent.queued())
        logger.info("Created iOS build job %s", job_id)
        return job_id

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        return await self.status_store.get(job_id)

    async def get_entry(self, job_id: str) -> Optional[QueueEntry]:
        async with self._session_maker() as db:
            return await db.get(QueueEntry, job_id)

    async def get_queue_stats(self) -> Dict[str, int]:
        """Count queue entries per state."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(QueueEntry.state, func.count(QueueEntry.id))
                .group_by(QueueEntry.state)
            )
            stats = {state: 0 for state in QueueState.ALL}
            for state, count in result.all():
                stats[state] = count
            return stats

    async def recover_stale_jobs(self) -> int:
        """Fail active entries whose lock expired (their worker died).

        Each job gets exactly one attempt, so these are not re-queued.
        """
        now = datetime.utcnow()
        async with self._session_maker() as db:
            result = await db.execute(
                select(QueueEntry.id)
                .where(QueueEntry.state == QueueState.ACTIVE)
                .where(QueueEntry.lock_until <= now)
            )
            stale_ids = list(result.scalars().all())

        reason = "Build interrupted: worker lock expired"
        for job_id in stale_ids:
            await self._finish_entry(job_id, QueueState.FAILED, failed_reason=reason)
            await self._record_safely(job_id, StatusEvent.failed(reason))
            logger.warning("Job %s marked failed: lock expired", job_id)
        return len(stale_ids)

    async def process_next(self, worker_id: str = "worker-inline") -> bool:
        """Claim and run one waiting job. Returns False if the queue was empty."""
        entry = await self._claim_next(worker_id)
        if entry is None:
            return False
        await self._execute(entry, worker_id)
        return True

    async def _worker(self, worker_id: str) -> None:
        """Worker loop polling the queue table."""
        logger.info("Worker %s started", worker_id)

        while self._running:
            try:
                if not await self.process_next(worker_id):
                    await asyncio.sleep(self.config.POLL_INTERVAL)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Worker %s loop error: %s", worker_id, e)
                await asyncio.sleep(5)

    async def _claim_next(self, worker_id: str) -> Optional[QueueEntry]:
        """Take the oldest waiting entry, or None if another worker got it first."""
        now = datetime.utcnow()
        async with self._session_maker() as db:
            result = await db.execute(
                select(QueueEntry.id)
                .where(QueueEntry.state == QueueState.WAITING)
                .order_by(QueueEntry.created_at)
                .limit(1)
            )
            job_id = result.scalar_one_or_none()
            if job_id is None:
                return None

            claimed = await db.execute(
                update(QueueEntry)
                .where(QueueEntry.id == job_id)
                .where(QueueEntry.state == QueueState.WAITING)
                .values(
                    state=QueueState.ACTIVE,
                    worker_id=worker_id,
                    lock_until=now + self._lock_duration,
                    attempts=QueueEntry.attempts + 1,
                    processed_at=now,
                )
            )
            await db.commit()
            if claimed.rowcount != 1:
                return None

            entry = await db.get(QueueEntry, job_id)
            logger.info("Worker %s picked up job %s", worker_id, job_id)
            return entry

    async def _execute(self, entry: QueueEntry, worker_id: str) -> PipelineResult:
        job_id = entry.id
        try:
            params = JobParams.from_dict(entry.payload)
            await self.status_store.record(job_id, StatusEvent.building())
        except (KeyError, InvalidTransition) as e:
            error = f"Job could not start: {e}"
            logger.error("Job %s: %s", job_id, error)
            await self._finish_entry(job_id, QueueState.FAILED, failed_reason=error)
            await self._record_safely(job_id, StatusEvent.failed(error))
            return PipelineResult(success=False, error=error)

        logger.info("Starting iOS build job %s (%s %s)", job_id, params.version, params.build_number)

        async def on_stage(stage: Stage) -> None:
            if stage == Stage.UPLOAD:
                await self.status_store.record(job_id, StatusEvent.uploading())

        heartbeat = asyncio.create_task(self._renew_lock(job_id, worker_id))
        try:
            result = await self.pipeline.run_pipeline(
                job_id=job_id,
                project_path=params.project_path,
                profile=params.profile,
                version=params.version,
                build_number=params.build_number,
                message=params.message,
                on_stage=on_stage,
            )
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        if result.success:
            await self._finish_entry(job_id, QueueState.COMPLETED, return_value=result.artifact_path)
            await self.status_store.record(job_id, StatusEvent.done(result.artifact_path))
            logger.info("Job %s completed successfully", job_id)
        else:
            await self._finish_entry(job_id, QueueState.FAILED, failed_reason=result.error)
            await self.status_store.record(job_id, StatusEvent.failed(result.error or "Unknown error"))
            logger.info("Job %s failed: %s", job_id, result.error)

        return result

    async def _renew_lock(self, job_id: str, worker_id: str) -> None:
        interval = max(1.0, self._lock_duration.total_seconds() / 2)
        while True:
            await asyncio.sleep(interval)
            try:
                async with self._session_maker() as db:
                    await db.execute(
                        update(QueueEntry)
                        .where(QueueEntry.id == job_id)
                        .where(QueueEntry.worker_id == worker_id)
                        .where(QueueEntry.state == QueueState.ACTIVE)
                        .values(lock_until=datetime.utcnow() + self._lock_duration)
                    )
                    await db.commit()
            except Exception as e:
                logger.error("Failed to renew lock for job %s: %s", job_id, e)

    async def _finish_entry(
        self,
        job_id: str,
        state: str,
        failed_reason: Optional[str] = None,
        return_value: Optional[str] = None,
    ) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(QueueEntry)
                .where(QueueEntry.id == job_id)
                .values(
                    state=state,
                    lock_until=None,
                    failed_reason=failed_reason,
                    return_value=return_value,
                    finished_at=datetime.utcnow(),
                )
            )
            await db.commit()

    async def _record_safely(self, job_id: str, event: StatusEvent) -> None:
        try:
            await self.status_store.record(job_id, event)
        except InvalidTransition as e:
            logger.warning("Job %s: status not updated: %s", job_id, e)
