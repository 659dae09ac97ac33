"""Tests for the build queue and worker pool."""

import asyncio
from datetime import datetime, timedelta

import pytest

from launchpad_engine.core.jobs import JobManager, QueueState, new_job_id
from launchpad_engine.core.status import JobState, StatusEvent
from launchpad_engine.core.status_store import JobStatusStore
from launchpad_engine.models.job import QueueEntry
from launchpad_engine.services.pipeline import PipelineExecutor

from conftest import FakeExecutor


class RecordingStatusStore(JobStatusStore):
    """Status store that remembers every state it was asked to record."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events = []

    async def record(self, job_id, event):
        self.events.append((job_id, event.state))
        return await super().record(job_id, event)


@pytest.fixture
def make_manager(app_settings, session_maker, tmp_path):
    def factory(executor=None):
        pipeline = PipelineExecutor(
            app_settings,
            executor=executor or FakeExecutor(),
            keychain_dir=tmp_path / "keychains",
        )
        store = RecordingStatusStore(session_maker, app_settings.STATUS_TTL_SECONDS)
        return JobManager(
            config=app_settings,
            session_maker=session_maker,
            pipeline=pipeline,
            status_store=store,
        )
    return factory


class TestSubmit:
    """Tests for job submission."""

    @pytest.mark.asyncio
    async def test_submit_queues_job(self, make_manager, expo_project):
        manager = make_manager()
        job_id = await manager.submit(str(expo_project), "1.0.0", "1")

        status = await manager.get_status(job_id)
        assert status.status == JobState.QUEUED

        entry = await manager.get_entry(job_id)
        assert entry.state == QueueState.WAITING
        assert entry.max_attempts == 1
        assert entry.payload["projectPath"] == str(expo_project)
        assert entry.payload["profile"] == "production"

    @pytest.mark.asyncio
    async def test_job_ids_are_unique_and_url_safe(self, make_manager, expo_project):
        manager = make_manager()
        ids = {await manager.submit(str(expo_project), "1.0.0", str(n)) for n in range(5)}
        assert len(ids) == 5
        assert all(len(i) == 12 for i in ids)
        assert len(new_job_id()) == 12

    @pytest.mark.asyncio
    async def test_rejects_bad_or_duplicate_ids(self, make_manager, expo_project):
        manager = make_manager()
        with pytest.raises(ValueError):
            await manager.submit(str(expo_project), "1.0.0", "1", job_id="../../etc")

        await manager.submit(str(expo_project), "1.0.0", "1", job_id="custom-job-0001")
        with pytest.raises(ValueError, match="already exists"):
            await manager.submit(str(expo_project), "1.0.0", "1", job_id="custom-job-0001")


class TestWorker:
    """Tests for job execution by workers."""

    @pytest.mark.asyncio
    async def test_empty_queue(self, make_manager):
        assert await make_manager().process_next() is False

    @pytest.mark.asyncio
    async def test_successful_job(self, make_manager, expo_project):
        manager = make_manager()
        job_id = await manager.submit(str(expo_project), "1.0.0", "7")

        assert await manager.process_next("worker-test") is True

        status = await manager.get_status(job_id)
        assert status.status == JobState.DONE
        assert status.artifact_path.endswith(".ipa")
        assert status.finished_at >= status.started_at

        states = [state for jid, state in manager.status_store.events if jid == job_id]
        assert states == [JobState.QUEUED, JobState.BUILDING, JobState.UPLOADING, JobState.DONE]

        entry = await manager.get_entry(job_id)
        assert entry.state == QueueState.COMPLETED
        assert entry.attempts == 1
        assert entry.worker_id == "worker-test"
        assert entry.return_value == status.artifact_path

    @pytest.mark.asyncio
    async def test_failed_job(self, make_manager, expo_project):
        manager = make_manager(FakeExecutor(failures={"pod install": 1}))
        job_id = await manager.submit(str(expo_project), "1.0.0", "8")

        await manager.process_next()

        status = await manager.get_status(job_id)
        assert status.status == JobState.FAILED
        assert "CocoaPods install failed" in status.error
        assert status.artifact_path is None

        entry = await manager.get_entry(job_id)
        assert entry.state == QueueState.FAILED
        assert entry.failed_reason == status.error

        # Exactly one attempt, nothing left to pick up
        assert await manager.process_next() is False

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, make_manager, expo_project):
        manager = make_manager()
        await manager.submit(str(expo_project), "1.0.0", "9")

        first, second = await asyncio.gather(
            manager._claim_next("worker-a"),
            manager._claim_next("worker-b"),
        )
        claimed = [e for e in (first, second) if e is not None]
        assert len(claimed) == 1

    @pytest.mark.asyncio
    async def test_worker_pool_runs_jobs(self, make_manager, expo_project):
        manager = make_manager()
        job_id = await manager.submit(str(expo_project), "1.0.0", "10")

        await manager.start()
        try:
            for _ in range(200):
                status = await manager.get_status(job_id)
                if status.status.is_terminal:
                    break
                await asyncio.sleep(0.05)
        finally:
            await manager.stop()

        assert status.status == JobState.DONE
        assert not manager.running


class TestRecovery:
    """Tests for startup recovery and stats."""

    @pytest.mark.asyncio
    async def test_expired_lock_marks_job_failed(self, make_manager, session_maker):
        manager = make_manager()
        job_id = "stale-job-0001"
        async with session_maker() as db:
            db.add(QueueEntry(
                id=job_id,
                payload={"jobId": job_id, "projectPath": "/p", "version": "1", "buildNumber": "1"},
                state=QueueState.ACTIVE,
                attempts=1,
                worker_id="worker-dead",
                lock_until=datetime.utcnow() - timedelta(minutes=1),
                created_at=datetime.utcnow(),
            ))
            await db.commit()
        await manager.status_store.record(job_id, StatusEvent.queued())
        await manager.status_store.record(job_id, StatusEvent.building())

        assert await manager.recover_stale_jobs() == 1

        status = await manager.get_status(job_id)
        assert status.status == JobState.FAILED
        assert "lock expired" in status.error
        assert (await manager.get_entry(job_id)).state == QueueState.FAILED

    @pytest.mark.asyncio
    async def test_queue_stats(self, make_manager, expo_project):
        manager = make_manager()
        await manager.submit(str(expo_project), "1.0.0", "1")
        await manager.submit(str(expo_project), "1.0.0", "2")
        await manager.process_next()

        stats = await manager.get_queue_stats()
        assert stats == {"waiting": 1, "active": 0, "completed": 1, "failed": 0}
