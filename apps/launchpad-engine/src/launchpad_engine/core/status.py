"""Job status state machine.

Status changes are expressed as events and applied with :func:`apply`, which
validates the transition instead of merging arbitrary fields:

    queued -> building -> (uploading ->) done | failed
    queued -> failed

``started_at`` is stamped on the first ``building`` event and ``finished_at``
on the terminal event; neither is ever overwritten.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from launchpad_engine.core.errors import InvalidTransition


class JobState(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    BUILDING = "building"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


TRANSITIONS: Dict[Optional[JobState], frozenset] = {
    None: frozenset({JobState.QUEUED}),
    JobState.QUEUED: frozenset({JobState.BUILDING, JobState.FAILED}),
    JobState.BUILDING: frozenset({JobState.UPLOADING, JobState.DONE, JobState.FAILED}),
    JobState.UPLOADING: frozenset({JobState.DONE, JobState.FAILED}),
    JobState.DONE: frozenset(),
    JobState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class JobStatus:
    """Status of one job as seen by polling clients."""
    job_id: str
    status: JobState
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    artifact_path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        data: Dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status.value,
        }
        if self.started_at:
            data["startedAt"] = self.started_at.isoformat()
        if self.finished_at:
            data["finishedAt"] = self.finished_at.isoformat()
        if self.artifact_path:
            data["artifactPath"] = self.artifact_path
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class StatusEvent:
    """A requested status change."""
    state: JobState
    at: datetime
    artifact_path: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def queued(cls) -> "StatusEvent":
        return cls(JobState.QUEUED, datetime.utcnow())

    @classmethod
    def building(cls) -> "StatusEvent":
        return cls(JobState.BUILDING, datetime.utcnow())

    @classmethod
    def uploading(cls) -> "StatusEvent":
        return cls(JobState.UPLOADING, datetime.utcnow())

    @classmethod
    def done(cls, artifact_path: str) -> "StatusEvent":
        return cls(JobState.DONE, datetime.utcnow(), artifact_path=artifact_path)

    @classmethod
    def failed(cls, error: str) -> "StatusEvent":
        return cls(JobState.FAILED, datetime.utcnow(), error=error)


def apply(current: Optional[JobStatus], event: StatusEvent, job_id: Optional[str] = None) -> JobStatus:
    """Apply ``event`` to ``current`` and return the new status.

    Raises:
        InvalidTransition: if the state machine does not allow the change,
            or a terminal event is missing its artifact path / error.
    """
    from_state = current.status if current else None
    if event.state not in TRANSITIONS[from_state]:
        label = from_state.value if from_state else "<none>"
        raise InvalidTransition(f"Cannot move job from {label} to {event.state.value}")

    if event.state == JobState.DONE and not event.artifact_path:
        raise InvalidTransition("A done status requires an artifact path")
    if event.state == JobState.FAILED and not event.error:
        raise InvalidTransition("A failed status requires an error message")

    if current is None:
        if not job_id:
            raise InvalidTransition("A new status needs a job id")
        return JobStatus(job_id=job_id, status=event.state)

    updated = replace(current, status=event.state)

    if event.state == JobState.BUILDING and current.started_at is None:
        updated = replace(updated, started_at=event.at)

    if event.state.is_terminal:
        finished_at = event.at
        if current.started_at and finished_at < current.started_at:
            finished_at = current.started_at
        updated = replace(
            updated,
            finished_at=finished_at,
            artifact_path=event.artifact_path if event.state == JobState.DONE else None,
            error=event.error if event.state == JobState.FAILED else None,
        )

    return updated
