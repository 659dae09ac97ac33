"""SQLAlchemy models for LaunchPad Engine."""

from launchpad_engine.models.job import QueueEntry
from launchpad_engine.models.status import JobStatusRecord

__all__ = [
    "QueueEntry",
    "JobStatusRecord",
]
