"""Core components for LaunchPad Engine."""

from launchpad_engine.core.config import settings
from launchpad_engine.core.jobs import JobManager
from launchpad_engine.core.status import JobState, JobStatus

__all__ = ["settings", "JobManager", "JobState", "JobStatus"]
