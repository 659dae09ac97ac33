"""Error taxonomy for the build pipeline."""

from typing import Iterable


class LaunchpadError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(LaunchpadError):
    """Required credentials or environment are missing."""
    
    @classmethod
    def missing(cls, what: str, names: Iterable[str]) -> "ConfigurationError":
        return cls(f"Missing {what} ({', '.join(names)})")


class AppConfigError(ConfigurationError):
    """The project's app configuration could not be read or is incomplete."""


class ExternalCommandFailed(LaunchpadError):
    """An external tool exited with a non-zero code."""
    
    def __init__(self, command: str, exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"Command failed with exit code {exit_code}: {command}")


class StageError(LaunchpadError):
    """A pipeline stage failed."""


class WorkspaceError(StageError):
    pass


class DependencyInstallError(StageError):
    pass


class PrebuildError(StageError):
    pass


class NativeDependencyError(StageError):
    pass


class ArtifactMissing(StageError):
    """A file the build expected to exist is not there."""


class NoWorkspaceFound(ArtifactMissing):
    """The generated native project has no usable .xcworkspace."""


class UploadError(StageError):
    pass


class InvalidTransition(LaunchpadError):
    """A job status change that the state machine does not allow."""
