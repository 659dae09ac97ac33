"""Build pipeline stages.

Every stage takes a :class:`StageContext` (workspace, job parameters, build
log, executor, settings), wraps one external tool or a few of them, and
raises a stage-specific error on failure.
"""

import json
import logging
import plistlib
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from launchpad_engine.core.config import RetentionPolicy, Settings
from launchpad_engine.core.errors import (
    ArtifactMissing,
    DependencyInstallError,
    ExternalCommandFailed,
    NativeDependencyError,
    NoWorkspaceFound,
    PrebuildError,
    WorkspaceError,
)
from launchpad_engine.services.build_log import BuildLogger
from launchpad_engine.services.process import ProcessExecutor

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Pipeline stages, in execution order."""
    PREPARE = "prepare"
    INSTALL_DEPS = "install_deps"
    PREBUILD = "prebuild"
    INSTALL_NATIVE_DEPS = "install_native_deps"
    SIGN = "sign"
    COMPILE = "compile"
    UPLOAD = "upload"
    CLEANUP = "cleanup"


STAGE_ORDER: List[Stage] = list(Stage)

STAGE_TITLES = {
    Stage.PREPARE: "Step 0: Prepare workspace",
    Stage.INSTALL_DEPS: "Step 1: Install dependencies",
    Stage.PREBUILD: "Step 2: Expo prebuild",
    Stage.INSTALL_NATIVE_DEPS: "Step 3: CocoaPods install",
    Stage.SIGN: "Step 4: Code signing (automatic)",
    Stage.COMPILE: "Step 5: Build IPA",
    Stage.UPLOAD: "Step 6: Upload to App Store Connect",
    Stage.CLEANUP: "Step 7: Cleanup",
}


# Copied into the workspace minus caches, VCS metadata and generated native dirs
RSYNC_EXCLUDES = ("node_modules", ".git", "ios", "android")

# (lockfile, label, command, args), highest priority first
LOCKFILE_COMMANDS: List[Tuple[str, str, str, List[str]]] = [
    ("pnpm-lock.yaml", "pnpm", "pnpm", ["install", "--frozen-lockfile"]),
    ("yarn.lock", "yarn", "yarn", ["install", "--frozen-lockfile"]),
    ("package-lock.json", "npm ci", "npm", ["ci"]),
]
PLAIN_INSTALL: Tuple[str, str, List[str]] = ("npm install", "npm", ["install"])


@dataclass
class JobParams:
    """Parameters of one build request."""
    job_id: str
    project_path: str
    version: str
    build_number: str
    profile: str = "production"
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "projectPath": self.project_path,
            "profile": self.profile,
            "version": self.version,
            "buildNumber": self.build_number,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JobParams":
        return cls(
            job_id=data["jobId"],
            project_path=data["projectPath"],
            profile=data.get("profile") or "production",
            version=data["version"],
            build_number=data["buildNumber"],
            message=data.get("message"),
        )


@dataclass
class StageContext:
    """Everything a stage needs for one job."""
    params: JobParams
    workspace: Path
    build_logger: BuildLogger
    executor: ProcessExecutor
    config: Settings
    workspace_created: bool = False

    @property
    def ios_dir(self) -> Path:
        return self.workspace / "ios"


@dataclass
class BuildResult:
    ipa_path: Path
    app_name: str


async def prepare_workspace(ctx: StageContext) -> Path:
    """Create the workspace and copy the project into it."""
    log = ctx.build_logger
    source = Path(ctx.params.project_path)

    if not source.is_dir():
        raise WorkspaceError(f"Project directory not found: {source}")

    log.log(f"Creating work directory: {ctx.workspace}")
    try:
        ctx.workspace.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WorkspaceError(f"Could not create work directory {ctx.workspace}: {e}") from e
    ctx.workspace_created = True

    log.log(f"Copying project from: {source}")
    args = ["-a"]
    for pattern in RSYNC_EXCLUDES:
        args.extend(["--exclude", pattern])
    args.extend([f"{source}/", f"{ctx.workspace}/"])
    try:
        await ctx.executor.run_or_fail("rsync", args, log)
    except ExternalCommandFailed as e:
        raise WorkspaceError(f"Failed to copy project into workspace: {e}") from e

    log.success(f"Workspace prepared at {ctx.workspace}")
    return ctx.workspace


def select_install_command(workspace: Path) -> Tuple[str, str, List[str]]:
    """Pick the install command from the lockfile present, by priority."""
    for lockfile, label, command, args in LOCKFILE_COMMANDS:
        if (workspace / lockfile).exists():
            return label, command, list(args)
    label, command, args = PLAIN_INSTALL
    return label, command, list(args)


async def install_dependencies(ctx: StageContext) -> str:
    """Install JS dependencies with the package manager matching the lockfile."""
    log = ctx.build_logger
    label, command, args = select_install_command(ctx.workspace)
    if label == PLAIN_INSTALL[0]:
        log.log("No lockfile found, using npm install")
    else:
        log.log(f"Detected lockfile, using {label}")

    try:
        await ctx.executor.run_or_fail(command, args, log, cwd=ctx.workspace)
    except ExternalCommandFailed as e:
        raise DependencyInstallError(f"Dependency install failed: {e}") from e

    log.success("Dependencies installed")
    return label


async def prebuild(ctx: StageContext) -> None:
    """Regenerate the native iOS project."""
    log = ctx.build_logger
    log.log("Running expo prebuild for iOS...")
    try:
        await ctx.executor.run_or_fail(
            "npx", ["expo", "prebuild", "-p", "ios", "--no-install", "--clean"],
            log,
            cwd=ctx.workspace,
        )
    except ExternalCommandFailed as e:
        raise PrebuildError(f"Expo prebuild failed: {e}") from e
    log.success("iOS native project generated")


async def install_native_dependencies(ctx: StageContext) -> None:
    """Install CocoaPods inside the generated ios/ directory."""
    log = ctx.build_logger
    log.log("Installing CocoaPods dependencies...")
    try:
        await ctx.executor.run_or_fail(
            "pod", ["install"],
            log,
            cwd=ctx.ios_dir,
            env={"LANG": "en_US.UTF-8"},
        )
    except ExternalCommandFailed as e:
        raise NativeDependencyError(f"CocoaPods install failed: {e}") from e
    log.success("CocoaPods dependencies installed")


def find_xcworkspace(ios_dir: Path, strict: bool = True) -> Path:
    """Locate the native .xcworkspace.

    Raises:
        NoWorkspaceFound: if there is none, or several while ``strict``.
    """
    candidates = sorted(ios_dir.glob("*.xcworkspace")) if ios_dir.is_dir() else []
    if not candidates:
        raise NoWorkspaceFound(f"No .xcworkspace found in {ios_dir}")
    if len(candidates) > 1 and strict:
        names = ", ".join(c.name for c in candidates)
        raise NoWorkspaceFound(f"Multiple .xcworkspace found in {ios_dir}: {names}")
    return candidates[0]


def stamp_version(info_plist: Path, version: str, build_number: str) -> None:
    """Write the marketing version and build number into Info.plist."""
    if not info_plist.exists():
        raise ArtifactMissing(f"Info.plist not found at {info_plist}")
    with open(info_plist, "rb") as f:
        data = plistlib.load(f)
    data["CFBundleShortVersionString"] = version
    data["CFBundleVersion"] = build_number
    with open(info_plist, "wb") as f:
        plistlib.dump(data, f)


def render_gymfile(workspace_path: Path, scheme: str, output_dir: Path) -> str:
    # JSON string literals are valid Ruby double-quoted strings
    return "\n".join([
        f"workspace({json.dumps(str(workspace_path))})",
        f"scheme({json.dumps(scheme)})",
        'export_method("app-store")',
        f"output_directory({json.dumps(str(output_dir))})",
        f"output_name({json.dumps(scheme)})",
        "clean(true)",
        "",
    ])


async def compile_ipa(ctx: StageContext) -> BuildResult:
    """Build and export the signed .ipa with fastlane gym."""
    log = ctx.build_logger
    output_dir = Path(ctx.config.ARTIFACTS_DIR) / ctx.params.job_id
    output_dir.mkdir(parents=True, exist_ok=True)

    workspace_path = find_xcworkspace(ctx.ios_dir, strict=ctx.config.STRICT_WORKSPACE_MATCH)
    app_name = workspace_path.stem

    log.log(f"Setting version to {ctx.params.version} ({ctx.params.build_number})")
    stamp_version(ctx.ios_dir / app_name / "Info.plist", ctx.params.version, ctx.params.build_number)

    fastlane_dir = ctx.ios_dir / "fastlane"
    fastlane_dir.mkdir(parents=True, exist_ok=True)
    (fastlane_dir / "Gymfile").write_text(
        render_gymfile(workspace_path, app_name, output_dir), encoding="utf-8"
    )

    log.log("Building with fastlane gym...")
    await ctx.executor.run_or_fail(
        "fastlane", ["gym"],
        log,
        cwd=ctx.ios_dir,
        env={"FASTLANE_SKIP_UPDATE_CHECK": "1"},
    )

    ipa_path = output_dir / f"{app_name}.ipa"
    if not ipa_path.exists():
        raise ArtifactMissing(f"IPA not found at {ipa_path}")

    log.success(f"IPA built: {ipa_path}")
    return BuildResult(ipa_path=ipa_path, app_name=app_name)


def cleanup(ctx: StageContext, success: bool, retention: Optional[RetentionPolicy] = None) -> bool:
    """Remove or keep the workspace. Returns True if it was removed.

    A failed removal is logged as a warning and never fails the job.
    """
    log = ctx.build_logger
    policy = retention or RetentionPolicy(ctx.config.WORKSPACE_RETENTION)

    if not policy.should_remove(success):
        log.log(f"Keeping work directory for debugging: {ctx.workspace}")
        return False

    log.log(f"Removing work directory: {ctx.workspace}")
    try:
        shutil.rmtree(ctx.workspace)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to clean up %s: %s", ctx.workspace, e)
        log.warning(f"Failed to clean up work directory: {e}")
        return False

    log.success("Cleanup completed")
    return True
