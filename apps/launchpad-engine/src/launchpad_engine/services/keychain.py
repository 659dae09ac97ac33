"""Ephemeral keychain and automatic code signing.

Each build gets its own temporary keychain with a random password. It is put
at the head of the user keychain search list so fastlane and xcodebuild find
the distribution identity, and it is removed from the list and deleted when
the signing scope closes.
"""

import asyncio
import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from launchpad_engine.core.config import Settings, settings
from launchpad_engine.core.errors import ConfigurationError
from launchpad_engine.services.build_log import BuildLogger
from launchpad_engine.services.process import ExecResult, ProcessExecutor

logger = logging.getLogger(__name__)

SECURITY = "security"

FASTFILE = """
default_platform(:ios)

platform :ios do
  desc "Setup signing"
  lane :setup_signing do
    api_key = app_store_connect_api_key(
      key_id: ENV["LAUNCHPAD_ASC_KEY_ID"],
      issuer_id: ENV["LAUNCHPAD_ASC_ISSUER_ID"],
      key_filepath: ENV["LAUNCHPAD_ASC_KEY_PATH"],
      in_house: false
    )

    cert(
      api_key: api_key,
      team_id: ENV["LAUNCHPAD_TEAM_ID"],
      keychain_path: ENV["LAUNCHPAD_KEYCHAIN_PATH"],
      keychain_password: ENV["LAUNCHPAD_KEYCHAIN_PASSWORD"],
      generate_apple_certs: true
    )

    sigh(
      api_key: api_key,
      app_identifier: ENV["LAUNCHPAD_BUNDLE_ID"],
      team_id: ENV["LAUNCHPAD_TEAM_ID"],
      force: true,
      adhoc: false
    )

    update_code_signing_settings(
      use_automatic_signing: false,
      path: Dir.glob("*.xcodeproj").first,
      team_id: ENV["LAUNCHPAD_TEAM_ID"],
      bundle_identifier: ENV["LAUNCHPAD_BUNDLE_ID"],
      profile_name: lane_context[SharedValues::SIGH_NAME],
      code_sign_identity: "iPhone Distribution"
    )
  end
end
"""


@dataclass
class SigningCredentials:
    """App Store Connect API key and team used for signing."""
    key_id: Optional[str]
    issuer_id: Optional[str]
    key_path: Optional[str]
    team_id: Optional[str]

    @classmethod
    def from_settings(cls, config: Settings) -> "SigningCredentials":
        return cls(
            key_id=config.ASC_KEY_ID,
            issuer_id=config.ASC_ISSUER_ID,
            key_path=config.ASC_KEY_PATH,
            team_id=config.TEAM_ID,
        )

    def validate(self) -> None:
        """Raise ConfigurationError naming every missing field."""
        api_missing = [
            name for name, value in (
                ("ASC_KEY_ID", self.key_id),
                ("ASC_ISSUER_ID", self.issuer_id),
                ("ASC_KEY_PATH", self.key_path),
            ) if not value
        ]
        if api_missing:
            raise ConfigurationError.missing("App Store Connect API credentials", api_missing)
        if not self.team_id:
            raise ConfigurationError.missing("team identifier", ["TEAM_ID"])


def parse_keychain_list(output: str) -> List[str]:
    """Parse ``security list-keychains`` output into paths."""
    return [
        line.strip().strip('"')
        for line in output.splitlines()
        if line.strip().strip('"')
    ]


def keychain_key(path: str) -> str:
    """Comparable form of a keychain path.

    ``create-keychain x.keychain`` stores the file as ``x.keychain-db`` and
    ``list-keychains`` reports that name, so the suffix is folded.
    """
    if path.endswith("-db"):
        path = path[:-3]
    return os.path.normpath(path)


class KeychainSearchList:
    """The user keychain search list.

    One instance is shared by every worker in the pool; each change is a
    read-modify-write done under the same lock.
    """

    def __init__(self, executor: Optional[ProcessExecutor] = None):
        self.executor = executor or ProcessExecutor()
        self._lock = asyncio.Lock()

    async def read(self, build_logger: BuildLogger) -> List[str]:
        result = await self.executor.run_or_fail(SECURITY, ["list-keychains", "-d", "user"], build_logger)
        return parse_keychain_list(result.stdout)

    async def prepend(self, keychain: str, build_logger: BuildLogger) -> None:
        """Put ``keychain`` first, keeping every existing entry after it."""
        async with self._lock:
            key = keychain_key(keychain)
            existing = [k for k in await self.read(build_logger) if keychain_key(k) != key]
            await self._write([keychain, *existing], build_logger)

    async def remove(self, keychain: str, build_logger: BuildLogger) -> None:
        async with self._lock:
            key = keychain_key(keychain)
            existing = await self.read(build_logger)
            remaining = [k for k in existing if keychain_key(k) != key]
            if len(remaining) == len(existing):
                return
            await self._write(remaining, build_logger)

    async def delete(self, keychain: str, build_logger: BuildLogger) -> ExecResult:
        """Delete a keychain file.

        ``delete-keychain`` also edits the search list, so it takes the lock.
        """
        async with self._lock:
            return await self.executor.run(SECURITY, ["delete-keychain", keychain], build_logger)

    async def _write(self, keychains: List[str], build_logger: BuildLogger) -> None:
        await self.executor.run_or_fail(
            SECURITY, ["list-keychains", "-d", "user", "-s", *keychains], build_logger
        )


class EphemeralSigningContext:
    """Temporary keychain plus fastlane signing setup for one job.

    Use as an async context manager: entering creates the keychain and
    configures the Xcode project, exiting removes the keychain from the
    search list and deletes it. If entering fails, the keychain is torn
    down before the error propagates.
    """

    def __init__(
        self,
        workspace: Path,
        bundle_identifier: str,
        credentials: SigningCredentials,
        build_logger: BuildLogger,
        executor: ProcessExecutor,
        search_list: KeychainSearchList,
        keychain_dir: Optional[Path] = None,
        lock_timeout: Optional[int] = None,
    ):
        self.workspace = workspace
        self.bundle_identifier = bundle_identifier
        self.credentials = credentials
        self.build_logger = build_logger
        self.executor = executor
        self.search_list = search_list
        self.keychain_dir = keychain_dir or Path.home() / "Library" / "Keychains"
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.KEYCHAIN_LOCK_TIMEOUT
        self.keychain_path: Optional[str] = None
        self._password: Optional[str] = None
        self._created = False
        self._registered = False

    async def __aenter__(self) -> "EphemeralSigningContext":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    async def setup(self) -> None:
        self.credentials.validate()

        log = self.build_logger
        log.log(f"Setting up automatic code signing for {self.bundle_identifier}...")

        # Millisecond timestamp plus a random suffix keeps concurrent jobs apart
        name = f"launchpad-{int(time.time() * 1000)}-{secrets.token_hex(4)}.keychain"
        self.keychain_path = str(self.keychain_dir / name)
        self._password = secrets.token_hex(16)

        try:
            log.log("Creating temporary keychain...")
            self._created = True
            await self.executor.run_or_fail(
                SECURITY, ["create-keychain", "-p", self._password, self.keychain_path], log,
                redact=[self._password],
            )
            await self.executor.run_or_fail(
                SECURITY, ["set-keychain-settings", "-lut", str(self.lock_timeout), self.keychain_path], log
            )
            await self.executor.run_or_fail(
                SECURITY, ["unlock-keychain", "-p", self._password, self.keychain_path], log,
                redact=[self._password],
            )

            self._registered = True
            await self.search_list.prepend(self.keychain_path, log)

            log.log("Fetching/creating distribution certificate and provisioning profile...")
            await self._run_fastlane()

            log.success("Code signing configured automatically")
        except BaseException:
            await self.release()
            raise

    async def release(self) -> None:
        """Remove the keychain from the search list and delete it.

        Each step is best-effort: failures are logged and swallowed.
        """
        if self.keychain_path is None:
            return

        if self._registered:
            try:
                await self.search_list.remove(self.keychain_path, self.build_logger)
            except Exception as e:
                logger.warning("Could not remove keychain %s from search list: %s", self.keychain_path, e)
                self.build_logger.warning(f"Could not remove keychain from search list: {e}")
            self._registered = False

        if self._created:
            try:
                result = await self.search_list.delete(self.keychain_path, self.build_logger)
                if result.exit_code != 0:
                    logger.warning("Could not delete keychain %s (exit %d)", self.keychain_path, result.exit_code)
            except Exception as e:
                logger.warning("Could not delete keychain %s: %s", self.keychain_path, e)
            self._created = False

    async def _run_fastlane(self) -> None:
        ios_dir = self.workspace / "ios"
        fastlane_dir = ios_dir / "fastlane"
        fastlane_dir.mkdir(parents=True, exist_ok=True)
        (fastlane_dir / "Fastfile").write_text(FASTFILE, encoding="utf-8")

        # Secrets go through the environment so they never land in the workspace
        await self.executor.run_or_fail(
            "fastlane", ["setup_signing"],
            self.build_logger,
            cwd=ios_dir,
            env={
                "FASTLANE_SKIP_UPDATE_CHECK": "1",
                "FASTLANE_HIDE_CHANGELOG": "1",
                "LAUNCHPAD_ASC_KEY_ID": self.credentials.key_id or "",
                "LAUNCHPAD_ASC_ISSUER_ID": self.credentials.issuer_id or "",
                "LAUNCHPAD_ASC_KEY_PATH": self.credentials.key_path or "",
                "LAUNCHPAD_TEAM_ID": self.credentials.team_id or "",
                "LAUNCHPAD_KEYCHAIN_PATH": self.keychain_path or "",
                "LAUNCHPAD_KEYCHAIN_PASSWORD": self._password or "",
                "LAUNCHPAD_BUNDLE_ID": self.bundle_identifier,
            },
        )
