"""App Store Connect upload backends."""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Type

from launchpad_engine.core.config import Settings
from launchpad_engine.core.errors import ConfigurationError, ExternalCommandFailed, UploadError
from launchpad_engine.services.stages import StageContext

logger = logging.getLogger(__name__)


@dataclass
class UploadCredentials:
    """API key used to authenticate the upload."""
    key_id: Optional[str]
    issuer_id: Optional[str]
    key_path: Optional[str] = None
    key_content: Optional[str] = None

    @classmethod
    def from_settings(cls, config: Settings) -> "UploadCredentials":
        return cls(
            key_id=config.ASC_KEY_ID,
            issuer_id=config.ASC_ISSUER_ID,
            key_path=config.ASC_KEY_PATH,
            key_content=config.ASC_KEY_CONTENT,
        )

    def validate(self) -> None:
        missing = [n for n, v in (("ASC_KEY_ID", self.key_id), ("ASC_ISSUER_ID", self.issuer_id)) if not v]
        if missing:
            raise ConfigurationError.missing("App Store Connect API credentials", missing)
        if not self.key_path and not self.key_content:
            raise ConfigurationError.missing("App Store Connect API key", ["ASC_KEY_PATH", "ASC_KEY_CONTENT"])

    @property
    def key_filename(self) -> str:
        # altool and iTMSTransporter only look for this exact name
        return f"AuthKey_{self.key_id}.p8"


@contextmanager
def materialized_key(credentials: UploadCredentials) -> Iterator[Path]:
    """Yield a path to ``AuthKey_<id>.p8`` for the upload tools.

    A key file already named that way is used in place. Otherwise (inline
    content only, or a differently named file) the key is written to a
    private temp directory that is removed however the upload ends.
    """
    if credentials.key_path:
        source = Path(credentials.key_path)
        if source.name == credentials.key_filename:
            yield source
            return

    temp_dir = Path(tempfile.mkdtemp(prefix="launchpad-asc-key-"))
    try:
        key_file = temp_dir / credentials.key_filename
        if credentials.key_path:
            shutil.copyfile(credentials.key_path, key_file)
        else:
            key_file.write_text(credentials.key_content or "", encoding="utf-8")
        os.chmod(key_file, 0o600)
        yield key_file
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


class Uploader:
    """Interface of an upload backend."""

    name = "base"

    async def upload(self, ctx: StageContext, ipa_path: Path, credentials: UploadCredentials, key_file: Path) -> None:
        raise NotImplementedError


class AltoolUploader(Uploader):
    """Uploads with ``xcrun altool``."""

    name = "altool"

    async def upload(self, ctx: StageContext, ipa_path: Path, credentials: UploadCredentials, key_file: Path) -> None:
        ctx.build_logger.log("Uploading IPA to App Store Connect...")
        await ctx.executor.run_or_fail(
            "xcrun",
            [
                "altool",
                "--upload-app",
                "--type", "ios",
                "--file", str(ipa_path),
                "--apiKey", credentials.key_id,
                "--apiIssuer", credentials.issuer_id,
            ],
            ctx.build_logger,
            env={"API_PRIVATE_KEYS_DIR": str(key_file.parent)},
        )


class TransporterUploader(Uploader):
    """Uploads with the Transporter app's ``iTMSTransporter``."""

    name = "transporter"

    async def upload(self, ctx: StageContext, ipa_path: Path, credentials: UploadCredentials, key_file: Path) -> None:
        transporter = ctx.config.TRANSPORTER_PATH
        if not Path(transporter).exists():
            raise UploadError("Transporter not found. Please install Transporter from the Mac App Store.")

        ctx.build_logger.log("Uploading IPA using iTMSTransporter...")
        await ctx.executor.run_or_fail(
            transporter,
            [
                "-m", "upload",
                "-assetFile", str(ipa_path),
                "-apiKey", credentials.key_id,
                "-apiIssuer", credentials.issuer_id,
            ],
            ctx.build_logger,
            env={"API_PRIVATE_KEYS_DIR": str(key_file.parent)},
        )


UPLOADERS: Dict[str, Type[Uploader]] = {
    AltoolUploader.name: AltoolUploader,
    TransporterUploader.name: TransporterUploader,
}


def get_uploader(name: str) -> Uploader:
    try:
        return UPLOADERS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown UPLOAD_BACKEND {name!r} (expected one of: {', '.join(sorted(UPLOADERS))})"
        ) from None


async def upload_to_app_store(ctx: StageContext, ipa_path: Path, uploader: Optional[Uploader] = None) -> None:
    """Upload the built .ipa to App Store Connect."""
    credentials = UploadCredentials.from_settings(ctx.config)
    credentials.validate()
    uploader = uploader or get_uploader(ctx.config.UPLOAD_BACKEND)

    with materialized_key(credentials) as key_file:
        try:
            await uploader.upload(ctx, ipa_path, credentials, key_file)
        except ExternalCommandFailed as e:
            raise UploadError(f"Upload to App Store Connect failed: {e}") from e

    ctx.build_logger.success(f"App uploaded to App Store Connect ({uploader.name})")
