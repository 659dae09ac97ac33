"""Per-job build log.

Lines are buffered in memory and appended to ``<logs_dir>/<job_id>.log`` by a
background flush task and on :meth:`BuildLogger.close`. Readers must expect a
partially flushed file while a build is running.
"""

import asyncio
import logging
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from launchpad_engine.core.config import settings

logger = logging.getLogger(__name__)
console = logging.getLogger("launchpad_engine.build")

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
SEPARATOR = "─" * 50


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def log_path_for(job_id: str, logs_dir: Optional[Path] = None) -> Path:
    """Return the log file path for a job, rejecting ids that are not URL-safe."""
    if not JOB_ID_PATTERN.match(job_id):
        raise ValueError(f"Invalid job id: {job_id!r}")
    return Path(logs_dir or settings.LOGS_DIR) / f"{job_id}.log"


def read_log(job_id: str, logs_dir: Optional[Path] = None) -> Optional[str]:
    """Read the raw log text for a job, or None if there is no log yet."""
    try:
        path = log_path_for(job_id, logs_dir)
    except ValueError:
        return None
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None


class BuildLogger:
    """Append-only log sink for one job, mirrored to the console."""

    def __init__(
        self,
        job_id: str,
        logs_dir: Optional[Path] = None,
        flush_interval: Optional[float] = None,
        echo: Optional[bool] = None,
    ):
        self.job_id = job_id
        self.log_path = log_path_for(job_id, logs_dir)
        self.flush_interval = flush_interval if flush_interval is not None else settings.LOG_FLUSH_INTERVAL
        self.echo = echo if echo is not None else settings.LOG_ECHO
        self._buffer: List[str] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._closed = False

    async def init(self) -> None:
        """Create the log file, write the header and start periodic flushing."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "w", encoding="utf-8") as f:
            f.write(f"=== LaunchPad Build Log: {self.job_id} ===\n")
            f.write(f"Started at: {_now()}\n\n")

        self._flush_task = asyncio.create_task(self._flush_loop())

    def log(self, message: str) -> None:
        self._buffer.append(f"[{_now()}] {message}\n")
        if self.echo:
            console.info("[%s] %s", self.job_id, message)

    def step(self, name: str) -> None:
        self.log(f"\n{SEPARATOR}")
        self.log(f"▶ {name}")
        self.log(SEPARATOR)

    def command(self, cmd: str) -> None:
        self.log(f"$ {cmd}")

    def raw_out(self, data: Union[str, bytes]) -> None:
        self._raw(data, sys.stdout)

    def raw_err(self, data: Union[str, bytes]) -> None:
        self._raw(data, sys.stderr)

    def error(self, message: str) -> None:
        self.log(f"❌ ERROR: {message}")

    def warning(self, message: str) -> None:
        self.log(f"⚠️ {message}")

    def success(self, message: str) -> None:
        self.log(f"✅ {message}")

    def flush(self) -> None:
        """Append buffered content to the log file.

        Failures are reported to the console only; a broken log never fails a build.
        """
        if not self._buffer:
            return

        content = "".join(self._buffer)
        self._buffer = []

        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            logger.error("Failed to write to log file %s: %s", self.log_path, e)

    async def close(self) -> None:
        """Stop the flush timer, flush everything and write the footer."""
        if self._closed:
            return
        self._closed = True

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        self._buffer.append(f"\nFinished at: {_now()}\n")
        self.flush()

    @property
    def closed(self) -> bool:
        return self._closed

    def _raw(self, data: Union[str, bytes], stream) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self._buffer.append(data)
        if self.echo:
            stream.write(data)
            stream.flush()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            self.flush()
