"""External process execution with live output streaming."""

import asyncio
import codecs
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from launchpad_engine.core.errors import ExternalCommandFailed
from launchpad_engine.services.build_log import BuildLogger

logger = logging.getLogger(__name__)

# Exit code reported when the command could not be started at all
SPAWN_FAILED_EXIT_CODE = 127


@dataclass
class ExecResult:
    """Result of one external command."""
    stdout: str
    stderr: str
    exit_code: int


def format_command(command: str, args: Sequence[str], redact: Sequence[str] = ()) -> str:
    parts = [command, *("******" if a in redact else str(a) for a in args)]
    return " ".join(shlex.quote(part) for part in parts)


class ProcessExecutor:
    """Runs external commands, echoing and streaming them into a build log."""

    READ_CHUNK_SIZE = 4096

    async def run(
        self,
        command: str,
        args: Sequence[str],
        build_logger: BuildLogger,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        redact: Sequence[str] = (),
    ) -> ExecResult:
        """Run a command and return its output and exit code.

        Never raises for a non-zero exit; ``env`` is merged over the current
        environment. Arguments listed in ``redact`` are masked in the log.
        """
        full_command = format_command(command, args, redact)
        build_logger.command(full_command)

        proc_env = None
        if env:
            proc_env = {**os.environ, **env}

        try:
            proc = await asyncio.create_subprocess_exec(
                command, *[str(a) for a in args],
                cwd=str(cwd) if cwd else None,
                env=proc_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Could not start %s: %s", command, e)
            build_logger.error(f"Could not start {command}: {e}")
            return ExecResult(stdout="", stderr=str(e), exit_code=SPAWN_FAILED_EXIT_CODE)

        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []

        await asyncio.gather(
            self._pump(proc.stdout, stdout_chunks, build_logger.raw_out),
            self._pump(proc.stderr, stderr_chunks, build_logger.raw_err),
        )
        exit_code = await proc.wait()

        return ExecResult(
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            exit_code=exit_code,
        )

    async def run_or_fail(
        self,
        command: str,
        args: Sequence[str],
        build_logger: BuildLogger,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        redact: Sequence[str] = (),
    ) -> ExecResult:
        """Like :meth:`run`, but raise ExternalCommandFailed on a non-zero exit."""
        result = await self.run(command, args, build_logger, cwd=cwd, env=env, redact=redact)
        if result.exit_code != 0:
            raise ExternalCommandFailed(format_command(command, args, redact), result.exit_code)
        return result

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        sink: List[str],
        forward: Callable[[str], None],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(self.READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                sink.append(text)
                forward(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            sink.append(tail)
            forward(tail)
