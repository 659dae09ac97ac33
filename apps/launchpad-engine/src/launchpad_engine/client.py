"""HTTP client for the LaunchPad Engine API and the poll-until-done loop."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:3000"
TERMINAL_STATES = ("done", "failed")

StatusFetcher = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


class LaunchpadAPIError(Exception):
    """The API answered with an error or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class LaunchpadClient:
    """Thin aiohttp wrapper around the ``/v1/jobs`` routes.

    Configured from ``LAUNCHPAD_API_URL`` and ``LAUNCHPAD_API_KEY`` unless
    given explicitly. Use as an async context manager.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 30.0):
        self.base_url = (base_url or os.environ.get("LAUNCHPAD_API_URL") or DEFAULT_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get("LAUNCHPAD_API_KEY", "")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "LaunchpadClient":
        self._session = aiohttp.ClientSession(
            timeout=self.timeout,
            headers={"x-api-key": self.api_key},
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def create_ios_job(
        self,
        project_path: str,
        version: str,
        build_number: str,
        profile: str = "production",
        message: Optional[str] = None,
    ) -> str:
        """Submit a build. Returns the new job id."""
        payload = {
            "projectPath": project_path,
            "version": version,
            "buildNumber": build_number,
            "profile": profile,
            "message": message,
        }
        async with self._http().post(f"{self.base_url}/v1/jobs/ios", json=payload) as resp:
            body = await self._json(resp)
            return body["data"]["jobId"]

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a job's status, or None if the job is unknown or expired."""
        async with self._http().get(f"{self.base_url}/v1/jobs/{job_id}") as resp:
            if resp.status == 404:
                return None
            body = await self._json(resp)
            return body["data"]

    async def get_job_logs(self, job_id: str) -> Optional[str]:
        """Fetch the raw build log, or None if there is none."""
        async with self._http().get(f"{self.base_url}/v1/jobs/{job_id}/logs") as resp:
            if resp.status == 404:
                return None
            if resp.status != 200:
                raise LaunchpadAPIError(await self._error_detail(resp), resp.status)
            return await resp.text()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("LaunchpadClient must be used as an async context manager")
        return self._session

    async def _json(self, resp: aiohttp.ClientResponse) -> Dict[str, Any]:
        if resp.status >= 400:
            raise LaunchpadAPIError(await self._error_detail(resp), resp.status)
        return await resp.json()

    @staticmethod
    async def _error_detail(resp: aiohttp.ClientResponse) -> str:
        try:
            body = await resp.json(content_type=None)
            detail = body.get("detail") or body.get("error")
        except (ValueError, AttributeError, aiohttp.ContentTypeError):
            detail = None
        return str(detail or f"HTTP {resp.status}")


@dataclass
class WaitOutcome:
    """How a wait ended: ``done``, ``failed``, ``timeout`` or ``not_found``."""
    outcome: str
    status: Optional[Dict[str, Any]] = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == "done"


async def wait_for_completion(
    fetch_status: StatusFetcher,
    job_id: str,
    interval: float = 5.0,
    timeout: float = 3600.0,
    on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WaitOutcome:
    """Poll a job until it is terminal, unknown, or ``timeout`` seconds pass.

    Timing out only stops waiting; the job keeps running on the server.
    """
    started = clock()
    while True:
        status = await fetch_status(job_id)
        elapsed = clock() - started

        if status is None:
            return WaitOutcome("not_found", None, elapsed)

        if on_update is not None:
            on_update(status)

        if status.get("status") in TERMINAL_STATES:
            return WaitOutcome(status["status"], status, elapsed)

        if elapsed > timeout:
            logger.info("Stopped waiting for job %s after %.0fs", job_id, elapsed)
            return WaitOutcome("timeout", status, elapsed)

        await sleep(interval)
