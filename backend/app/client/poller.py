from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..schemas.writing_desk import JobSnapshot
from .api import ApiError, TransientApiError

logger = logging.getLogger(__name__)

POLL_ERROR_MESSAGE = "We could not refresh the research status. We will keep trying."


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class ResearchStatusPoller:
    """
    Polls research status while a run is in flight.

    At most one request is outstanding. Responses for the same job carrying
    an older cursor than one already applied are dropped. Transient failures
    back off and keep polling; other failures stop the poller and are reported.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[JobSnapshot]],
        *,
        on_update: Callable[[JobSnapshot], None],
        on_advisory: Optional[Callable[[Optional[str]], None]] = None,
        on_error: Optional[Callable[[ApiError], None]] = None,
        interval: float = 5.0,
        failure_interval: float = 8.0,
        max_failure_interval: float = 60.0,
    ):
        self._fetch = fetch
        self._on_update = on_update
        self._on_advisory = on_advisory or (lambda message: None)
        self._on_error = on_error or (lambda exc: None)
        self.interval = interval
        self.failure_interval = failure_interval
        self.max_failure_interval = max_failure_interval

        self.job_id: str | None = None
        self.last_cursor = -1
        self.failures = 0
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._in_flight = False

    @property
    def state(self) -> PollerState:
        if self._task is not None and not self._task.done():
            return PollerState.POLLING
        return PollerState.IDLE

    def accept(self, job: JobSnapshot) -> bool:
        """
        Record ``job`` as seen unless it is older than what we hold.

        Cursors only compare within one job; a different job id starts over.
        """
        cursor = job.research.cursor if job.research is not None else -1
        if job.job_id != self.job_id:
            self.job_id = job.job_id
            self.last_cursor = cursor
            return True
        if cursor < self.last_cursor:
            logger.debug("Dropping stale research status (cursor %s < %s)", cursor, self.last_cursor)
            return False
        self.last_cursor = cursor
        return True

    def reset(self) -> None:
        """Forget the job and cursor seen so far."""
        self.job_id = None
        self.last_cursor = -1
        self.failures = 0

    def start(self, job: JobSnapshot | None = None) -> None:
        if job is not None:
            self.accept(job)
        if self.state == PollerState.POLLING:
            return
        self.failures = 0
        self._task = asyncio.get_running_loop().create_task(self._run())

    def poll_now(self) -> None:
        """Cut the current wait short. A request already in flight is left alone."""
        if self.state == PollerState.IDLE:
            self.start()
        elif not self._in_flight:
            self._wake.set()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            delay = await self._poll_once()
            if delay is None:
                return
            await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _poll_once(self) -> float | None:
        """Returns the delay before the next poll, or None to stop."""
        self._in_flight = True
        try:
            job = await self._fetch()
        except TransientApiError as exc:
            self.failures += 1
            delay = min(self.failure_interval * 2 ** (self.failures - 1), self.max_failure_interval)
            logger.warning("Research status poll failed (%s); retrying in %.1fs", exc, delay)
            self._on_advisory(POLL_ERROR_MESSAGE)
            return delay
        except ApiError as exc:
            logger.warning("Research status poll stopped: %s", exc)
            self._on_error(exc)
            return None
        finally:
            self._in_flight = False

        if self.failures:
            self.failures = 0
            self._on_advisory(None)

        if not self.accept(job):
            return self.interval
        self._on_update(job)
        if job.research is None or not job.research.is_active:
            return None
        return self.interval
