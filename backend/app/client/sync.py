from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

from ..schemas.writing_desk import JobDraft, JobSnapshot
from .api import ApiError, TransientApiError

logger = logging.getLogger(__name__)

SAVE_ERROR_MESSAGE = "We could not save your progress. We will keep trying automatically."


def payload_signature(draft: JobDraft, job_id: str | None) -> str:
    """Stable text form of what a save would send; equal signatures mean nothing changed."""
    data = draft.model_dump(mode="json", by_alias=True, include=set(JobDraft.model_fields))
    data["jobId"] = job_id
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class SnapshotSynchronizer:
    """
    Debounced autosave of the local draft.

    A save is skipped when its signature matches the last one the server
    confirmed, and saves never overlap. Transient failures surface an advisory
    and are retried after ``retry_delay``; a save the server rejects outright
    is dropped and handed to ``on_rejected``.
    """

    def __init__(
        self,
        save: Callable[[JobDraft], Awaitable[JobSnapshot]],
        *,
        debounce: float = 0.5,
        retry_delay: float = 5.0,
        on_saved: Optional[Callable[[JobSnapshot], None]] = None,
        on_advisory: Optional[Callable[[Optional[str]], None]] = None,
        on_rejected: Optional[Callable[[ApiError], None]] = None,
    ):
        self._save = save
        self.debounce = debounce
        self.retry_delay = retry_delay
        self._on_saved = on_saved or (lambda job: None)
        self._on_advisory = on_advisory or (lambda message: None)
        self._on_rejected = on_rejected or (lambda exc: None)

        self.job_id: str | None = None
        self.last_persisted_signature: str | None = None
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._pending: JobDraft | None = None

    def schedule(self, draft: JobDraft) -> None:
        """(Re)start the debounce timer for ``draft``."""
        self._schedule(draft, self.debounce)

    def _schedule(self, draft: JobDraft, delay: float) -> None:
        self._cancel_timer()
        self._pending = draft
        self._timer = asyncio.get_running_loop().create_task(self._save_later(draft, delay))

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _save_later(self, draft: JobDraft, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach so a retry scheduled below does not cancel this task
        self._timer = None
        try:
            await self.save(draft)
        except TransientApiError as exc:
            logger.warning("Autosave failed: %s", exc)
            if self._pending is draft:
                self.retry_later(draft)
        except ApiError as exc:
            logger.warning("Autosave rejected: %s", exc)
            if self._pending is draft:
                self._pending = None
            self._on_rejected(exc)

    def retry_later(self, draft: JobDraft) -> None:
        """Show the save advisory and try ``draft`` again after ``retry_delay``."""
        self._on_advisory(SAVE_ERROR_MESSAGE)
        self._schedule(draft, self.retry_delay)

    async def save(self, draft: JobDraft) -> JobSnapshot | None:
        """
        Save ``draft`` now unless the server already holds exactly this.

        Returns the stored job, or None when the save was skipped.
        """
        async with self._lock:
            signature = payload_signature(draft, self.job_id)
            if signature == self.last_persisted_signature:
                if self._pending is draft:
                    self._pending = None
                return None

            payload = draft.model_copy(update={"job_id": self.job_id})
            job = await self._save(payload)
            self.job_id = job.job_id
            self.last_persisted_signature = payload_signature(draft, job.job_id)
            if self._pending is draft:
                self._pending = None
            self._on_advisory(None)
            self._on_saved(job)
            return job

    async def save_now(self, draft: JobDraft) -> JobSnapshot | None:
        """Save ``draft`` immediately; any scheduled older draft is dropped."""
        self._cancel_timer()
        self._pending = None
        return await self.save(draft)

    async def flush(self) -> JobSnapshot | None:
        """Save any pending draft immediately."""
        draft = self._pending
        self._cancel_timer()
        if draft is None:
            return None
        return await self.save(draft)

    def rebase(self, job: JobSnapshot) -> None:
        """Adopt a server job as the baseline so an unchanged draft is not re-sent."""
        self.job_id = job.job_id
        self.last_persisted_signature = payload_signature(job.to_draft(), job.job_id)

    def reset(self) -> None:
        self._cancel_timer()
        self._pending = None
        self.job_id = None
        self.last_persisted_signature = None

    async def close(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass
