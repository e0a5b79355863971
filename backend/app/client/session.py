from __future__ import annotations

import logging
from typing import Optional

from ..schemas.writing_desk import JobDraft, JobPhase, JobSnapshot, ResearchState
from ..services import phases
from ..services.phases import ConfirmationRequired, GenerationOrigin, PhaseTransitionError
from .api import ApiError, TransientApiError, WritingDeskApi
from .poller import ResearchStatusPoller
from .sync import SnapshotSynchronizer

logger = logging.getLogger(__name__)

GENERATION_ERROR_MESSAGE = "We could not generate follow-up questions. Please try again."
RESEARCH_START_ERROR_MESSAGE = "We could not start research. Please try again."


class ResumeDecisionPending(PhaseTransitionError):
    """A saved job was found; the user must resume or discard it first."""


class WritingDeskSession:
    """
    Client-side driver for one user's writing desk.

    Holds the local draft, applies phase moves, autosaves through the
    synchroniser and follows research through the poller. Research state is
    only ever taken from the server.
    """

    def __init__(
        self,
        api: WritingDeskApi,
        *,
        debounce: float = 0.5,
        save_retry_delay: float = 5.0,
        poll_interval: float = 5.0,
        poll_failure_interval: float = 8.0,
    ):
        self.api = api
        self.draft: JobDraft = phases.start_over()
        self.research: ResearchState | None = None
        self.credits: float | None = None
        self.advisory: str | None = None
        self.error: str | None = None
        self.pending_job: JobSnapshot | None = None

        self.sync = SnapshotSynchronizer(
            api.save_job,
            debounce=debounce,
            retry_delay=save_retry_delay,
            on_saved=self._on_saved,
            on_advisory=self._set_advisory,
            on_rejected=self._on_save_rejected,
        )
        self.poller = ResearchStatusPoller(
            api.research_status,
            on_update=self._on_poll_update,
            on_advisory=self._set_advisory,
            on_error=self._on_poll_error,
            interval=poll_interval,
            failure_interval=poll_failure_interval,
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _set_advisory(self, message: Optional[str]) -> None:
        self.advisory = message

    def _on_saved(self, job: JobSnapshot) -> None:
        self.research = job.research

    def _on_poll_update(self, job: JobSnapshot) -> None:
        self._apply(job)

    def _on_poll_error(self, exc: ApiError) -> None:
        self.error = str(exc)

    def _on_save_rejected(self, exc: ApiError) -> None:
        """
        A save the server refused. A 409 carries the job another tab started,
        which replaces ours; anything else is shown to the user.
        """
        detail = exc.payload.get("detail") if isinstance(exc.payload, dict) else None
        if exc.status_code == 409 and isinstance(detail, dict) and detail.get("job"):
            job = JobSnapshot.model_validate(detail["job"])
            logger.info("Adopting job %s saved elsewhere", job.job_id)
            self.poller.accept(job)
            self._apply(job)
            if job.research is not None and job.research.is_active:
                self.poller.start(job)
            self.error = detail.get("message") or str(exc)
            return
        self.error = str(exc)

    async def _persist(self) -> bool:
        """Save the draft now. Returns False when the save did not go through."""
        try:
            await self.sync.save_now(self.draft)
        except TransientApiError as exc:
            logger.warning("Save failed: %s", exc)
            self.sync.retry_later(self.draft)
            return False
        except ApiError as exc:
            logger.warning("Save rejected: %s", exc)
            self._on_save_rejected(exc)
            return False
        return True

    def _apply(self, job: JobSnapshot) -> None:
        self.draft = job.to_draft()
        self.research = job.research
        self.sync.rebase(job)

    def _require_decided(self) -> None:
        if self.pending_job is not None:
            raise ResumeDecisionPending("Resume or discard your saved letter first")

    def _autosave(self) -> None:
        # Research phase state is owned by the server
        if self.draft.phase != JobPhase.RESEARCH:
            self.sync.schedule(self.draft)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> JobSnapshot | None:
        """
        Fetch the saved job. A non-empty one is held back until the user
        chooses to resume or discard it.
        """
        job = await self.api.get_active_job()
        if job is not None and (not job.to_draft().is_empty() or job.research is not None):
            self.pending_job = job
            return job
        if job is not None:
            self._apply(job)
        return None

    async def resume(self) -> JobSnapshot:
        job = self.pending_job
        if job is None:
            raise PhaseTransitionError("There is no saved letter to resume")
        self.pending_job = None
        self._apply(job)
        if job.research is not None and job.research.is_active:
            self.poller.start(job)
        return job

    async def discard(self) -> None:
        self.pending_job = None
        await self.poller.stop()
        self.poller.reset()
        self.sync.reset()
        await self.api.delete_job()
        self.draft = phases.start_over()
        self.research = None

    # ------------------------------------------------------------------
    # Intake and follow-ups
    # ------------------------------------------------------------------

    def edit(self, value: str) -> None:
        """Type into whichever field the current step shows."""
        self._require_decided()
        if self.draft.phase == JobPhase.INITIAL:
            self.draft = phases.set_intake_answer(self.draft, value)
        elif self.draft.phase == JobPhase.FOLLOWUP:
            self.draft = phases.set_follow_up_answer(self.draft, value)
        else:
            raise PhaseTransitionError(f"Nothing to edit in phase {self.draft.phase.value}")
        self.error = None
        self._autosave()

    async def next(self) -> None:
        self._require_decided()
        if self.draft.phase == JobPhase.INITIAL:
            self.draft, needs_generation = phases.advance_intake(self.draft)
            if needs_generation:
                await self._generate("initial")
                return
            self._autosave()
        elif self.draft.phase == JobPhase.FOLLOWUP:
            self.draft, submitted = phases.advance_follow_up(self.draft)
            if submitted:
                await self._persist()
            else:
                self._autosave()
        else:
            raise PhaseTransitionError(f"Cannot continue from phase {self.draft.phase.value}")

    def back(self) -> None:
        self._require_decided()
        if self.draft.phase == JobPhase.INITIAL:
            self.draft = phases.back_intake(self.draft)
        elif self.draft.phase == JobPhase.FOLLOWUP:
            self.draft = phases.back_follow_up(self.draft)
        else:
            raise PhaseTransitionError(f"Cannot go back from phase {self.draft.phase.value}")
        self._autosave()

    async def regenerate_follow_ups(self) -> None:
        self._require_decided()
        self.draft = phases.begin_regeneration(self.draft)
        await self._generate("summary")

    async def _generate(self, origin: GenerationOrigin) -> None:
        try:
            out = await self.api.generate_follow_ups(self.draft.form)
        except ApiError as exc:
            logger.warning("Follow-up generation failed: %s", exc)
            self.draft = phases.generation_failed(self.draft, origin)
            self.error = GENERATION_ERROR_MESSAGE if exc.status_code != 402 else str(exc)
            self._autosave()
            return

        if out.remaining_credits is not None:
            self.credits = out.remaining_credits
        self.error = None
        self.draft = phases.apply_generated_follow_ups(
            self.draft,
            out.follow_up_questions,
            notes=out.notes,
            response_id=out.response_id,
        )
        await self._persist()

    def edit_intake(self, step_index: int = 0, *, confirmed: bool = False) -> None:
        self._require_decided()
        self.draft = phases.edit_intake(self.draft, step_index, confirmed=confirmed)
        self._autosave()

    def edit_follow_up(self, index: int) -> None:
        self._require_decided()
        self.draft = phases.edit_follow_up(self.draft, index)
        self._autosave()

    # ------------------------------------------------------------------
    # Research
    # ------------------------------------------------------------------

    async def start_research(self) -> bool:
        """
        Ask the server to start research. Returns whether a new run started.
        """
        self._require_decided()
        if not phases.can_start_research(self.draft, self.research):
            raise PhaseTransitionError("Research cannot start from here")

        if not await self._persist():
            return False
        try:
            result = await self.api.start_research()
        except ApiError as exc:
            payload = exc.payload.get("detail") if isinstance(exc.payload, dict) else None
            if exc.status_code == 402 and isinstance(payload, dict):
                self.credits = payload.get("remainingCredits", self.credits)
                self.error = str(exc)
            else:
                self.error = RESEARCH_START_ERROR_MESSAGE
            logger.warning("Research start failed: %s", exc)
            return False

        if result.remaining_credits is not None:
            self.credits = result.remaining_credits
        self.error = None
        if self.poller.accept(result.job):
            self._apply(result.job)
        if result.job.research is not None and result.job.research.is_active:
            self.poller.start(result.job)
        return result.started

    async def cancel_research(self) -> None:
        self._require_decided()
        job = await self.api.cancel_research()
        if self.poller.accept(job):
            self._apply(job)
        if job.research is not None and job.research.is_active:
            self.poller.poll_now()

    async def start_over(self, *, confirmed: bool = False) -> None:
        """Drop the job entirely and begin a fresh one."""
        self._require_decided()
        if not confirmed and (not self.draft.is_empty() or self.research is not None):
            raise ConfirmationRequired("Starting over deletes your saved letter")
        await self.discard()

    async def close(self) -> None:
        await self.poller.stop()
        try:
            await self.sync.flush()
        finally:
            await self.sync.close()
