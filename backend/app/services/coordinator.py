from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.config import Settings, get_settings
from ..schemas.writing_desk import JobPhase, JobSnapshot, ResearchStatus
from . import research_state
from .credits import CreditLedger
from .deep_research import ResearchRunner, RunnerError, RunnerTransientError, get_research_runner
from .locks import RunLock
from .phases import begin_research
from .research_state import RunnerUpdate
from .snapshot_store import JobNotFoundError, SnapshotStore

logger = logging.getLogger(__name__)

SUBMIT_TASK = "app.services.research_tasks.submit_research_run"
CANCEL_TASK = "app.services.research_tasks.cancel_research_run"

Dispatch = Callable[[str, Sequence[str]], None]


class ResearchModeError(Exception):
    """The requested operation is not available in the configured research mode."""


def celery_dispatch(task_name: str, args: Sequence[str]) -> None:
    celery_app.send_task(task_name, args=list(args))


@dataclass
class StartResult:
    job: JobSnapshot
    remaining_credits: float | None
    started: bool


class ResearchCoordinator:
    """
    Owns the life of a research run: billing, the submission lock, handing
    the run to the runner, merging runner updates and cancellation.

    Every state write happens under a row lock on the job, and a debit is
    committed in the same transaction as the run it pays for.
    """

    def __init__(
        self,
        db: Session,
        *,
        store: SnapshotStore | None = None,
        ledger: CreditLedger | None = None,
        lock: RunLock | None = None,
        runner: ResearchRunner | None = None,
        dispatch: Dispatch | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = store or SnapshotStore(db)
        self.ledger = ledger or CreditLedger(db)
        self.lock = lock or RunLock()
        self.runner = runner or get_research_runner()
        self.dispatch = dispatch or celery_dispatch
        self.profile = research_state.get_profile(self.settings.RESEARCH_STATE_MODE)
        self.clock = clock

    def _log(self, message: str, job_id: str, user_id: str, step: str, status: str | None = None, **kw) -> None:
        extra = {"job_id": job_id, "user_id": user_id, "step": step}
        if status is not None:
            extra["status"] = status
        logger.info(message, extra=extra, **kw)

    def _require_job(self, user_id: str, job_id: str | None = None) -> JobSnapshot:
        job = self.store.get(user_id)
        if job is None or (job_id is not None and job.job_id != job_id):
            raise JobNotFoundError("No active writing desk job found")
        return job

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(self, user_id: str, job_id: str | None = None) -> StartResult:
        """
        Start a research run for the user's job.

        A run already in flight (or a concurrent start holding the lock) is
        not an error: the current job comes back with ``started=False`` and
        nothing is charged. Insufficient credits raise before any state is
        written.
        """
        job = self._require_job(user_id, job_id)
        if job.research is not None and job.research.is_active:
            self._log("Research start rejected: run in flight", job.job_id, user_id, "start", "duplicate")
            return StartResult(job, self.ledger.balance(user_id), started=False)
        begin_research(job, job.research)

        token = self.lock.acquire(job.job_id, self.settings.RESEARCH_LOCK_TTL_SECONDS)
        if token is None:
            self._log("Research start rejected: lock held", job.job_id, user_id, "start", "busy")
            return StartResult(job, self.ledger.balance(user_id), started=False)

        try:
            current = self.store.get(user_id, for_update=True)
            if current is None or current.job_id != job.job_id:
                raise JobNotFoundError("No active writing desk job found")
            if current.research is not None and current.research.is_active:
                self.db.rollback()
                self.lock.release(job.job_id, token)
                self._log("Research start rejected: run in flight", job.job_id, user_id, "start", "duplicate")
                return StartResult(current, self.ledger.balance(user_id), started=False)

            cost = self.settings.RESEARCH_CREDIT_COST
            remaining = self.ledger.debit(user_id, cost)
            run = research_state.new_run(cost, self.clock(), previous=current.research, profile=self.profile)
            started = self.store.save_research(user_id, run, phase=JobPhase.RESEARCH)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.lock.release(job.job_id, token)
            raise

        self._log("Research run queued", started.job_id, user_id, "start", "queued")
        try:
            self.dispatch(SUBMIT_TASK, [user_id, started.job_id, token])
        except Exception as exc:
            logger.exception(
                "Could not queue research submission",
                extra={"job_id": started.job_id, "user_id": user_id, "step": "dispatch"},
            )
            self.lock.release(started.job_id, token)
            started = self._fail_run(
                user_id,
                started.job_id,
                f"Research could not be queued: {exc}",
                refund=self.settings.RESEARCH_REFUND_ON_SUBMISSION_FAILURE,
            )
            remaining = self.ledger.balance(user_id)
        return StartResult(started, remaining, started=True)

    # ------------------------------------------------------------------
    # Submission (runs in a worker)
    # ------------------------------------------------------------------

    def submit(self, user_id: str, job_id: str, lock_token: str) -> JobSnapshot | None:
        """
        Hand a queued run to the runner, then release the start lock.

        A run the runner never accepted is failed and, when configured,
        refunded. Accepted runs that fail later are not refunded.
        """
        try:
            job = self.store.get(user_id)
            if job is None or job.job_id != job_id or job.research is None:
                self._log("Submission skipped: job gone", job_id, user_id, "submit", "skipped")
                return job
            research = job.research
            if research.response_id or research.status not in (ResearchStatus.QUEUED, ResearchStatus.CANCELLING):
                return job
            if research.status == ResearchStatus.CANCELLING:
                # Cancelled before the runner ever saw it
                return self._finish_cancel_before_submit(user_id, job_id)

            try:
                update = self.runner.submit(job)
            except RunnerError as exc:
                self._log("Research submission failed", job_id, user_id, "submit", "failed", exc_info=True)
                return self._fail_run(
                    user_id,
                    job_id,
                    str(exc) or "Deep research request failed",
                    refund=self.settings.RESEARCH_REFUND_ON_SUBMISSION_FAILURE,
                )

            updated = self.apply_runner_update(user_id, job_id, update)
            self._log("Research submission accepted", job_id, user_id, "submit", update.status)
            if (
                updated is not None
                and updated.research is not None
                and updated.research.status == ResearchStatus.CANCELLING
                and updated.research.response_id
            ):
                self._dispatch_cancel(user_id, job_id)
            return updated
        finally:
            self.lock.release(job_id, lock_token)

    def _finish_cancel_before_submit(self, user_id: str, job_id: str) -> JobSnapshot | None:
        current = self.store.get(user_id, for_update=True)
        if current is None or current.job_id != job_id or current.research is None:
            self.db.rollback()
            return current

        now = self.clock()
        cancelled = research_state.apply_update(
            current.research, RunnerUpdate(status="cancelled"), now, self.profile
        )
        if cancelled is None:
            self.db.rollback()
            return current
        amount = current.research.credits_charged or 0
        if self.settings.RESEARCH_REFUND_ON_SUBMISSION_FAILURE and amount > 0:
            self.ledger.credit(user_id, amount)
            cancelled = research_state.record_refund(cancelled, amount, now)
        job = self.store.save_research(user_id, cancelled)
        self.db.commit()
        self._log("Research cancelled before submission", job_id, user_id, "cancel", "cancelled")
        return job

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def apply_runner_update(self, user_id: str, job_id: str, update: RunnerUpdate) -> JobSnapshot | None:
        current = self.store.get(user_id, for_update=True)
        if current is None or current.job_id != job_id or current.research is None:
            self.db.rollback()
            return current

        merged = research_state.apply_update(current.research, update, self.clock(), self.profile)
        if merged is None:
            self.db.rollback()
            return current

        job = self.store.save_research(user_id, merged)
        self.db.commit()
        if merged.status != current.research.status:
            self._log("Research status changed", job_id, user_id, "merge", merged.status.value)
        return job

    def _fail_run(self, user_id: str, job_id: str, error: str, *, refund: bool) -> JobSnapshot | None:
        current = self.store.get(user_id, for_update=True)
        if current is None or current.job_id != job_id or current.research is None or current.research.is_terminal:
            self.db.rollback()
            return current

        now = self.clock()
        failed = research_state.mark_failed(current.research, error, now)
        amount = current.research.credits_charged or 0
        if refund and amount > 0:
            self.ledger.credit(user_id, amount)
            failed = research_state.record_refund(failed, amount, now)
        job = self.store.save_research(user_id, failed)
        self.db.commit()
        self._log(
            "Research run failed" + (" and refunded" if failed.credits_refunded else ""),
            job_id,
            user_id,
            "fail",
            "failed",
        )
        return job

    def _submission_stalled(self, job: JobSnapshot, now: datetime) -> bool:
        research = job.research
        if research is None or research.response_id:
            return False
        if research.status not in (ResearchStatus.QUEUED, ResearchStatus.CANCELLING):
            return False
        started = research.started_at or job.updated_at
        return now - started > timedelta(seconds=2 * self.settings.RESEARCH_LOCK_TTL_SECONDS)

    def refresh(self, user_id: str) -> JobSnapshot:
        """
        Bring the stored run up to date with the runner.

        Transient runner errors leave the stored state as it was; other
        runner errors fail the run.
        """
        job = self._require_job(user_id)
        research = job.research
        if research is None or not research.is_active:
            return job

        if not research.response_id:
            if self._submission_stalled(job, self.clock()):
                self._resubmit(user_id, job.job_id)
            return job

        try:
            update = self.runner.retrieve(research.response_id)
        except RunnerTransientError:
            logger.warning(
                "Research status check failed; keeping stored state",
                extra={"job_id": job.job_id, "user_id": user_id, "step": "refresh"},
                exc_info=True,
            )
            return job
        except RunnerError as exc:
            return self._fail_run(user_id, job.job_id, str(exc) or "Deep research failed", refund=False) or job

        return self.apply_runner_update(user_id, job.job_id, update) or job

    def _resubmit(self, user_id: str, job_id: str) -> None:
        token = self.lock.acquire(job_id, self.settings.RESEARCH_LOCK_TTL_SECONDS)
        if token is None:
            return
        self._log("Re-queueing stalled research submission", job_id, user_id, "resubmit", "queued")
        try:
            self.dispatch(SUBMIT_TASK, [user_id, job_id, token])
        except Exception:
            self.lock.release(job_id, token)
            raise

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel(self, user_id: str) -> JobSnapshot:
        if not self.profile.supports_cancel:
            raise ResearchModeError("Cancelling research is not available in this mode")

        self._require_job(user_id)
        current = self.store.get(user_id, for_update=True)
        if current is None:
            raise JobNotFoundError("No active writing desk job found")
        research = current.research
        cancellable = (ResearchStatus.QUEUED, ResearchStatus.IN_PROGRESS, ResearchStatus.REQUIRES_ACTION)
        if research is None or research.status not in cancellable:
            self.db.rollback()
            return current

        job = self.store.save_research(user_id, research_state.mark_cancelling(research, self.clock()))
        self.db.commit()
        self._log("Research cancel requested", job.job_id, user_id, "cancel", "cancelling")
        if research.response_id:
            self._dispatch_cancel(user_id, job.job_id)
        return job

    def _dispatch_cancel(self, user_id: str, job_id: str) -> None:
        try:
            self.dispatch(CANCEL_TASK, [user_id, job_id])
        except Exception:
            # Status refreshes keep the run visible as cancelling; a later
            # refresh sees whatever the runner ends up doing
            logger.exception(
                "Could not queue research cancel",
                extra={"job_id": job_id, "user_id": user_id, "step": "cancel"},
            )

    def send_cancel(self, user_id: str, job_id: str) -> JobSnapshot | None:
        """Ask the runner to stop a run we marked as cancelling."""
        job = self.store.get(user_id)
        if job is None or job.job_id != job_id or job.research is None:
            return job
        research = job.research
        if research.status != ResearchStatus.CANCELLING or not research.response_id:
            return job
        try:
            update = self.runner.cancel(research.response_id)
        except RunnerTransientError:
            raise
        except RunnerError as exc:
            logger.warning(
                "Runner refused cancel: %s",
                exc,
                extra={"job_id": job_id, "user_id": user_id, "step": "cancel"},
            )
            return job
        return self.apply_runner_update(user_id, job_id, update)
