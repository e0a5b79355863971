from __future__ import annotations

import logging

from ..core.celery_app import celery_app
from ..core.db import session_scope
from .coordinator import ResearchCoordinator
from .deep_research import RunnerTransientError
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


@celery_app.task(name="app.services.research_tasks.submit_research_run", bind=True, queue="research")
def submit_research_run(self, user_id: str, job_id: str, lock_token: str) -> None:
    logger.info("Submitting research run", extra={"job_id": job_id, "user_id": user_id, "step": "submit"})
    with session_scope() as db:
        ResearchCoordinator(db).submit(user_id, job_id, lock_token)


@celery_app.task(
    name="app.services.research_tasks.cancel_research_run",
    bind=True,
    queue="research",
    autoretry_for=(RunnerTransientError,),
    retry_backoff=True,
    max_retries=5,
)
def cancel_research_run(self, user_id: str, job_id: str) -> None:
    with session_scope() as db:
        ResearchCoordinator(db).send_cancel(user_id, job_id)


@celery_app.task(name="app.services.research_tasks.refresh_active_research")
def refresh_active_research() -> int:
    """
    Periodic reconciliation of in-flight research runs.

    Runs advance even when nobody is polling, so a user who comes back later
    sees the finished result. Returns how many jobs were refreshed.
    """
    refreshed = 0
    with session_scope() as db:
        user_ids = SnapshotStore(db).list_active_research()
        coordinator = ResearchCoordinator(db)
        for user_id in user_ids:
            try:
                coordinator.refresh(user_id)
                refreshed += 1
            except Exception:
                db.rollback()
                logger.exception(
                    "Failed to refresh research run",
                    extra={"user_id": user_id, "step": "refresh_active"},
                )
    logger.info("Refreshed active research runs", extra={"step": "refresh_active", "status": str(refreshed)})
    return refreshed
