import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Security
from fastapi.security.api_key import APIKeyHeader
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.db import get_db
from ..schemas.writing_desk import JobDraft, JobSnapshot, StartResearchOut
from ..services.coordinator import ResearchCoordinator, ResearchModeError
from ..services.credits import InsufficientCreditsError
from ..services.locks import LockUnavailableError
from ..services.phases import PhaseTransitionError
from ..services.snapshot_store import (
    JobConflictError,
    JobNotFoundError,
    SnapshotStore,
    SnapshotValidationError,
)

router = APIRouter(tags=["writing-desk"])

settings = get_settings()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
logger = logging.getLogger(__name__)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Simple header-based API key authentication.

    - In dev, if API_AUTH_KEY is not set, auth is skipped.
    - Otherwise, require X-API-Key == API_AUTH_KEY.
    """
    expected = settings.API_AUTH_KEY

    # In dev with no configured key, skip auth for convenience
    if settings.ENV == "dev" and not expected:
        return

    if not expected:
        # In non-dev environments, missing config is treated as misconfiguration
        raise HTTPException(status_code=401, detail="API key not configured")

    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


def current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    if len(user_id) > 128:
        raise HTTPException(status_code=400, detail="X-User-Id is too long")
    return user_id


def get_store(db: Session = Depends(get_db)) -> SnapshotStore:
    return SnapshotStore(db)


def get_coordinator(db: Session = Depends(get_db)) -> ResearchCoordinator:
    return ResearchCoordinator(db)


def _job_body(job: JobSnapshot | None):
    return job.model_dump(mode="json", by_alias=True) if job is not None else None


def _read_job(store: SnapshotStore, user_id: str) -> JobSnapshot | None:
    try:
        return store.get(user_id)
    except SnapshotValidationError as exc:
        logger.error("Stored job failed validation", extra={"user_id": user_id, "step": "read"})
        raise HTTPException(status_code=422, detail=str(exc))


@router.get(
    "/writing-desk/jobs/active",
    response_model=JobSnapshot | None,
    dependencies=[Depends(verify_api_key)],
)
def get_active_job(
    user_id: str = Depends(current_user_id),
    store: SnapshotStore = Depends(get_store),
):
    return _read_job(store, user_id)


@router.put(
    "/writing-desk/jobs/active",
    response_model=JobSnapshot,
    dependencies=[Depends(verify_api_key)],
)
def upsert_active_job(
    payload: JobDraft,
    user_id: str = Depends(current_user_id),
    store: SnapshotStore = Depends(get_store),
):
    try:
        return store.upsert(user_id, payload)
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc), "job": _job_body(exc.job)})
    except SnapshotValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.delete("/writing-desk/jobs/active", dependencies=[Depends(verify_api_key)])
def delete_active_job(
    user_id: str = Depends(current_user_id),
    store: SnapshotStore = Depends(get_store),
):
    store.delete(user_id)
    return {"success": True}


@router.post(
    "/writing-desk/jobs/active/research/start",
    response_model=StartResearchOut,
    dependencies=[Depends(verify_api_key)],
)
def start_research(
    user_id: str = Depends(current_user_id),
    coordinator: ResearchCoordinator = Depends(get_coordinator),
):
    try:
        result = coordinator.start(user_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PhaseTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except InsufficientCreditsError as exc:
        job = coordinator.store.get(user_id)
        raise HTTPException(
            status_code=402,
            detail={
                "message": str(exc),
                "job": _job_body(job),
                "remainingCredits": exc.balance,
                "requiredCredits": exc.required,
            },
        )
    except LockUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    return StartResearchOut(
        job=result.job,
        remaining_credits=result.remaining_credits,
        started=result.started,
    )


@router.get(
    "/writing-desk/jobs/active/research/status",
    response_model=JobSnapshot,
    dependencies=[Depends(verify_api_key)],
)
def research_status(
    user_id: str = Depends(current_user_id),
    coordinator: ResearchCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.refresh(user_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post(
    "/writing-desk/jobs/active/research/cancel",
    response_model=JobSnapshot,
    dependencies=[Depends(verify_api_key)],
)
def cancel_research(
    user_id: str = Depends(current_user_id),
    coordinator: ResearchCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.cancel(user_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ResearchModeError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
