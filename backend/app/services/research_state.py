"""
Research state transitions and runner-update merging.

All functions are pure and take ``now`` explicitly; the coordinator owns
persistence and locking.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..schemas.writing_desk import ResearchActivity, ResearchState, ResearchStatus

S = ResearchStatus

DEFAULT_FAILURE_MESSAGE = "Deep research failed"

# Statuses a run may move to from each status. Terminal statuses are absorbing.
ALLOWED_TRANSITIONS: dict[ResearchStatus, frozenset[ResearchStatus]] = {
    S.IDLE: frozenset({S.QUEUED}),
    S.QUEUED: frozenset(
        {S.IN_PROGRESS, S.REQUIRES_ACTION, S.CANCELLING, S.COMPLETED, S.FAILED, S.CANCELLED}
    ),
    S.IN_PROGRESS: frozenset(
        {S.REQUIRES_ACTION, S.CANCELLING, S.COMPLETED, S.FAILED, S.CANCELLED}
    ),
    S.REQUIRES_ACTION: frozenset(
        {S.IN_PROGRESS, S.CANCELLING, S.COMPLETED, S.FAILED, S.CANCELLED}
    ),
    S.CANCELLING: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Raw runner statuses (OpenAI Responses API vocabulary plus our own)
_RUNNER_STATUS_MAP: dict[str, ResearchStatus] = {
    "queued": S.QUEUED,
    "in_progress": S.IN_PROGRESS,
    "requires_action": S.REQUIRES_ACTION,
    "cancelling": S.CANCELLING,
    "completed": S.COMPLETED,
    "failed": S.FAILED,
    "incomplete": S.FAILED,
    "cancelled": S.CANCELLED,
}


@dataclass(frozen=True)
class ResearchProfile:
    """
    How much detail a deployment keeps about a run.

    ``rich`` tracks progress, activities and cancellation. ``simple`` keeps
    status and result only.
    """

    mode: str
    statuses: frozenset[ResearchStatus]
    tracks_progress: bool
    tracks_activities: bool
    supports_cancel: bool


RICH_PROFILE = ResearchProfile(
    mode="rich",
    statuses=frozenset(ResearchStatus),
    tracks_progress=True,
    tracks_activities=True,
    supports_cancel=True,
)

SIMPLE_PROFILE = ResearchProfile(
    mode="simple",
    statuses=frozenset({S.IDLE, S.QUEUED, S.IN_PROGRESS, S.COMPLETED, S.FAILED, S.CANCELLED}),
    tracks_progress=False,
    tracks_activities=False,
    supports_cancel=False,
)


def get_profile(mode: str) -> ResearchProfile:
    mode = (mode or "rich").strip().lower()
    if mode == "rich":
        return RICH_PROFILE
    if mode == "simple":
        return SIMPLE_PROFILE
    raise ValueError(f"Unknown research state mode: {mode!r}")


@dataclass
class RunnerUpdate:
    """One observation of an external research run."""

    status: str
    response_id: str | None = None
    progress: float | None = None
    activities: list[ResearchActivity] = field(default_factory=list)
    result: str | None = None
    error: str | None = None


def can_transition(current: ResearchStatus, target: ResearchStatus) -> bool:
    return target == current or target in ALLOWED_TRANSITIONS[current]


def map_runner_status(raw: str | None, profile: ResearchProfile = RICH_PROFILE) -> ResearchStatus:
    status = _RUNNER_STATUS_MAP.get((raw or "").strip().lower(), S.IN_PROGRESS)
    if status not in profile.statuses:
        return S.IN_PROGRESS
    return status


def clamp_progress(value: float) -> float:
    return round(min(100.0, max(0.0, float(value))), 1)


def compute_progress(status: ResearchStatus, current: float | None, activity_count: int) -> float:
    """
    Heuristic progress: terminal runs are done, queued runs show a little
    movement, running runs creep up with observed activity but never reach
    100 before the run finishes.
    """
    current = current or 0.0
    if status in (S.COMPLETED, S.FAILED, S.CANCELLED):
        return 100.0
    if status == S.QUEUED:
        return clamp_progress(max(current, 5.0))
    return clamp_progress(min(95.0, max(current, 10.0) + 8 * activity_count))


def merge_activities(
    current: list[ResearchActivity], incoming: list[ResearchActivity]
) -> tuple[list[ResearchActivity], int]:
    """
    Append unseen activities in creation order.

    Existing entries are never replaced or reordered. Returns the merged list
    and the number of entries added.
    """
    seen = {a.id for a in current}
    merged = list(current)
    added = 0
    for activity in sorted(incoming, key=lambda a: a.created_at):
        if activity.id in seen:
            continue
        seen.add(activity.id)
        merged.append(activity)
        added += 1
    return merged, added


def new_run(
    credits_charged: float,
    now: datetime,
    *,
    previous: ResearchState | None = None,
    profile: ResearchProfile = RICH_PROFILE,
) -> ResearchState:
    """A fresh queued run. The cursor keeps counting from any previous run."""
    cursor = previous.cursor + 1 if previous is not None else 0
    return ResearchState(
        status=S.QUEUED,
        progress=0.0 if profile.tracks_progress else None,
        credits_charged=credits_charged,
        started_at=now,
        billed_at=now,
        updated_at=now,
        cursor=cursor,
    )


def _replace(current: ResearchState, now: datetime, **changes) -> ResearchState:
    data = current.model_dump()
    data.update(changes)
    data["updated_at"] = now
    data["cursor"] = current.cursor + 1
    return ResearchState.model_validate(data)


def apply_update(
    current: ResearchState,
    update: RunnerUpdate,
    now: datetime,
    profile: ResearchProfile = RICH_PROFILE,
) -> ResearchState | None:
    """
    Merge a runner observation into the stored state.

    Returns ``None`` when the update changes nothing that may change: the run
    is already terminal, or the update is identical to what we hold.
    Backwards moves (say ``queued`` after ``in_progress``) keep the stored
    status; a run being cancelled stays ``cancelling`` until the runner
    reports a terminal status.
    """
    if current.is_terminal:
        return None

    target = map_runner_status(update.status, profile)
    if not can_transition(current.status, target):
        target = current.status

    if profile.tracks_activities:
        activities, added = merge_activities(current.activities, update.activities)
    else:
        activities, added = [], 0

    terminal = target in (S.COMPLETED, S.FAILED, S.CANCELLED)
    if profile.tracks_progress:
        if update.progress is not None and not terminal:
            progress = clamp_progress(min(95.0, max(current.progress or 0.0, update.progress)))
        else:
            progress = compute_progress(target, current.progress, added)
    else:
        progress = 100.0 if terminal else None

    response_id = current.response_id or update.response_id
    if (
        target == current.status
        and not added
        and progress == current.progress
        and response_id == current.response_id
    ):
        return None

    return _replace(
        current,
        now,
        status=target,
        progress=progress,
        activities=activities,
        response_id=response_id,
        result=update.result if target == S.COMPLETED else None,
        error=(update.error or DEFAULT_FAILURE_MESSAGE) if target == S.FAILED else None,
        completed_at=now if terminal else None,
    )


def mark_failed(current: ResearchState, error: str, now: datetime) -> ResearchState:
    if current.is_terminal:
        return current
    return _replace(
        current,
        now,
        status=S.FAILED,
        progress=100.0,
        result=None,
        error=error or DEFAULT_FAILURE_MESSAGE,
        completed_at=now,
    )


def mark_cancelling(current: ResearchState, now: datetime) -> ResearchState:
    if not can_transition(current.status, S.CANCELLING) or current.status == S.CANCELLING:
        return current
    return _replace(current, now, status=S.CANCELLING)


def record_refund(current: ResearchState, amount: float, now: datetime) -> ResearchState:
    return _replace(current, now, credits_refunded=amount)
