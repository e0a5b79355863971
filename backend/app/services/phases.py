"""
Phase machine for a writing-desk job.

Every function is pure: it takes a draft, validates the move, and returns a
new draft. Nothing here touches the network or the database, so the client
session and the API share the same rules.
"""
from __future__ import annotations

from typing import Literal, TypeVar

from ..schemas.writing_desk import (
    FORM_FIELDS,
    MAX_FOLLOW_UP_QUESTIONS,
    JobDraft,
    JobForm,
    JobPhase,
    ResearchState,
)

DraftT = TypeVar("DraftT", bound=JobDraft)
GenerationOrigin = Literal["initial", "summary"]

LAST_INTAKE_STEP = len(FORM_FIELDS) - 1


class PhaseTransitionError(Exception):
    """Raised when a move is not allowed from the current phase."""


class ConfirmationRequired(PhaseTransitionError):
    """The move would throw away saved answers; the caller must confirm it."""


def _require_phase(draft: JobDraft, *allowed: JobPhase) -> None:
    if draft.phase not in allowed:
        names = ", ".join(p.value for p in allowed)
        raise PhaseTransitionError(f"Action requires phase {names}; job is in {draft.phase.value}")


def current_intake_field(draft: JobDraft) -> str:
    return FORM_FIELDS[draft.step_index]


def set_intake_answer(draft: DraftT, value: str) -> DraftT:
    _require_phase(draft, JobPhase.INITIAL)
    form = draft.form.model_copy(update={current_intake_field(draft): value})
    return draft.model_copy(update={"form": form})


def advance_intake(draft: DraftT) -> tuple[DraftT, bool]:
    """
    Move to the next intake step.

    Returns the new draft and whether follow-up generation must run now.
    Leaving the last step goes to ``generating`` unless follow-up questions
    already exist, in which case the user returns to them.
    """
    _require_phase(draft, JobPhase.INITIAL)
    value = getattr(draft.form, current_intake_field(draft)).strip()
    if not value:
        raise PhaseTransitionError("Please provide an answer before continuing.")

    form = draft.form.model_copy(update={current_intake_field(draft): value})
    if draft.step_index < LAST_INTAKE_STEP:
        return draft.model_copy(update={"form": form, "step_index": draft.step_index + 1}), False

    if draft.follow_up_questions:
        return (
            draft.model_copy(
                update={
                    "form": form,
                    "phase": JobPhase.FOLLOWUP,
                    "follow_up_index": min(draft.follow_up_index, len(draft.follow_up_questions) - 1),
                }
            ),
            False,
        )
    return draft.model_copy(update={"form": form, "phase": JobPhase.GENERATING}), True


def back_intake(draft: DraftT) -> DraftT:
    _require_phase(draft, JobPhase.INITIAL)
    if draft.step_index == 0:
        return draft
    return draft.model_copy(update={"step_index": draft.step_index - 1})


def begin_regeneration(draft: DraftT) -> DraftT:
    _require_phase(draft, JobPhase.SUMMARY)
    return draft.model_copy(update={"phase": JobPhase.GENERATING})


def apply_generated_follow_ups(
    draft: DraftT,
    questions: list[str],
    *,
    notes: str | None = None,
    response_id: str | None = None,
) -> DraftT:
    """
    Install freshly generated questions.

    Blank questions are dropped. With nothing left to ask, an empty bundle is
    submitted on the user's behalf and the job goes straight to summary.
    """
    _require_phase(draft, JobPhase.GENERATING)
    cleaned = [q.strip() for q in questions if q and q.strip()]
    if len(cleaned) > MAX_FOLLOW_UP_QUESTIONS:
        raise PhaseTransitionError(f"At most {MAX_FOLLOW_UP_QUESTIONS} follow-up questions are allowed")

    update = {
        "follow_up_questions": cleaned,
        "follow_up_answers": [""] * len(cleaned),
        "follow_up_index": 0,
        "notes": notes,
        "response_id": response_id,
        "phase": JobPhase.FOLLOWUP if cleaned else JobPhase.SUMMARY,
    }
    return draft.model_copy(update=update)


def generation_failed(draft: DraftT, origin: GenerationOrigin) -> DraftT:
    _require_phase(draft, JobPhase.GENERATING)
    if origin == "summary":
        return draft.model_copy(update={"phase": JobPhase.SUMMARY})
    return draft.model_copy(update={"phase": JobPhase.INITIAL, "step_index": LAST_INTAKE_STEP})


def set_follow_up_answer(draft: DraftT, value: str) -> DraftT:
    _require_phase(draft, JobPhase.FOLLOWUP)
    answers = list(draft.follow_up_answers)
    answers[draft.follow_up_index] = value
    return draft.model_copy(update={"follow_up_answers": answers})


def advance_follow_up(draft: DraftT) -> tuple[DraftT, bool]:
    """Returns the new draft and whether the bundle was submitted."""
    _require_phase(draft, JobPhase.FOLLOWUP)
    answers = list(draft.follow_up_answers)
    value = answers[draft.follow_up_index].strip()
    if not value:
        raise PhaseTransitionError("Please answer the question before continuing.")
    answers[draft.follow_up_index] = value

    if draft.follow_up_index < len(draft.follow_up_questions) - 1:
        return (
            draft.model_copy(
                update={"follow_up_answers": answers, "follow_up_index": draft.follow_up_index + 1}
            ),
            False,
        )
    return submit_follow_ups(draft, answers), True


def back_follow_up(draft: DraftT) -> DraftT:
    _require_phase(draft, JobPhase.FOLLOWUP)
    if draft.follow_up_index == 0:
        return draft.model_copy(update={"phase": JobPhase.INITIAL, "step_index": LAST_INTAKE_STEP})
    return draft.model_copy(update={"follow_up_index": draft.follow_up_index - 1})


def submit_follow_ups(draft: DraftT, answers: list[str]) -> DraftT:
    _require_phase(draft, JobPhase.FOLLOWUP)
    if len(answers) != len(draft.follow_up_questions):
        raise PhaseTransitionError("Every follow-up question needs exactly one answer")
    trimmed = [a.strip() for a in answers]
    if any(not a for a in trimmed):
        raise PhaseTransitionError("Please answer every follow-up question")
    return draft.model_copy(update={"follow_up_answers": trimmed, "phase": JobPhase.SUMMARY})


def edit_follow_up(draft: DraftT, index: int) -> DraftT:
    _require_phase(draft, JobPhase.SUMMARY)
    if not 0 <= index < len(draft.follow_up_questions):
        raise PhaseTransitionError("No follow-up question at that position")
    return draft.model_copy(update={"phase": JobPhase.FOLLOWUP, "follow_up_index": index})


def edit_intake(draft: DraftT, step_index: int = 0, *, confirmed: bool = False) -> DraftT:
    """
    Return to the intake questions.

    Intake answers shape the follow-up questions, so once follow-ups exist
    the caller must confirm; confirming clears them.
    """
    _require_phase(draft, JobPhase.FOLLOWUP, JobPhase.SUMMARY)
    if not 0 <= step_index <= LAST_INTAKE_STEP:
        raise PhaseTransitionError("No intake step at that position")
    if draft.follow_up_questions and not confirmed:
        raise ConfirmationRequired(
            "Editing your initial answers will clear your follow-up answers. Continue?"
        )
    return draft.model_copy(
        update={
            "phase": JobPhase.INITIAL,
            "step_index": step_index,
            "follow_up_questions": [],
            "follow_up_answers": [],
            "follow_up_index": 0,
            "notes": None,
            "response_id": None,
        }
    )


def can_start_research(draft: JobDraft, research: ResearchState | None) -> bool:
    if research is not None and research.is_active:
        return False
    if draft.phase == JobPhase.SUMMARY:
        return True
    return draft.phase == JobPhase.RESEARCH


def begin_research(draft: DraftT, research: ResearchState | None) -> DraftT:
    if research is not None and research.is_active:
        raise PhaseTransitionError("Research is already running for this job")
    _require_phase(draft, JobPhase.SUMMARY, JobPhase.RESEARCH)
    return draft.model_copy(update={"phase": JobPhase.RESEARCH})


def start_over() -> JobDraft:
    return JobDraft(form=JobForm())
