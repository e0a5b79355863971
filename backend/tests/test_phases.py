"""
Tests for the writing-desk phase machine.
"""
import pytest
from pydantic import ValidationError

from app.schemas.writing_desk import JobDraft, JobPhase, ResearchStatus
from app.services import phases
from app.services.phases import ConfirmationRequired, PhaseTransitionError

from tests.fixtures.writing_desk_fixtures import (
    FILLED_FORM,
    FOLLOW_UP_QUESTIONS,
    follow_up_draft,
    intake_draft,
    running_research,
    summary_draft,
)


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

class TestIntake:
    def test_edit_updates_current_step_field(self):
        draft = phases.set_intake_answer(intake_draft(step_index=1), "Local families")
        assert draft.form.affected_detail == "Local families"
        assert draft.form.issue_detail == ""

    def test_advance_requires_answer(self):
        with pytest.raises(PhaseTransitionError):
            phases.advance_intake(intake_draft(issue_detail="   "))

    def test_advance_trims_and_moves_forward(self):
        draft, generate = phases.advance_intake(intake_draft(issue_detail="  Buses  "))
        assert draft.step_index == 1
        assert draft.form.issue_detail == "Buses"
        assert generate is False

    def test_last_step_starts_generation_when_no_questions(self):
        draft = JobDraft(step_index=3, form=FILLED_FORM)
        draft, generate = phases.advance_intake(draft)
        assert draft.phase == JobPhase.GENERATING
        assert generate is True

    def test_last_step_returns_to_existing_questions(self):
        draft = follow_up_draft(index=1).model_copy(update={"phase": JobPhase.INITIAL})
        draft, generate = phases.advance_intake(draft)
        assert draft.phase == JobPhase.FOLLOWUP
        assert draft.follow_up_index == 1
        assert generate is False

    def test_back_stops_at_first_step(self):
        assert phases.back_intake(intake_draft()).step_index == 0
        assert phases.back_intake(intake_draft(step_index=2)).step_index == 1

    def test_editing_outside_intake_rejected(self):
        with pytest.raises(PhaseTransitionError):
            phases.set_intake_answer(summary_draft(), "x")


# ---------------------------------------------------------------------------
# Follow-up generation
# ---------------------------------------------------------------------------

class TestFollowUpGeneration:
    def _generating(self) -> JobDraft:
        return JobDraft(phase=JobPhase.GENERATING, step_index=3, form=FILLED_FORM)

    def test_questions_installed_with_blank_answers(self):
        draft = phases.apply_generated_follow_ups(self._generating(), FOLLOW_UP_QUESTIONS, notes="n")
        assert draft.phase == JobPhase.FOLLOWUP
        assert draft.follow_up_answers == ["", ""]
        assert draft.follow_up_index == 0
        assert draft.notes == "n"

    def test_blank_questions_dropped(self):
        draft = phases.apply_generated_follow_ups(self._generating(), ["  ", "Which school?", ""])
        assert draft.follow_up_questions == ["Which school?"]

    def test_zero_questions_go_straight_to_summary(self):
        draft = phases.apply_generated_follow_ups(self._generating(), [])
        assert draft.phase == JobPhase.SUMMARY
        assert draft.follow_up_questions == []
        assert draft.follow_up_answers == []

    def test_more_than_five_questions_rejected(self):
        with pytest.raises(PhaseTransitionError):
            phases.apply_generated_follow_ups(self._generating(), [f"Q{i}?" for i in range(6)])

    def test_failure_from_intake_returns_to_last_step(self):
        draft = phases.generation_failed(self._generating(), "initial")
        assert draft.phase == JobPhase.INITIAL
        assert draft.step_index == 3

    def test_failure_from_summary_keeps_existing_questions(self):
        generating = phases.begin_regeneration(summary_draft())
        draft = phases.generation_failed(generating, "summary")
        assert draft.phase == JobPhase.SUMMARY
        assert draft.follow_up_questions == FOLLOW_UP_QUESTIONS


# ---------------------------------------------------------------------------
# Follow-up answers and summary
# ---------------------------------------------------------------------------

class TestFollowUps:
    def test_advance_requires_answer(self):
        with pytest.raises(PhaseTransitionError):
            phases.advance_follow_up(follow_up_draft())

    def test_advance_moves_to_next_question(self):
        draft = phases.set_follow_up_answer(follow_up_draft(), " Queen Elizabeth ")
        draft, submitted = phases.advance_follow_up(draft)
        assert submitted is False
        assert draft.follow_up_index == 1
        assert draft.follow_up_answers[0] == "Queen Elizabeth"

    def test_last_answer_submits_bundle(self):
        draft = follow_up_draft(index=1, answers=["A", "B"])
        draft, submitted = phases.advance_follow_up(draft)
        assert submitted is True
        assert draft.phase == JobPhase.SUMMARY

    def test_back_from_first_question_returns_to_intake(self):
        draft = phases.back_follow_up(follow_up_draft())
        assert draft.phase == JobPhase.INITIAL
        assert draft.step_index == 3

    def test_submit_requires_one_answer_per_question(self):
        with pytest.raises(PhaseTransitionError):
            phases.submit_follow_ups(follow_up_draft(), ["only one"])

    def test_edit_follow_up_from_summary(self):
        draft = phases.edit_follow_up(summary_draft(), 1)
        assert draft.phase == JobPhase.FOLLOWUP
        assert draft.follow_up_index == 1

    def test_edit_follow_up_out_of_range(self):
        with pytest.raises(PhaseTransitionError):
            phases.edit_follow_up(summary_draft(), 2)

    def test_edit_intake_needs_confirmation_when_follow_ups_exist(self):
        with pytest.raises(ConfirmationRequired):
            phases.edit_intake(summary_draft())

    def test_confirmed_edit_intake_clears_follow_ups(self):
        draft = phases.edit_intake(summary_draft(), 2, confirmed=True)
        assert draft.phase == JobPhase.INITIAL
        assert draft.step_index == 2
        assert draft.follow_up_questions == []
        assert draft.follow_up_answers == []
        assert draft.notes is None
        assert draft.form == FILLED_FORM


# ---------------------------------------------------------------------------
# Research and invariants
# ---------------------------------------------------------------------------

class TestResearchPhase:
    def test_begin_research_from_summary(self):
        assert phases.begin_research(summary_draft(), None).phase == JobPhase.RESEARCH

    def test_begin_research_blocked_while_run_active(self):
        draft = summary_draft().model_copy(update={"phase": JobPhase.RESEARCH})
        with pytest.raises(PhaseTransitionError):
            phases.begin_research(draft, running_research())

    def test_restart_allowed_after_terminal_run(self):
        draft = summary_draft().model_copy(update={"phase": JobPhase.RESEARCH})
        done = running_research().model_copy(update={"status": ResearchStatus.CANCELLED})
        assert phases.can_start_research(draft, done) is True

    def test_begin_research_rejected_from_intake(self):
        with pytest.raises(PhaseTransitionError):
            phases.begin_research(intake_draft(), None)

    def test_start_over_is_empty(self):
        assert phases.start_over().is_empty()


class TestDraftValidation:
    def test_answers_must_match_questions(self):
        with pytest.raises(ValidationError):
            JobDraft(follow_up_questions=["Q?"], follow_up_answers=[])

    def test_step_index_bounded(self):
        with pytest.raises(ValidationError):
            JobDraft(step_index=4)

    def test_follow_up_index_bounded(self):
        with pytest.raises(ValidationError):
            JobDraft(follow_up_questions=["Q?"], follow_up_answers=[""], follow_up_index=1)

    def test_at_most_five_questions(self):
        with pytest.raises(ValidationError):
            JobDraft(follow_up_questions=["Q?"] * 6, follow_up_answers=[""] * 6)

    def test_camel_case_wire_format(self):
        draft = JobDraft.model_validate(
            {
                "phase": "followup",
                "stepIndex": 3,
                "followUpIndex": 0,
                "form": {"issueDetail": "x"},
                "followUpQuestions": ["Q?"],
                "followUpAnswers": [""],
                "research": {"status": "completed"},
            }
        )
        assert draft.step_index == 3
        assert "research" not in draft.model_dump(by_alias=True)
        assert draft.model_dump(by_alias=True)["form"]["issueDetail"] == "x"
