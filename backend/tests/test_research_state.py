"""
Tests for research state transitions, progress and runner-update merging.
"""
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from app.schemas.writing_desk import ResearchActivity, ResearchState, ResearchStatus
from app.services import research_state
from app.services.research_state import (
    RICH_PROFILE,
    SIMPLE_PROFILE,
    RunnerUpdate,
    apply_update,
    compute_progress,
    map_runner_status,
)

from tests.fixtures.writing_desk_fixtures import running_research

NOW = datetime(2026, 1, 1, 13, 0, 0)


def _activity(activity_id: str, minutes: int = 0) -> ResearchActivity:
    return ResearchActivity(
        id=activity_id,
        type="web_search",
        label=f"Searching web for \"{activity_id}\"",
        created_at=NOW + timedelta(minutes=minutes),
    )


class TestStatusMapping:
    @pytest.mark.parametrize("raw,expected", [
        ("queued", ResearchStatus.QUEUED),
        ("in_progress", ResearchStatus.IN_PROGRESS),
        ("completed", ResearchStatus.COMPLETED),
        ("failed", ResearchStatus.FAILED),
        ("incomplete", ResearchStatus.FAILED),
        ("cancelled", ResearchStatus.CANCELLED),
        ("requires_action", ResearchStatus.REQUIRES_ACTION),
        ("something_new", ResearchStatus.IN_PROGRESS),
        (None, ResearchStatus.IN_PROGRESS),
    ])
    def test_rich_mapping(self, raw, expected):
        assert map_runner_status(raw, RICH_PROFILE) == expected

    @pytest.mark.parametrize("raw", ["cancelling", "requires_action"])
    def test_simple_mode_collapses_to_in_progress(self, raw):
        assert map_runner_status(raw, SIMPLE_PROFILE) == ResearchStatus.IN_PROGRESS

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            research_state.get_profile("fancy")


class TestProgress:
    def test_terminal_is_complete(self):
        assert compute_progress(ResearchStatus.FAILED, 40.0, 0) == 100.0

    def test_queued_shows_minimum(self):
        assert compute_progress(ResearchStatus.QUEUED, 0.0, 3) == 5.0

    def test_running_grows_with_activity(self):
        assert compute_progress(ResearchStatus.IN_PROGRESS, 0.0, 2) == 26.0

    def test_running_capped_below_complete(self):
        assert compute_progress(ResearchStatus.IN_PROGRESS, 90.0, 5) == 95.0


class TestResearchStateInvariants:
    def test_result_only_on_completed(self):
        with pytest.raises(ValidationError):
            ResearchState(status=ResearchStatus.IN_PROGRESS, result="notes")

    def test_error_only_on_failed(self):
        with pytest.raises(ValidationError):
            ResearchState(status=ResearchStatus.COMPLETED, error="boom")

    def test_progress_bounds(self):
        with pytest.raises(ValidationError):
            ResearchState(status=ResearchStatus.IN_PROGRESS, progress=101)

    def test_new_run_continues_cursor(self):
        previous = running_research(cursor=7)
        run = research_state.new_run(0.7, NOW, previous=previous)
        assert run.status == ResearchStatus.QUEUED
        assert run.cursor == 8
        assert run.credits_charged == 0.7
        assert run.started_at == run.billed_at == NOW
        assert run.result is None and run.activities == []


class TestApplyUpdate:
    def test_activities_appended_and_deduplicated(self):
        current = running_research().model_copy(update={"activities": [_activity("a")]})
        update = RunnerUpdate(
            status="in_progress",
            activities=[_activity("a"), _activity("c", 2), _activity("b", 1)],
        )
        merged = apply_update(current, update, NOW)
        assert [a.id for a in merged.activities] == ["a", "b", "c"]
        assert merged.cursor == current.cursor + 1
        assert merged.updated_at == NOW

    def test_progress_never_decreases(self):
        current = running_research().model_copy(update={"progress": 60.0})
        merged = apply_update(current, RunnerUpdate(status="in_progress", progress=20.0, activities=[_activity("x")]), NOW)
        assert merged.progress == 60.0

    def test_status_does_not_regress(self):
        current = running_research()
        merged = apply_update(current, RunnerUpdate(status="queued", activities=[_activity("x")]), NOW)
        assert merged.status == ResearchStatus.IN_PROGRESS

    def test_completion_sets_result_and_timestamp(self):
        merged = apply_update(running_research(), RunnerUpdate(status="completed", result="Notes"), NOW)
        assert merged.status == ResearchStatus.COMPLETED
        assert merged.result == "Notes"
        assert merged.progress == 100.0
        assert merged.completed_at == NOW
        assert merged.error is None

    def test_failure_uses_default_message(self):
        merged = apply_update(running_research(), RunnerUpdate(status="failed"), NOW)
        assert merged.status == ResearchStatus.FAILED
        assert merged.error == research_state.DEFAULT_FAILURE_MESSAGE
        assert merged.result is None

    def test_terminal_state_is_final(self):
        done = apply_update(running_research(), RunnerUpdate(status="completed", result="Notes"), NOW)
        assert apply_update(done, RunnerUpdate(status="in_progress"), NOW) is None

    def test_unchanged_update_is_skipped(self):
        assert apply_update(running_research(), RunnerUpdate(status="in_progress"), NOW) is None

    def test_cancelling_holds_until_terminal(self):
        cancelling = research_state.mark_cancelling(running_research(), NOW)
        assert cancelling.status == ResearchStatus.CANCELLING
        assert apply_update(cancelling, RunnerUpdate(status="in_progress"), NOW) is None
        cancelled = apply_update(cancelling, RunnerUpdate(status="cancelled"), NOW)
        assert cancelled.status == ResearchStatus.CANCELLED
        assert cancelled.completed_at == NOW

    def test_response_id_kept_once_set(self):
        merged = apply_update(
            running_research(response_id="resp_1"),
            RunnerUpdate(status="completed", response_id="resp_other", result="x"),
            NOW,
        )
        assert merged.response_id == "resp_1"

    def test_simple_mode_keeps_no_detail(self):
        current = ResearchState(status=ResearchStatus.QUEUED, credits_charged=0.7, cursor=0)
        update = RunnerUpdate(status="in_progress", response_id="resp_1", activities=[_activity("a")])
        merged = apply_update(current, update, NOW, SIMPLE_PROFILE)
        assert merged.status == ResearchStatus.IN_PROGRESS
        assert merged.progress is None
        assert merged.activities == []
        done = apply_update(merged, RunnerUpdate(status="completed", result="r"), NOW, SIMPLE_PROFILE)
        assert done.progress == 100.0


class TestFailAndRefund:
    def test_mark_failed_preserves_charge(self):
        failed = research_state.mark_failed(running_research(), "Runner rejected", NOW)
        assert failed.status == ResearchStatus.FAILED
        assert failed.error == "Runner rejected"
        assert failed.credits_charged == 0.7

    def test_mark_failed_leaves_terminal_alone(self):
        done = apply_update(running_research(), RunnerUpdate(status="completed", result="x"), NOW)
        assert research_state.mark_failed(done, "late", NOW) is done

    def test_record_refund(self):
        failed = research_state.mark_failed(running_research(), "x", NOW)
        refunded = research_state.record_refund(failed, 0.7, NOW)
        assert refunded.credits_refunded == 0.7
        assert refunded.credits_charged == 0.7
