"""
Tests for the research status poller.
"""
import asyncio

import pytest

from app.client.api import ApiError, TransientApiError
from app.client.poller import POLL_ERROR_MESSAGE, PollerState, ResearchStatusPoller
from app.schemas.writing_desk import ResearchState, ResearchStatus

from tests.fixtures.writing_desk_fixtures import running_research, snapshot_from, summary_draft

OTHER_JOB_ID = "44444444-4444-4444-8444-444444444444"


def _job(research, job_id="11111111-1111-4111-8111-111111111111"):
    return snapshot_from(summary_draft(), job_id=job_id, research=research)


def _completed(cursor):
    return ResearchState(status=ResearchStatus.COMPLETED, progress=100, result="Notes", credits_charged=0.7, cursor=cursor)


class ScriptedFetch:
    """Returns (or raises) each scripted item in turn, then repeats the last."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, Exception):
            raise item
        return item


async def _until_idle(poller, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while poller.state == PollerState.POLLING:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("poller did not stop")
        await asyncio.sleep(0.005)


def _poller(fetch, updates, advisories=None, errors=None):
    return ResearchStatusPoller(
        fetch,
        on_update=updates.append,
        on_advisory=(advisories.append if advisories is not None else None),
        on_error=(errors.append if errors is not None else None),
        interval=0.01,
        failure_interval=0.01,
        max_failure_interval=0.05,
    )


class TestAccept:
    def test_drops_older_cursor(self):
        poller = ResearchStatusPoller(ScriptedFetch(None), on_update=lambda job: None)
        assert poller.accept(_job(running_research(cursor=4)))
        assert not poller.accept(_job(running_research(cursor=3)))
        assert poller.accept(_job(running_research(cursor=4)))
        assert poller.last_cursor == 4

    def test_new_job_starts_cursor_over(self):
        poller = ResearchStatusPoller(ScriptedFetch(None), on_update=lambda job: None)
        assert poller.accept(_job(_completed(7)))

        assert poller.accept(_job(running_research(cursor=0), job_id=OTHER_JOB_ID))
        assert poller.job_id == OTHER_JOB_ID
        assert poller.last_cursor == 0

    def test_reset_forgets_seen_cursor(self):
        poller = ResearchStatusPoller(ScriptedFetch(None), on_update=lambda job: None)
        poller.accept(_job(_completed(7)))

        poller.reset()

        assert poller.job_id is None
        assert poller.last_cursor == -1
        assert poller.accept(_job(running_research(cursor=2)))


class TestPolling:
    @pytest.mark.asyncio
    async def test_polls_until_terminal_and_skips_stale(self):
        updates = []
        fetch = ScriptedFetch(
            _job(running_research(cursor=2)),
            _job(running_research(cursor=6)),
            _job(_completed(7)),
        )
        poller = _poller(fetch, updates)

        poller.start(_job(running_research(cursor=5)))
        await _until_idle(poller)

        assert [job.research.cursor for job in updates] == [6, 7]
        assert poller.last_cursor == 7

    @pytest.mark.asyncio
    async def test_second_job_followed_after_first_completed(self):
        updates = []
        fetch = ScriptedFetch(
            _job(_completed(7)),
            _job(running_research(cursor=1), job_id=OTHER_JOB_ID),
            _job(_completed(2), job_id=OTHER_JOB_ID),
        )
        poller = _poller(fetch, updates)
        poller.start(_job(running_research(cursor=6)))
        await _until_idle(poller)

        poller.start(_job(running_research(cursor=0), job_id=OTHER_JOB_ID))
        await _until_idle(poller)

        assert updates[-1].job_id == OTHER_JOB_ID
        assert updates[-1].research.status == ResearchStatus.COMPLETED
        assert poller.last_cursor == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_loop(self):
        updates = []
        fetch = ScriptedFetch(_job(running_research(cursor=1)))
        poller = _poller(fetch, updates)

        poller.start()
        await asyncio.sleep(0.03)
        await poller.stop()

        assert poller.state == PollerState.IDLE
        calls = fetch.calls
        await asyncio.sleep(0.03)
        assert fetch.calls == calls


class TestPollFailures:
    @pytest.mark.asyncio
    async def test_transient_failures_back_off_and_recover(self):
        updates, advisories = [], []
        fetch = ScriptedFetch(
            TransientApiError(503, "busy"),
            TransientApiError(None, "offline"),
            _job(_completed(1)),
        )
        poller = _poller(fetch, updates, advisories)

        poller.start()
        await _until_idle(poller)

        assert advisories == [POLL_ERROR_MESSAGE, POLL_ERROR_MESSAGE, None]
        assert updates[-1].research.status == ResearchStatus.COMPLETED
        assert poller.failures == 0

    @pytest.mark.asyncio
    async def test_non_transient_error_stops_polling(self):
        updates, errors = [], []
        error = ApiError(404, "No active job")
        poller = _poller(ScriptedFetch(error), updates, errors=errors)

        poller.start()
        await _until_idle(poller)

        assert errors == [error]
        assert updates == []
