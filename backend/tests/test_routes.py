"""
HTTP-level tests for the writing-desk, follow-up and credit endpoints.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.core.db import get_db
from app.main import app
from app.api.routes_jobs import get_coordinator, get_store
from app.services.follow_ups import FollowUpGenerationError, FollowUpResult

from tests.fixtures.writing_desk_fixtures import FILLED_FORM, USER_ID, summary_draft

PREFIX = "/api"
HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def client(db, store, coordinator):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _put_summary(client):
    body = summary_draft().model_dump(mode="json", by_alias=True)
    resp = client.put(f"{PREFIX}/writing-desk/jobs/active", json=body, headers=HEADERS)
    assert resp.status_code == 200
    return resp.json()


def _fund(client, amount):
    resp = client.post(f"{PREFIX}/user/credits/add", json={"amount": amount}, headers=HEADERS)
    assert resp.status_code == 200


class TestJobEndpoints:
    def test_requires_user_header(self, client):
        assert client.get(f"{PREFIX}/writing-desk/jobs/active").status_code == 401

    def test_no_job_returns_null(self, client):
        resp = client.get(f"{PREFIX}/writing-desk/jobs/active", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json() is None

    def test_upsert_then_get(self, client):
        saved = _put_summary(client)
        assert saved["phase"] == "summary"
        assert saved["form"]["issueDetail"] == FILLED_FORM.issue_detail
        assert "userId" not in saved

        loaded = client.get(f"{PREFIX}/writing-desk/jobs/active", headers=HEADERS).json()
        assert loaded["jobId"] == saved["jobId"]

    def test_invalid_draft_rejected(self, client):
        body = summary_draft().model_dump(mode="json", by_alias=True)
        body["followUpAnswers"] = ["only one"]
        resp = client.put(f"{PREFIX}/writing-desk/jobs/active", json=body, headers=HEADERS)
        assert resp.status_code == 422

    def test_client_research_is_ignored(self, client):
        body = summary_draft().model_dump(mode="json", by_alias=True)
        body["research"] = {"status": "completed", "result": "forged"}
        resp = client.put(f"{PREFIX}/writing-desk/jobs/active", json=body, headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["research"] is None

    def test_delete(self, client):
        _put_summary(client)
        resp = client.delete(f"{PREFIX}/writing-desk/jobs/active", headers=HEADERS)
        assert resp.json() == {"success": True}
        assert client.get(f"{PREFIX}/writing-desk/jobs/active", headers=HEADERS).json() is None


class TestResearchEndpoints:
    def test_start_and_status(self, client):
        saved = _put_summary(client)
        _fund(client, 1.0)

        resp = client.post(f"{PREFIX}/writing-desk/jobs/active/research/start", headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["started"] is True
        assert body["remainingCredits"] == pytest.approx(0.3)
        assert body["job"]["research"]["status"] == "queued"
        assert body["job"]["research"]["creditsCharged"] == pytest.approx(0.7)

        status = client.get(f"{PREFIX}/writing-desk/jobs/active/research/status", headers=HEADERS)
        assert status.status_code == 200
        assert status.json()["jobId"] == saved["jobId"]

    def test_insufficient_credits_is_402_with_job(self, client):
        saved = _put_summary(client)
        _fund(client, 0.5)

        resp = client.post(f"{PREFIX}/writing-desk/jobs/active/research/start", headers=HEADERS)

        assert resp.status_code == 402
        detail = resp.json()["detail"]
        assert detail["remainingCredits"] == pytest.approx(0.5)
        assert detail["job"]["jobId"] == saved["jobId"]
        assert detail["job"]["research"] is None

    def test_stale_tab_cannot_replace_running_job(self, client):
        _put_summary(client)
        _fund(client, 1.0)
        client.post(f"{PREFIX}/writing-desk/jobs/active/research/start", headers=HEADERS)

        fresh = {"phase": "initial", "stepIndex": 0, "form": {"issueDetail": "new"}}
        resp = client.put(f"{PREFIX}/writing-desk/jobs/active", json=fresh, headers=HEADERS)

        assert resp.status_code == 409
        assert resp.json()["detail"]["job"]["research"]["status"] == "queued"

    def test_start_without_job_is_404(self, client):
        resp = client.post(f"{PREFIX}/writing-desk/jobs/active/research/start", headers=HEADERS)
        assert resp.status_code == 404

    def test_cancel(self, client):
        _put_summary(client)
        _fund(client, 1.0)
        client.post(f"{PREFIX}/writing-desk/jobs/active/research/start", headers=HEADERS)

        resp = client.post(f"{PREFIX}/writing-desk/jobs/active/research/cancel", headers=HEADERS)

        assert resp.status_code == 200
        assert resp.json()["research"]["status"] == "cancelling"


class TestFollowUpEndpoint:
    def _body(self):
        return FILLED_FORM.model_dump(by_alias=True)

    def test_generates_and_charges(self, client):
        _fund(client, 1.0)
        result = FollowUpResult(questions=["Which hospital?"], notes="n", response_id="chatcmpl_9")
        with patch("app.api.routes_ai.generate_follow_ups", return_value=result):
            resp = client.post(f"{PREFIX}/ai/writing-desk/follow-up", json=self._body(), headers=HEADERS)

        assert resp.status_code == 200
        body = resp.json()
        assert body["followUpQuestions"] == ["Which hospital?"]
        assert body["responseId"] == "chatcmpl_9"
        assert body["remainingCredits"] == pytest.approx(0.9)

    def test_failure_refunds(self, client):
        _fund(client, 1.0)
        with patch("app.api.routes_ai.generate_follow_ups", side_effect=FollowUpGenerationError("bad")):
            resp = client.post(f"{PREFIX}/ai/writing-desk/follow-up", json=self._body(), headers=HEADERS)

        assert resp.status_code == 502
        credits = client.get(f"{PREFIX}/user/credits", headers=HEADERS).json()
        assert credits["credits"] == pytest.approx(1.0)

    def test_no_credits_is_402(self, client):
        resp = client.post(f"{PREFIX}/ai/writing-desk/follow-up", json=self._body(), headers=HEADERS)
        assert resp.status_code == 402

    def test_blank_issue_rejected(self, client):
        body = self._body()
        body["issueDetail"] = "  "
        resp = client.post(f"{PREFIX}/ai/writing-desk/follow-up", json=body, headers=HEADERS)
        assert resp.status_code == 422
