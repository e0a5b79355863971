from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..schemas.writing_desk import (
    FollowUpOut,
    JobDraft,
    JobForm,
    JobSnapshot,
    StartResearchOut,
)

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """The server answered with an error that repeating will not fix."""

    def __init__(self, status_code: Optional[int], message: str, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class TransientApiError(ApiError):
    """Network failure, timeout, 429 or 5xx. The same call may succeed later."""


def _error_message(payload: Any, default: str) -> str:
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message") or default)
    if isinstance(detail, str):
        return detail
    return default


class WritingDeskApi:
    """
    Async client for the writing-desk endpoints.

    Transient failures are retried with exponential backoff, except for
    follow-up generation, which charges credits on every attempt.
    """

    def __init__(
        self,
        base_url: str,
        *,
        user_id: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
    ):
        headers = {"X-User-Id": user_id}
        if api_key:
            headers["X-API-Key"] = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = headers
        self.retry_attempts = max(1, retry_attempts)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = await self._client.request(
                method, f"{self._base_url}{path}", json=json, headers=self._headers
            )
        except httpx.TransportError as exc:
            raise TransientApiError(None, f"Request failed: {exc}") from exc

        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientApiError(
                response.status_code, _error_message(payload, f"Server error {response.status_code}"), payload
            )
        if response.status_code >= 400:
            raise ApiError(
                response.status_code, _error_message(payload, f"Request failed ({response.status_code})"), payload
            )
        return payload

    async def _request(self, method: str, path: str, json: Any = None, *, retry: bool = True) -> Any:
        if not retry:
            return await self._send(method, path, json)
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            stop=stop_after_attempt(self.retry_attempts),
            retry=retry_if_exception_type(TransientApiError),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, json)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_active_job(self) -> JobSnapshot | None:
        payload = await self._request("GET", "/writing-desk/jobs/active")
        return JobSnapshot.model_validate(payload) if payload else None

    async def save_job(self, draft: JobDraft) -> JobSnapshot:
        body = draft.model_dump(mode="json", by_alias=True, include=set(JobDraft.model_fields))
        payload = await self._request("PUT", "/writing-desk/jobs/active", json=body)
        return JobSnapshot.model_validate(payload)

    async def delete_job(self) -> None:
        await self._request("DELETE", "/writing-desk/jobs/active")

    async def start_research(self) -> StartResearchOut:
        payload = await self._request("POST", "/writing-desk/jobs/active/research/start")
        return StartResearchOut.model_validate(payload)

    async def research_status(self) -> JobSnapshot:
        payload = await self._request("GET", "/writing-desk/jobs/active/research/status", retry=False)
        return JobSnapshot.model_validate(payload)

    async def cancel_research(self) -> JobSnapshot:
        payload = await self._request("POST", "/writing-desk/jobs/active/research/cancel")
        return JobSnapshot.model_validate(payload)

    async def generate_follow_ups(self, form: JobForm) -> FollowUpOut:
        body: Dict[str, Any] = form.model_dump(mode="json", by_alias=True)
        payload = await self._request("POST", "/ai/writing-desk/follow-up", json=body, retry=False)
        return FollowUpOut.model_validate(payload)

    async def get_credits(self) -> float:
        payload = await self._request("GET", "/user/credits")
        return float(payload["credits"])
