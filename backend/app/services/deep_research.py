from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol

import openai
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import get_settings
from ..schemas.writing_desk import JobSnapshot, ResearchActivity
from .llm import get_llm_client, limit_llm_concurrency, llm_configured
from .research_state import RunnerUpdate

logger = logging.getLogger(__name__)

MAX_VECTOR_STORES = 2
REASONING_LABEL_MAX_LEN = 200

_TRANSIENT_OPENAI_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class RunnerError(Exception):
    """The research runner rejected or lost a run."""


class RunnerTransientError(RunnerError):
    """The runner could not be reached; the same call may succeed later."""


class ResearchRunner(Protocol):
    def submit(self, job: JobSnapshot) -> RunnerUpdate: ...

    def retrieve(self, response_id: str) -> RunnerUpdate: ...

    def cancel(self, response_id: str) -> RunnerUpdate: ...


# ----------------------------------------------------------------------
# Prompt
# ----------------------------------------------------------------------


def _follow_up_block(job: JobSnapshot) -> str:
    lines = []
    for idx, question in enumerate(job.follow_up_questions):
        answer = job.follow_up_answers[idx] if idx < len(job.follow_up_answers) else ""
        lines.append(f"Follow-up {idx + 1}:\nQuestion: {question}\nAnswer: {answer}")
    return "\n\n".join(lines)


def build_research_prompt(job: JobSnapshot) -> str:
    form = job.form
    follow_ups = _follow_up_block(job) or "No additional follow-up answers were provided."
    return f"""You are an expert researcher preparing evidence for a UK constituent's letter to their Member of Parliament.
Use credible, current sources (official statistics, government publications, reputable news, NGOs, academic papers).
Return only raw research notes, not the letter itself.

Context for the case:
- Issue detail: {form.issue_detail}
- Who is affected: {form.affected_detail}
- Background: {form.background_detail}
- Desired outcome: {form.desired_outcome}

Additional clarifications:
{follow_ups}

Task:
- Investigate the situation thoroughly.
- Provide organised bullet points grouped by theme (e.g. Impact, Legal obligations, Recent developments, Support avenues).
- Each bullet must include inline citations with the source title and a direct URL in Markdown.
- Highlight specific facts, statistics, quotes, deadlines, regulatory requirements, and authoritative guidance.
- Do not draft the letter or provide prose beyond the research notes."""


def build_stub_research(job: JobSnapshot) -> str:
    form = job.form
    answers = "\n".join(
        f"Q{idx + 1}: {question}\nA{idx + 1}: {job.follow_up_answers[idx] if idx < len(job.follow_up_answers) else ''}"
        for idx, question in enumerate(job.follow_up_questions)
    )
    return (
        "DEV-STUB RESEARCH\n\n"
        f"Issue summary:\n{form.issue_detail}\n\n"
        "Potential avenues:\n"
        f"- Highlight the impact on affected parties: {form.affected_detail}\n"
        f"- Reference any previous actions or background: {form.background_detail}\n"
        f"- Desired outcome: {form.desired_outcome}\n\n"
        f"Follow-up answers:\n{answers}"
    )


def parse_vector_store_ids(raw: str | None) -> list[str]:
    ids = [v.strip() for v in (raw or "").split(",") if v.strip()]
    return ids[:MAX_VECTOR_STORES]


def build_research_tools(vector_store_ids: list[str]) -> list[Dict[str, Any]]:
    tools: list[Dict[str, Any]] = [{"type": "web_search_preview"}]
    if vector_store_ids:
        tools.append({"type": "file_search", "vector_store_ids": vector_store_ids})
    tools.append({"type": "code_interpreter", "container": {"type": "auto"}})
    return tools


# ----------------------------------------------------------------------
# Response parsing
# ----------------------------------------------------------------------


def _attr(source: Any, key: str) -> Any:
    if source is None:
        return None
    if isinstance(source, dict):
        return source.get(key)
    return getattr(source, key, None)


def _item_created_at(item: Any, fallback: datetime) -> datetime:
    raw = _attr(item, "created_at")
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(raw, datetime):
        return raw
    return fallback


def _web_search_label(action: Any) -> str:
    action_type = _attr(action, "type") or "search"
    query = _attr(action, "query") or _attr(action, "pattern")
    url = _attr(action, "url") or _attr(action, "link")
    if action_type == "search" and isinstance(query, str):
        return f'Searching web for "{query}"'
    if action_type == "open_page" and isinstance(url, str):
        return f"Opening source {url}"
    if action_type == "find_in_page" and isinstance(query, str):
        return f'Scanning page for "{query}"'
    return "Web search in progress"


def _reasoning_label(item: Any) -> str | None:
    for part in _attr(item, "summary") or []:
        text = _attr(part, "text")
        if isinstance(text, str) and text.strip():
            text = " ".join(text.split())
            if len(text) > REASONING_LABEL_MAX_LEN:
                text = text[: REASONING_LABEL_MAX_LEN - 1].rstrip() + "…"
            return text
    return None


def extract_activities(response: Any, now: datetime | None = None) -> List[ResearchActivity]:
    """Turn runner output items into user-facing activity entries."""
    now = now or datetime.utcnow()
    activities: List[ResearchActivity] = []
    for item in _attr(response, "output") or []:
        item_type = _attr(item, "type")
        item_id = _attr(item, "id")
        if not isinstance(item_id, str) or not item_id.strip():
            item_id = str(uuid.uuid4())
        status = _attr(item, "status") or "completed"
        created_at = _item_created_at(item, now)
        url = None

        if item_type == "web_search_call":
            action = _attr(item, "action")
            kind, label = "web_search", _web_search_label(action)
            url = _attr(action, "url")
        elif item_type == "file_search_call":
            queries = _attr(item, "queries") or []
            query = queries[0] if queries else _attr(_attr(item, "action"), "query")
            kind = "file_search"
            label = (
                f'Searching reference files for "{query}"'
                if isinstance(query, str)
                else "Reviewing internal reference files"
            )
        elif item_type == "code_interpreter_call":
            kind, label = "code_interpreter", "Analysing findings with code interpreter"
        elif item_type == "reasoning":
            label = _reasoning_label(item)
            if label is None:
                continue
            kind = "reasoning"
        else:
            continue

        activities.append(
            ResearchActivity(
                id=item_id,
                type=kind,
                label=label,
                status=str(status),
                created_at=created_at,
                url=url if isinstance(url, str) else None,
            )
        )
    return activities


def extract_output_text(response: Any) -> str | None:
    text = _attr(response, "output_text")
    if isinstance(text, str) and text.strip():
        return text
    for item in _attr(response, "output") or []:
        for content in _attr(item, "content") or []:
            text = _attr(content, "text")
            if isinstance(text, str) and text.strip():
                return text
    return None


def extract_error(response: Any) -> str | None:
    for key in ("error", "last_error"):
        message = _attr(_attr(response, key), "message")
        if isinstance(message, str) and message.strip():
            return message
    details = _attr(response, "incomplete_details")
    reason = _attr(details, "reason")
    if isinstance(reason, str) and reason:
        return f"Research stopped early: {reason}"
    return None


def response_to_update(response: Any) -> RunnerUpdate:
    status = _attr(response, "status") or "in_progress"
    return RunnerUpdate(
        status=status,
        response_id=_attr(response, "id"),
        activities=extract_activities(response),
        result=extract_output_text(response) if status == "completed" else None,
        error=extract_error(response) if status in ("failed", "incomplete") else None,
    )


# ----------------------------------------------------------------------
# Runners
# ----------------------------------------------------------------------


def _translate_openai_error(exc: Exception) -> RunnerError:
    if isinstance(exc, _TRANSIENT_OPENAI_ERRORS):
        return RunnerTransientError(str(exc) or exc.__class__.__name__)
    return RunnerError(str(exc) or exc.__class__.__name__)


class OpenAIDeepResearchRunner:
    """
    Deep research via the OpenAI Responses API in background mode.

    ``submit`` is never retried: a create that timed out may still have
    started a run. Reads and cancels are idempotent and retried.
    """

    def __init__(self, client: Any | None = None, model: str | None = None, vector_store_ids: list[str] | None = None):
        settings = get_settings()
        self._client = client
        self.model = model or settings.OPENAI_DEEP_RESEARCH_MODEL
        if vector_store_ids is None:
            vector_store_ids = parse_vector_store_ids(settings.OPENAI_DEEP_RESEARCH_VECTOR_STORE_IDS)
        self.vector_store_ids = vector_store_ids[:MAX_VECTOR_STORES]

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_llm_client()
        return self._client

    def submit(self, job: JobSnapshot) -> RunnerUpdate:
        try:
            with limit_llm_concurrency():
                response = self.client.responses.create(
                    model=self.model,
                    input=build_research_prompt(job),
                    background=True,
                    store=True,
                    reasoning={"effort": "medium", "summary": "auto"},
                    tools=build_research_tools(self.vector_store_ids),
                    metadata={"feature": "writing-desk-research", "jobId": job.job_id},
                )
        except openai.OpenAIError as exc:
            raise _translate_openai_error(exc) from exc
        logger.info(
            "Deep research submitted",
            extra={"job_id": job.job_id, "step": "runner_submit", "status": _attr(response, "status")},
        )
        return response_to_update(response)

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RunnerTransientError),
        reraise=True,
    )
    def retrieve(self, response_id: str) -> RunnerUpdate:
        try:
            with limit_llm_concurrency():
                response = self.client.responses.retrieve(response_id)
        except openai.OpenAIError as exc:
            raise _translate_openai_error(exc) from exc
        return response_to_update(response)

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RunnerTransientError),
        reraise=True,
    )
    def cancel(self, response_id: str) -> RunnerUpdate:
        try:
            with limit_llm_concurrency():
                response = self.client.responses.cancel(response_id)
        except openai.OpenAIError as exc:
            raise _translate_openai_error(exc) from exc
        return response_to_update(response)


class StubResearchRunner:
    """Local stand-in used when no OpenAI key is configured."""

    def submit(self, job: JobSnapshot) -> RunnerUpdate:
        return RunnerUpdate(
            status="completed",
            response_id=f"stub_{job.job_id}",
            result=build_stub_research(job),
        )

    def retrieve(self, response_id: str) -> RunnerUpdate:
        return RunnerUpdate(status="completed", response_id=response_id)

    def cancel(self, response_id: str) -> RunnerUpdate:
        return RunnerUpdate(status="cancelled", response_id=response_id)


def get_research_runner() -> ResearchRunner:
    if llm_configured():
        return OpenAIDeepResearchRunner()
    logger.info("OPENAI_API_KEY not set; using stub research runner")
    return StubResearchRunner()
