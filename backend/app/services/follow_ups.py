from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

import openai

from ..core.config import get_settings
from ..schemas.writing_desk import MAX_FOLLOW_UP_QUESTIONS, MAX_QUESTION_LEN, JobForm
from .llm import get_llm_client, limit_llm_concurrency, llm_configured

logger = logging.getLogger(__name__)


class FollowUpGenerationError(Exception):
    pass


@dataclass
class FollowUpResult:
    questions: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    response_id: Optional[str] = None


FOLLOW_UP_PROMPT = """A UK constituent is preparing a letter to their Member of Parliament.
They have answered four intake questions:

- What is the issue? {issue_detail}
- Who is affected and how? {affected_detail}
- What has happened so far? {background_detail}
- What outcome do they want? {desired_outcome}

Ask up to {max_questions} short follow-up questions that would fill real gaps
before research starts: dates, places, names of organisations, reference
numbers, what has already been tried. Do not ask for anything already
answered. If nothing important is missing, ask nothing.

Respond with JSON only:
{{"questions": ["..."], "notes": "one sentence on what the questions are for, or null"}}
"""


def normalise_questions(raw: Any) -> List[str]:
    """Drop blanks and duplicates, cap length and count."""
    if not isinstance(raw, list):
        return []
    seen = set()
    questions: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        question = " ".join(item.split())[:MAX_QUESTION_LEN]
        key = question.lower()
        if not question or key in seen:
            continue
        seen.add(key)
        questions.append(question)
        if len(questions) == MAX_FOLLOW_UP_QUESTIONS:
            break
    return questions


def parse_follow_up_response(text: str) -> FollowUpResult:
    match = re.search(r"\{[\s\S]*\}", text or "")
    if not match:
        raise FollowUpGenerationError("Follow-up generator returned no JSON")
    try:
        data = json.loads(match.group())
    except json.JSONDecodeError as exc:
        raise FollowUpGenerationError("Follow-up generator returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise FollowUpGenerationError("Follow-up generator returned unexpected JSON")

    notes = data.get("notes")
    return FollowUpResult(
        questions=normalise_questions(data.get("questions")),
        notes=notes.strip() or None if isinstance(notes, str) else None,
    )


def _stub_follow_ups(form: JobForm) -> FollowUpResult:
    questions = []
    if not re.search(r"\d", form.background_detail):
        questions.append("When did this start, and are there any key dates we should mention?")
    if len(form.desired_outcome.split()) < 6:
        questions.append("What specific action would you like your MP to take?")
    return FollowUpResult(questions=questions, notes="DEV-STUB follow-up questions")


def generate_follow_ups(form: JobForm) -> FollowUpResult:
    """
    Ask the model for clarifying questions about the intake answers.

    Returns between zero and five questions. Any provider or parsing problem
    surfaces as ``FollowUpGenerationError`` so the caller can refund.
    """
    if not llm_configured():
        return _stub_follow_ups(form)

    settings = get_settings()
    prompt = FOLLOW_UP_PROMPT.format(
        issue_detail=form.issue_detail,
        affected_detail=form.affected_detail or "(not provided)",
        background_detail=form.background_detail or "(not provided)",
        desired_outcome=form.desired_outcome or "(not provided)",
        max_questions=MAX_FOLLOW_UP_QUESTIONS,
    )
    client = get_llm_client()
    try:
        with limit_llm_concurrency():
            response = client.chat.completions.create(
                model=settings.FOLLOW_UP_MODEL,
                messages=[
                    {"role": "system", "content": "You help constituents write to their MP. You output JSON."},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
                max_tokens=600,
            )
    except openai.OpenAIError as exc:
        logger.warning("Follow-up generation failed: %s", exc, extra={"step": "follow_up_generate"})
        raise FollowUpGenerationError("Follow-up generation failed") from exc

    text = response.choices[0].message.content if response.choices else ""
    result = parse_follow_up_response(text or "")
    result.response_id = getattr(response, "id", None)
    logger.info(
        "Generated follow-up questions",
        extra={"step": "follow_up_generate", "status": str(len(result.questions))},
    )
    return result
