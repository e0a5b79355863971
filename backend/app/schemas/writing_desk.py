# backend/app/schemas/writing_desk.py
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MAX_FIELD_LEN = 5000
MAX_FOLLOW_UP_QUESTIONS = 5
MAX_QUESTION_LEN = 1000

# Intake steps, in the order the user answers them
FORM_FIELDS = ("issue_detail", "affected_detail", "background_detail", "desired_outcome")


class JobPhase(str, Enum):
    INITIAL = "initial"
    GENERATING = "generating"
    FOLLOWUP = "followup"
    SUMMARY = "summary"
    RESEARCH = "research"


class ResearchStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REQUIRES_ACTION = "requires_action"


TERMINAL_RESEARCH_STATUSES = frozenset(
    {ResearchStatus.COMPLETED, ResearchStatus.FAILED, ResearchStatus.CANCELLED}
)


class CamelModel(BaseModel):
    """Snake-case attributes in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobForm(CamelModel):
    issue_detail: str = ""
    affected_detail: str = ""
    background_detail: str = ""
    desired_outcome: str = ""

    @field_validator(*FORM_FIELDS, mode="before")
    @classmethod
    def _none_to_blank(cls, v):
        return "" if v is None else v

    @field_validator(*FORM_FIELDS)
    @classmethod
    def _check_length(cls, v: str) -> str:
        if len(v) > MAX_FIELD_LEN:
            raise ValueError(f"answers must be at most {MAX_FIELD_LEN} characters")
        return v

    def is_blank(self) -> bool:
        return not any(getattr(self, name).strip() for name in FORM_FIELDS)


class ResearchActivity(CamelModel):
    id: str
    type: str
    label: str
    status: str = "completed"
    created_at: datetime
    url: str | None = None


class ResearchState(CamelModel):
    """
    One research run embedded in a job.

    Terminal payloads are tied to their status: ``result`` only exists on a
    completed run and ``error`` only on a failed one. A new run is a new
    instance, never a mutation of a finished one.
    """

    status: ResearchStatus = ResearchStatus.IDLE
    progress: float | None = Field(default=None, ge=0, le=100)
    activities: list[ResearchActivity] = Field(default_factory=list)
    result: str | None = None
    error: str | None = None
    response_id: str | None = None
    credits_charged: float | None = None
    credits_refunded: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    billed_at: datetime | None = None
    updated_at: datetime | None = None
    cursor: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_terminal_payload(self):
        if self.result is not None and self.status != ResearchStatus.COMPLETED:
            raise ValueError("result is only present on a completed research run")
        if self.error is not None and self.status != ResearchStatus.FAILED:
            raise ValueError("error is only present on a failed research run")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RESEARCH_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal and self.status != ResearchStatus.IDLE


class JobDraft(CamelModel):
    """
    The user-editable part of a job: what the client autosaves.

    Any ``research`` key sent by a client is ignored; research is server-owned.
    """

    job_id: str | None = None
    phase: JobPhase = JobPhase.INITIAL
    step_index: int = Field(default=0, ge=0)
    follow_up_index: int = Field(default=0, ge=0)
    form: JobForm = Field(default_factory=JobForm)
    follow_up_questions: list[str] = Field(default_factory=list)
    follow_up_answers: list[str] = Field(default_factory=list)
    notes: str | None = None
    response_id: str | None = None

    @field_validator("follow_up_questions")
    @classmethod
    def _check_questions(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_FOLLOW_UP_QUESTIONS:
            raise ValueError(f"at most {MAX_FOLLOW_UP_QUESTIONS} follow-up questions are allowed")
        if any(len(q) > MAX_QUESTION_LEN for q in v):
            raise ValueError(f"follow-up questions must be at most {MAX_QUESTION_LEN} characters")
        return v

    @field_validator("follow_up_answers")
    @classmethod
    def _check_answers(cls, v: list[str]) -> list[str]:
        if any(len(a) > MAX_FIELD_LEN for a in v):
            raise ValueError(f"answers must be at most {MAX_FIELD_LEN} characters")
        return v

    @field_validator("notes", "response_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            stripped = v.strip()
            return stripped or None
        return v

    @model_validator(mode="after")
    def _check_cursors(self):
        if len(self.follow_up_answers) != len(self.follow_up_questions):
            raise ValueError("followUpAnswers must have one entry per follow-up question")
        if self.step_index > len(FORM_FIELDS) - 1:
            raise ValueError(f"stepIndex must be between 0 and {len(FORM_FIELDS) - 1}")
        if self.follow_up_index > max(len(self.follow_up_questions) - 1, 0):
            raise ValueError("followUpIndex is outside the follow-up question list")
        return self

    def is_empty(self) -> bool:
        return (
            self.phase == JobPhase.INITIAL
            and self.step_index == 0
            and self.form.is_blank()
            and not self.follow_up_questions
        )


class JobSnapshot(JobDraft):
    job_id: str
    user_id: str | None = Field(default=None, exclude=True)
    research: ResearchState | None = None
    created_at: datetime
    updated_at: datetime

    def to_draft(self) -> JobDraft:
        return JobDraft.model_validate(
            self.model_dump(include=set(JobDraft.model_fields))
        )


class StartResearchOut(CamelModel):
    job: JobSnapshot
    remaining_credits: float | None = None
    started: bool = False


class FollowUpRequest(JobForm):
    @model_validator(mode="after")
    def _require_issue(self):
        if not self.issue_detail.strip():
            raise ValueError("issueDetail must not be empty")
        return self


class FollowUpOut(CamelModel):
    follow_up_questions: list[str] = Field(default_factory=list)
    notes: str | None = None
    response_id: str | None = None
    remaining_credits: float | None = None


class CreditsOut(CamelModel):
    credits: float


class AdjustCreditsRequest(CamelModel):
    amount: float = Field(gt=0, le=1000)
