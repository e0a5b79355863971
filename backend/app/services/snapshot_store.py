from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.writing_desk_job import WritingDeskJob
from ..schemas.writing_desk import (
    FORM_FIELDS,
    JobDraft,
    JobForm,
    JobPhase,
    JobSnapshot,
    ResearchState,
)
from .encryption import FieldCipher, FieldDecryptionError, get_field_cipher

logger = logging.getLogger(__name__)

_FORM_KEYS = {name: JobForm.model_fields[name].alias for name in FORM_FIELDS}


class JobNotFoundError(LookupError):
    pass


class SnapshotValidationError(ValueError):
    """A stored or submitted job does not satisfy the job invariants."""


class JobConflictError(Exception):
    """A write would replace a job whose research run is still in flight."""

    def __init__(self, message: str, job: JobSnapshot):
        super().__init__(message)
        self.job = job


def _is_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _draft_fields(draft: JobDraft, job_id: str) -> dict[str, Any]:
    data = draft.model_dump(include=set(JobDraft.model_fields))
    data["job_id"] = job_id
    return data


def resolve_job_id(existing: JobSnapshot | None, requested: str | None) -> str:
    """
    Pick the job id a write lands on.

    A matching id keeps the job; anything else (no id, an unknown id) starts
    a new job. Ids are only taken from the client when there is no job yet.
    """
    if existing is None:
        return requested if _is_uuid(requested) else str(uuid.uuid4())
    if requested == existing.job_id:
        return existing.job_id
    return str(uuid.uuid4())


class SnapshotStore:
    """
    Encrypted persistence for the one active job per user.

    Writes flush and, unless told otherwise, commit. Research-owning callers
    pass ``commit=False`` so the state change and any credit movement land in
    a single transaction.
    """

    def __init__(self, db: Session, cipher: FieldCipher | None = None):
        self.db = db
        self.cipher = cipher or get_field_cipher()

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _row(self, user_id: str, *, for_update: bool = False) -> WritingDeskJob | None:
        query = self.db.query(WritingDeskJob).filter(WritingDeskJob.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get(self, user_id: str, *, for_update: bool = False) -> JobSnapshot | None:
        row = self._row(user_id, for_update=for_update)
        if row is None:
            return None
        return self._to_snapshot(row)

    def list_active_research(self) -> list[str]:
        """User ids whose job has a research run that has not finished."""
        rows = (
            self.db.query(WritingDeskJob.user_id, WritingDeskJob.research)
            .filter(WritingDeskJob.research.isnot(None))
            .all()
        )
        active = []
        for user_id, research in rows:
            status = (research or {}).get("status")
            if status and status not in ("idle", "completed", "failed", "cancelled"):
                active.append(user_id)
        return active

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, user_id: str, draft: JobDraft, *, commit: bool = True) -> JobSnapshot:
        """
        Create or replace the user's job from a client draft.

        Research is never written here. Re-sending what is already stored is
        a no-op, so repeated autosaves do not bump ``updated_at``.
        """
        row = self._row(user_id, for_update=True)
        existing = self._to_snapshot(row) if row is not None else None
        job_id = resolve_job_id(existing, draft.job_id)

        if existing is not None and job_id != existing.job_id:
            if existing.research is not None and existing.research.is_active:
                self.db.rollback()
                raise JobConflictError(
                    "This job has research in progress and cannot be replaced", existing
                )

        if existing is not None and job_id == existing.job_id:
            if existing.research is not None and existing.research.is_active:
                # Phase is pinned while a run is in flight
                draft = draft.model_copy(update={"phase": JobPhase.RESEARCH})
            if _draft_fields(existing, job_id) == _draft_fields(draft, job_id):
                self.db.rollback()
                return existing

        now = datetime.utcnow()
        if row is None:
            row = self._insert_row(user_id, job_id, now)
        elif job_id != row.job_id:
            # New job replaces the old one wholesale
            row.job_id = job_id
            row.research = None
            row.created_at = now

        self._write_draft(row, draft)
        row.updated_at = now
        self.db.flush()
        if commit:
            self.db.commit()
        logger.info(
            "Saved writing desk job",
            extra={"job_id": job_id, "user_id": user_id, "step": "upsert", "status": draft.phase.value},
        )
        return self._to_snapshot(row)

    def _insert_row(self, user_id: str, job_id: str, now: datetime) -> WritingDeskJob:
        try:
            with self.db.begin_nested():
                row = WritingDeskJob(user_id=user_id, job_id=job_id, created_at=now, updated_at=now)
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            # Another request created the job first; write over it
            row = self._row(user_id, for_update=True)
            if row is None:
                raise
            row.job_id = job_id
            row.research = None
        return row

    def _write_draft(self, row: WritingDeskJob, draft: JobDraft) -> None:
        row.phase = draft.phase.value
        row.step_index = draft.step_index
        row.follow_up_index = draft.follow_up_index
        row.form_ciphertext = {
            _FORM_KEYS[name]: self.cipher.encrypt(getattr(draft.form, name)) for name in FORM_FIELDS
        }
        row.follow_up_questions = list(draft.follow_up_questions)
        row.follow_up_answers_ciphertext = [self.cipher.encrypt(a) for a in draft.follow_up_answers]
        row.notes = draft.notes
        row.response_id = draft.response_id

    def delete(self, user_id: str, *, commit: bool = True) -> bool:
        row = self._row(user_id, for_update=True)
        if row is None:
            return False
        self.db.delete(row)
        self.db.flush()
        if commit:
            self.db.commit()
        logger.info("Deleted writing desk job", extra={"job_id": row.job_id, "user_id": user_id, "step": "delete"})
        return True

    def save_research(
        self,
        user_id: str,
        research: ResearchState,
        *,
        phase: JobPhase | None = None,
        commit: bool = False,
    ) -> JobSnapshot:
        row = self._row(user_id, for_update=True)
        if row is None:
            raise JobNotFoundError(f"No writing desk job for user {user_id}")
        row.research = self._encode_research(research)
        if phase is not None:
            row.phase = phase.value
        row.updated_at = datetime.utcnow()
        self.db.flush()
        if commit:
            self.db.commit()
        return self._to_snapshot(row)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode_research(self, research: ResearchState) -> dict[str, Any]:
        data = research.model_dump(mode="json")
        if data.get("result") is not None:
            data["result"] = self.cipher.encrypt(data["result"])
        return data

    def _decrypt_field(self, token: Any, *, field: str, job_id: str) -> str:
        if not token:
            return ""
        try:
            return self.cipher.decrypt(token)
        except FieldDecryptionError:
            logger.warning(
                "Could not decrypt %s; returning it blank",
                field,
                extra={"job_id": job_id, "step": "decrypt"},
            )
            return ""

    def _decode_research(self, raw: Any, job_id: str) -> ResearchState | None:
        if not raw:
            return None
        data = dict(raw)
        if data.get("result"):
            try:
                data["result"] = self.cipher.decrypt(data["result"])
            except FieldDecryptionError:
                logger.warning(
                    "Could not decrypt research result; dropping it",
                    extra={"job_id": job_id, "step": "decrypt"},
                )
                data["result"] = None
        try:
            return ResearchState.model_validate(data)
        except ValidationError:
            logger.error(
                "Stored research state is invalid; ignoring it",
                extra={"job_id": job_id, "step": "decode"},
            )
            return None

    def _to_snapshot(self, row: WritingDeskJob) -> JobSnapshot:
        job_id = row.job_id
        form_tokens = row.form_ciphertext if isinstance(row.form_ciphertext, dict) else {}
        form = JobForm(
            **{
                name: self._decrypt_field(form_tokens.get(key), field=key, job_id=job_id)
                for name, key in _FORM_KEYS.items()
            }
        )

        questions = [q for q in (row.follow_up_questions or []) if isinstance(q, str)]
        tokens = row.follow_up_answers_ciphertext if isinstance(row.follow_up_answers_ciphertext, list) else []
        answers = [
            self._decrypt_field(t, field=f"followUpAnswers[{i}]", job_id=job_id) for i, t in enumerate(tokens)
        ]
        # Keep one answer per question even if stored answers were lost
        answers = (answers + [""] * len(questions))[: len(questions)]

        try:
            return JobSnapshot(
                job_id=job_id,
                user_id=row.user_id,
                phase=row.phase,
                step_index=row.step_index,
                follow_up_index=min(row.follow_up_index or 0, max(len(questions) - 1, 0)),
                form=form,
                follow_up_questions=questions,
                follow_up_answers=answers,
                notes=row.notes,
                response_id=row.response_id,
                research=self._decode_research(row.research, job_id),
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
        except ValidationError as exc:
            raise SnapshotValidationError(f"Stored job {job_id} is invalid: {exc}") from exc
