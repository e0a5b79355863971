from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime

from ..core.db import Base


class WritingDeskJob(Base):
    """
    The single active letter-writing job owned by a user.

    Free-text content never lands here in clear: each form field and each
    follow-up answer is stored as its own Fernet token so one corrupt value
    cannot take the rest of the record down with it.
    """
    __tablename__ = "writing_desk_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), unique=True, nullable=False)
    user_id = Column(String(128), unique=True, index=True, nullable=False)

    phase = Column(String(16), nullable=False, default="initial")
    step_index = Column(Integer, nullable=False, default=0)
    follow_up_index = Column(Integer, nullable=False, default=0)

    form_ciphertext = Column(JSON, nullable=False, default=dict)  # {issueDetail: token, ...}
    follow_up_questions = Column(JSON, nullable=False, default=list)
    follow_up_answers_ciphertext = Column(JSON, nullable=False, default=list)  # [token, ...]
    notes = Column(Text, nullable=True)
    response_id = Column(String(255), nullable=True)

    # Embedded research run; null until research is first started for this job
    research = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
