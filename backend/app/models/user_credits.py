from sqlalchemy import Column, Integer, String, Numeric, DateTime
from datetime import datetime

from ..core.db import Base


class UserCredits(Base):
    __tablename__ = "user_credits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), unique=True, index=True, nullable=False)
    credits = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
