"""
Shared pytest fixtures.

Settings are read from the environment at import time, so the defaults below
must be in place before anything under ``app`` is imported.
"""
import os
import uuid

from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ["ENV"] = "dev"
os.environ["OPENAI_API_KEY"] = ""
os.environ["API_AUTH_KEY"] = ""
os.environ["FIELD_ENCRYPTION_KEYS"] = Fernet.generate_key().decode()

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.db import Base
from app.models import user_credits, writing_desk_job  # noqa: F401  (register tables)
from app.services.coordinator import ResearchCoordinator
from app.services.credits import CreditLedger
from app.services.deep_research import RunnerError
from app.services.encryption import FieldCipher
from app.services.research_state import RunnerUpdate
from app.services.snapshot_store import SnapshotStore


class InMemoryLock:
    """Same contract as RunLock, without Redis."""

    def __init__(self):
        self.held = {}
        self.acquired = []
        self.released = []

    def acquire(self, job_id, ttl_seconds):
        if job_id in self.held:
            return None
        token = uuid.uuid4().hex
        self.held[job_id] = token
        self.acquired.append(job_id)
        return token

    def release(self, job_id, token):
        if self.held.get(job_id) != token:
            return False
        del self.held[job_id]
        self.released.append(job_id)
        return True


class FakeRunner:
    """Scriptable research runner."""

    def __init__(self):
        self.submitted = []
        self.cancelled = []
        self.submit_update = RunnerUpdate(status="queued", response_id="resp_123")
        self.submit_error: RunnerError | None = None
        self.retrieve_updates = []
        self.retrieve_error: RunnerError | None = None

    def submit(self, job):
        self.submitted.append(job.job_id)
        if self.submit_error is not None:
            raise self.submit_error
        return self.submit_update

    def retrieve(self, response_id):
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if self.retrieve_updates:
            return self.retrieve_updates.pop(0)
        return RunnerUpdate(status="in_progress", response_id=response_id)

    def cancel(self, response_id):
        self.cancelled.append(response_id)
        return RunnerUpdate(status="cancelled", response_id=response_id)


class RecordingDispatch:
    def __init__(self):
        self.calls = []
        self.error: Exception | None = None

    def __call__(self, task_name, args):
        if self.error is not None:
            raise self.error
        self.calls.append((task_name, list(args)))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cipher():
    return FieldCipher([Fernet.generate_key()])


@pytest.fixture
def store(db, cipher):
    return SnapshotStore(db, cipher=cipher)


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def lock():
    return InMemoryLock()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def dispatch():
    return RecordingDispatch()


@pytest.fixture
def coordinator(db, store, ledger, lock, runner, dispatch):
    return ResearchCoordinator(
        db,
        store=store,
        ledger=ledger,
        lock=lock,
        runner=runner,
        dispatch=dispatch,
    )
