"""Shared fixtures: in-memory database, fake queue, sample rows."""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from ezsign.database import create_session_factory
from ezsign.models.base import Base, utcnow
# Import all models to register them with Base
from ezsign.models import dead_letter, reminder  # noqa: F401
from ezsign.models.document import Document, DocumentStatus, Signer, SignerStatus, User
from ezsign.models.webhook import Webhook
from ezsign.queue import QueueName


class FakeJobQueue:
    """Records jobs instead of talking to Redis."""

    def __init__(self):
        self.enqueued = []
        self.removed = []
        self.fail_enqueue = False

    async def enqueue(self, job, job_id=None, defer_by=None):
        if self.fail_enqueue:
            raise ConnectionError("redis unavailable")
        job_id = job_id or f"job-{len(self.enqueued) + 1}"
        self.enqueued.append((job, job_id, defer_by))
        return job_id

    async def remove(self, queue_name, job_id):
        self.removed.append((QueueName(queue_name), job_id))
        return True

    async def close(self):
        pass


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def job_queue():
    return FakeJobQueue()


@pytest.fixture
async def user(db):
    user = User(email="owner@example.com", name="Olivia Owner")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def webhook(db, user):
    webhook = Webhook(
        user_id=user.id,
        url="https://hooks.example.com/ezsign",
        events=["document.completed"],
        secret="whsec_0123456789abcdef0123456789abcdef",
        active=True,
    )
    db.add(webhook)
    await db.commit()
    return webhook


@pytest.fixture
async def pending_document(db, user):
    """Pending document expiring in 10 days with one pending signer."""
    document = Document(
        user_id=user.id,
        title="Master Services Agreement",
        status=DocumentStatus.PENDING,
        expires_at=utcnow() + timedelta(days=10),
    )
    db.add(document)
    await db.commit()

    signer = Signer(
        document_id=document.id,
        email="signer@example.com",
        name="Sam Signer",
        status=SignerStatus.PENDING,
        access_token="tok_abc123",
    )
    db.add(signer)
    await db.commit()
    return document, signer
