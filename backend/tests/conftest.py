"""Shared pytest fixtures for the approval workflow engine test suite.

Provides:
- A file-backed async SQLite database per test (no PostgreSQL needed)
- Session factory, controllable clock and in-memory directory
- A recording notification channel
- A fully wired WorkflowService and helpers to publish definitions
"""

import os
from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from db.session import close_db, create_db_engine, create_session_factory, init_db  # noqa: E402
from notifications.channels import BaseChannel, DeliveryResult, NotificationChannel  # noqa: E402
from notifications.manager import NotificationManager  # noqa: E402
from services.workflow_service import build_workflow_service  # noqa: E402
from workflow.assignment import StaticDirectory  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 4, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, **kwargs)
        return self.now


class RecordingChannel(BaseChannel):
    """Keeps every notification it is asked to deliver."""

    channel_type = NotificationChannel.MEMORY

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, notification) -> DeliveryResult:
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append(notification)
        return DeliveryResult(success=True, channel=self.channel_type, recipient=notification.recipient)

    def to(self, recipient: str, template_key: Optional[str] = None) -> list:
        return [
            n for n in self.sent
            if n.recipient == recipient and (template_key is None or n.template_key == template_key)
        ]

    def keys(self) -> list[str]:
        return [n.template_key for n in self.sent]


async def no_sleep(delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        DIRECTORY_URL=None,
        NOTIFICATION_WEBHOOK_URL=None,
        DIRECTORY_RETRY_PRESET="none",
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    """Fresh database per test; every session shares the same file."""
    engine = create_db_engine(settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A single session for tests that work with rows directly."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory() -> StaticDirectory:
    return StaticDirectory(
        members={
            "plan_reviewers": ["alice", "bob", "carol"],
            "inspectors": ["ivan", "irene"],
            "clerks": ["kim"],
            "empty_role": [],
        },
        supervisors={
            "alice": "sam",
            "bob": "sam",
            "carol": "sue",
            "ivan": "sue",
            "kim": "sam",
        },
    )


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def service(settings, session_factory, directory, channel, clock):
    return build_workflow_service(
        settings,
        session_factory=session_factory,
        directory=directory,
        notifier=NotificationManager(channels=[channel]),
        clock=clock,
        instance_id="test-sweeper",
    )


@pytest.fixture
def second_service(settings, session_factory, directory, clock):
    """Another process on the same database: its own engine, locks and sweeper."""
    return build_workflow_service(
        settings,
        session_factory=session_factory,
        directory=directory,
        notifier=NotificationManager(channels=[RecordingChannel()]),
        clock=clock,
        instance_id="test-sweeper-2",
    )


@pytest.fixture
def store(service):
    return service.definitions


@pytest.fixture
def engine(service):
    return service.engine


@pytest.fixture
def tasks(service):
    return service.tasks


@pytest.fixture
def scheduler(service):
    return service.scheduler


@pytest.fixture
def publish(store):
    """Create, fill and publish a workflow in one call.

    Steps are dicts of WorkflowStep fields. ``next_step_on_success`` and
    ``next_step_on_failure`` may name another step by its ``key``.
    Returns (compiled workflow, {key: step id}).
    """

    async def _publish(steps: list[dict], name: str = "Permit Review", type: str = "permit_review", **workflow_fields):
        draft = await store.create_draft(name=name, type=type, **workflow_fields)
        ids = {}
        links = {}
        for i, raw in enumerate(steps):
            fields = dict(raw)
            key = fields.pop("key", f"s{i}")
            links[key] = (fields.pop("next_step_on_success", None), fields.pop("next_step_on_failure", None))
            step = await store.add_step(draft.id, **fields)
            ids[key] = step.id
        for key, (on_success, on_failure) in links.items():
            if on_success or on_failure:
                await store.update_step(
                    ids[key],
                    next_step_on_success=ids.get(on_success),
                    next_step_on_failure=ids.get(on_failure),
                )
        compiled = await store.publish(draft.id, actor="admin")
        return compiled, ids

    return _publish


def approval(name: str, users=None, role=None, **fields) -> dict:
    """WorkflowStep fields for an approval step."""
    if role is not None:
        fields.setdefault("assignment_type", "role")
        fields.setdefault("assigned_to", [role])
    else:
        fields.setdefault("assignment_type", "user")
        fields.setdefault("assigned_to", list(users or []))
    return {"name": name, "step_type": "approval", **fields}
