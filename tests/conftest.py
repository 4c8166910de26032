"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                         # Run all tests
    pytest tests/test_store.py -v         # Run specific test file

Database tests run against in-memory SQLite (aiosqlite). StaticPool keeps a
single connection alive so every session in a test sees the same database.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from inboxsync.db.models import AccountConnection, Base
from inboxsync.db.session import SessionFactory, build_session_factory, db_session
from inboxsync.errors import UpstreamError, UpstreamNotFoundError
from inboxsync.graph.payloads import (
    ConversationDetail,
    ConversationSummary,
    ParticipantProfile,
)
from inboxsync.observability.metrics import get_metrics

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return build_session_factory(engine)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset_all()
    yield


async def add_account(
    factory: SessionFactory,
    account_id: str = "ACC",
    *,
    token: str | None = "token-abc",
    self_scoped_id: str | None = "SELF",
    username: str | None = "biz",
    expires_at: datetime | None = None,
) -> None:
    async with db_session(factory) as db:
        db.add(
            AccountConnection(
                account_id=account_id,
                access_token=token,
                token_expires_at=expires_at,
                self_scoped_id=self_scoped_id,
                username=username,
            )
        )


async def count_rows(factory: SessionFactory, model: Any, *where: Any) -> int:
    async with db_session(factory) as db:
        query = select(func.count()).select_from(model)
        for clause in where:
            query = query.where(clause)
        return (await db.execute(query)).scalar_one()


# ─────────────────────────────────────────────────────────────────────────────
# Clock
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ─────────────────────────────────────────────────────────────────────────────
# Fake Graph API
# ─────────────────────────────────────────────────────────────────────────────

class FakeGraph:
    """In-process stand-in for GraphClient with call recording.

    ``details`` maps conversation ID to a raw Graph detail payload; values
    can also be exceptions to raise for that conversation.
    """

    def __init__(self) -> None:
        self.summaries: list[dict[str, Any]] = []
        self.details: dict[str, Any] = {}
        self.lookups: dict[str, str | None] = {}
        self.profiles: dict[str, Any] = {}
        self.list_error: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    async def list_conversations(
        self, account_id: str, token: str, since=None, until=None,
    ) -> list[ConversationSummary]:
        self.calls.append(("list_conversations", account_id))
        if self.list_error is not None:
            raise self.list_error
        summaries = [ConversationSummary.model_validate(s) for s in self.summaries]
        return [
            s for s in summaries
            if s.updated_time is None
            or (
                (since is None or s.updated_time >= since)
                and (until is None or s.updated_time <= until)
            )
        ]

    async def get_conversation_detail(
        self, conversation_id: str, token: str,
    ) -> ConversationDetail:
        self.calls.append(("get_conversation_detail", conversation_id))
        detail = self.details.get(conversation_id)
        if isinstance(detail, Exception):
            raise detail
        if detail is None:
            raise UpstreamNotFoundError("not found", status_code=404)
        return ConversationDetail.model_validate({"id": conversation_id, **detail})

    async def find_conversation_with(self, participant_id: str, token: str) -> str | None:
        self.calls.append(("find_conversation_with", participant_id))
        return self.lookups.get(participant_id)

    async def get_participant_profile(
        self, participant_id: str, token: str,
    ) -> ParticipantProfile:
        self.calls.append(("get_participant_profile", participant_id))
        profile = self.profiles.get(participant_id)
        if isinstance(profile, Exception):
            raise profile
        if profile is None:
            raise UpstreamError("profile unavailable", status_code=400, error_code=100)
        return ParticipantProfile.from_graph(profile)

    async def close(self) -> None:
        pass

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


def thread(
    participants: list[dict[str, Any]],
    messages: list[dict[str, Any]],
) -> dict[str, Any]:
    """Raw conversation detail payload in Graph's edge format."""
    return {"participants": {"data": participants}, "messages": {"data": messages}}


def graph_message(
    message_id: str,
    sender: str,
    recipient: str,
    created: datetime,
    text: str | None = None,
) -> dict[str, Any]:
    return {
        "id": message_id,
        "from": {"id": sender},
        "to": {"data": [{"id": recipient}]},
        "message": text,
        "created_time": created.strftime("%Y-%m-%dT%H:%M:%S+0000"),
    }
