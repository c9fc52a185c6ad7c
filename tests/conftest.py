"""Shared pytest fixtures for Resonance tests."""
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from resonance.config import Settings
from resonance.database import Base
from resonance.models import (
    DeployedPrompt,
    MatchingSession,
    MatchResult,
    Message,
    PromptStatus,
    User,
)
from resonance.services.background import BackgroundTaskRunner
from resonance.services.container import build_container
from resonance.services.notification_service import (
    InMemoryConnectionRegistry,
    NotificationDispatcher,
)
from resonance.utils.clock import utcnow


class RecordingTransport:
    """Push transport that records frames instead of writing to sockets."""

    def __init__(self):
        self.sent = []

    async def push(self, connection_id, event_type, payload):
        self.sent.append((connection_id, event_type, payload))
        return True

    def events_for(self, connection_id):
        return [(event, data) for cid, event, data in self.sent if cid == connection_id]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        STORE_RETRY_ATTEMPTS=2,
        STORE_RETRY_MAX_WAIT_SECONDS=0.01,
    )


@pytest.fixture
async def test_engine():
    """Create an async SQLite in-memory engine for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def registry():
    return InMemoryConnectionRegistry()


@pytest.fixture
async def runner():
    runner = BackgroundTaskRunner()
    yield runner
    await runner.close(timeout=1.0)


@pytest.fixture
def dispatcher(registry, transport, runner):
    return NotificationDispatcher(registry, transport, runner)


@pytest.fixture
async def services(session_factory, registry, transport, settings):
    container = build_container(
        session_factory, registry=registry, transport=transport, settings=settings
    )
    yield container
    await container.runner.close(timeout=1.0)


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


# ──────────────────────────────────────────────────────────────────────────────
# Data builders
# ──────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def create_user(session_factory):
    async def _create(username: str, display_name: str | None = None) -> User:
        async with session_factory() as session:
            async with session.begin():
                user = User(username=username, display_name=display_name or username.title())
                session.add(user)
        return user

    return _create


@pytest.fixture
def create_prompt(session_factory):
    async def _create(
        user: User,
        question: str = "Q1",
        theme_id: str = "T1",
        theme_name: str | None = None,
        status: PromptStatus = PromptStatus.ACTIVE,
        deployed_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> DeployedPrompt:
        deployed_at = deployed_at or utcnow()
        async with session_factory() as session:
            async with session.begin():
                prompt = DeployedPrompt(
                    user_id=user.id,
                    theme_id=theme_id,
                    theme_name=theme_name or f"Theme {theme_id}",
                    question=question,
                    status=status,
                    deployed_at=deployed_at,
                    expires_at=expires_at or deployed_at + timedelta(days=3),
                )
                session.add(prompt)
        return prompt

    return _create


@pytest.fixture
def send_message(session_factory):
    async def _send(sender: User, receiver: User, content: str = "hi") -> None:
        async with session_factory() as session:
            async with session.begin():
                session.add(Message(sender_id=sender.id, receiver_id=receiver.id, content=content))

    return _send


@pytest.fixture
def load_pair(session_factory):
    """Return both rows of the match pair containing *match_id*."""
    async def _load(match_id: uuid.UUID) -> list[MatchResult]:
        async with session_factory() as session:
            match = await session.get(MatchResult, match_id)
            result = await session.execute(
                select(MatchResult)
                .where(MatchResult.pair_id == match.pair_id)
                .order_by(MatchResult.id)
            )
            return list(result.scalars().all())

    return _load


@pytest.fixture
def load_all_matches(session_factory):
    async def _load() -> list[MatchResult]:
        async with session_factory() as session:
            result = await session.execute(select(MatchResult))
            return list(result.scalars().all())

    return _load


@pytest.fixture
async def alice_and_bob(create_user, create_prompt):
    """Two users with ACTIVE prompts sharing question and theme."""
    alice = await create_user("alice")
    bob = await create_user("bob")
    alice_prompt = await create_prompt(alice, question="Q1", theme_id="T1")
    bob_prompt = await create_prompt(bob, question="Q1", theme_id="T1")
    return alice, bob, alice_prompt, bob_prompt


@pytest.fixture
async def pending_match(lifecycle, alice_and_bob):
    """A freshly discovered PENDING match seen from Alice's side."""
    alice, bob, alice_prompt, _ = alice_and_bob
    [summary] = await lifecycle.find_matches(alice.id, alice_prompt.id)
    return summary


@pytest.fixture
def session_for(session_factory):
    async def _get(user_id: uuid.UUID, prompt_id: uuid.UUID) -> MatchingSession | None:
        async with session_factory() as session:
            result = await session.execute(
                select(MatchingSession).where(
                    MatchingSession.user_id == user_id,
                    MatchingSession.prompt_id == prompt_id,
                )
            )
            return result.scalar_one_or_none()

    return _get
