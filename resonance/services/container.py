"""
Resonance — Service wiring.

Builds the long-lived service graph once per process.  ``resonance.main``
stores the container on ``app.state.services``; tests build one against an
in-memory database.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.config import Settings, get_settings
from resonance.services.background import BackgroundTaskRunner
from resonance.services.matching_service import MatchLifecycleService
from resonance.services.notification_service import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    NotificationDispatcher,
    WebSocketHub,
)
from resonance.services.prompt_service import PromptService


@dataclass
class ServiceContainer:
    session_factory: async_sessionmaker[AsyncSession]
    registry: ConnectionRegistry
    hub: WebSocketHub
    runner: BackgroundTaskRunner
    dispatcher: NotificationDispatcher
    lifecycle: MatchLifecycleService
    prompts: PromptService


def build_container(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ConnectionRegistry | None = None,
    transport=None,
    settings: Settings | None = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    registry = registry or InMemoryConnectionRegistry()
    hub = WebSocketHub()
    runner = BackgroundTaskRunner()
    dispatcher = NotificationDispatcher(registry, transport or hub, runner)
    lifecycle = MatchLifecycleService(session_factory, dispatcher, settings)
    prompts = PromptService(session_factory, lifecycle, runner, settings)
    return ServiceContainer(
        session_factory=session_factory,
        registry=registry,
        hub=hub,
        runner=runner,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        prompts=prompts,
    )
