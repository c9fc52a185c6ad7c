"""
Resonance — Real-time notification dispatch.

Three collaborating pieces:

* **Connection registry** — which connection (if any) a user is currently
  reachable on.  ``InMemoryConnectionRegistry`` guards a dict with an
  ``asyncio.Lock``; ``RedisConnectionRegistry`` stores the mapping in a
  Redis hash so several workers share one view.
* **Push transport** — ``WebSocketHub`` owns the live FastAPI WebSockets of
  this process, keyed by connection id, and writes JSON frames to them.
* **Dispatcher** — ``NotificationDispatcher`` resolves the target's
  connection and pushes the event.  Delivery is at-most-once and
  best-effort: the lifecycle state was persisted before the attempt, so a
  missed event is never retried or queued.
"""

from __future__ import annotations

import abc
import asyncio
import uuid
from typing import Any

import structlog
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from resonance.services.background import BackgroundTaskRunner

logger = structlog.get_logger("resonance.notifications")

# ──────────────────────────────────────────────────────────────────────────────
# Event types
# ──────────────────────────────────────────────────────────────────────────────

NEW_MATCH_AVAILABLE = "new_match_available"
MATCH_STATUS_CHANGED = "match_status_changed"
MATCH_CONFIRMED = "match_confirmed"


# ══════════════════════════════════════════════════════════════════════════════
# Connection registries
# ══════════════════════════════════════════════════════════════════════════════

class ConnectionRegistry(abc.ABC):
    """Concurrency-safe user id -> connection id mapping."""

    @abc.abstractmethod
    async def register(self, user_id: str, connection_id: str) -> None:
        """Map *user_id* to *connection_id*, replacing any previous mapping."""

    @abc.abstractmethod
    async def unregister(self, user_id: str, connection_id: str | None = None) -> bool:
        """Remove the mapping for *user_id*.

        When *connection_id* is given the mapping is only removed if it still
        points at that connection, so a stale disconnect cannot evict a newer
        connection of the same user.
        """

    @abc.abstractmethod
    async def lookup(self, user_id: str) -> str | None:
        """Return the user's connection id, or ``None`` if not connected."""

    @abc.abstractmethod
    async def connected_users(self) -> list[str]:
        ...


class InMemoryConnectionRegistry(ConnectionRegistry):
    """Process-local registry guarded by an ``asyncio.Lock``."""

    def __init__(self) -> None:
        self._connections: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, connection_id: str) -> None:
        async with self._lock:
            self._connections[user_id] = connection_id
        logger.info("connection_registered", user_id=user_id, connection_id=connection_id)

    async def unregister(self, user_id: str, connection_id: str | None = None) -> bool:
        async with self._lock:
            current = self._connections.get(user_id)
            if current is None:
                return False
            if connection_id is not None and current != connection_id:
                return False
            del self._connections[user_id]
        logger.info("connection_unregistered", user_id=user_id, connection_id=current)
        return True

    async def lookup(self, user_id: str) -> str | None:
        async with self._lock:
            return self._connections.get(user_id)

    async def connected_users(self) -> list[str]:
        async with self._lock:
            return list(self._connections)


# Delete the field only if it still holds the expected connection id.
_COMPARE_AND_DELETE = """
if redis.call('HGET', KEYS[1], ARGV[1]) == ARGV[2] then
    return redis.call('HDEL', KEYS[1], ARGV[1])
end
return 0
"""


class RedisConnectionRegistry(ConnectionRegistry):
    """Registry shared across workers through a Redis hash.

    Expects a ``redis.asyncio`` client created with ``decode_responses=True``.
    """

    def __init__(self, redis_client: Any, key: str = "resonance:connections") -> None:
        self._redis = redis_client
        self._key = key

    async def register(self, user_id: str, connection_id: str) -> None:
        await self._redis.hset(self._key, user_id, connection_id)
        logger.info("connection_registered", user_id=user_id, connection_id=connection_id, backend="redis")

    async def unregister(self, user_id: str, connection_id: str | None = None) -> bool:
        if connection_id is None:
            removed = await self._redis.hdel(self._key, user_id)
        else:
            removed = await self._redis.eval(
                _COMPARE_AND_DELETE, 1, self._key, user_id, connection_id
            )
        if removed:
            logger.info("connection_unregistered", user_id=user_id, backend="redis")
        return bool(removed)

    async def lookup(self, user_id: str) -> str | None:
        return await self._redis.hget(self._key, user_id)

    async def connected_users(self) -> list[str]:
        return list(await self._redis.hkeys(self._key))


# ══════════════════════════════════════════════════════════════════════════════
# Push transport
# ══════════════════════════════════════════════════════════════════════════════

class WebSocketHub:
    """Live WebSockets of this process, keyed by connection id."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def new_connection_id() -> str:
        return uuid.uuid4().hex

    async def attach(self, connection_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._sockets[connection_id] = websocket

    async def detach(self, connection_id: str) -> None:
        async with self._lock:
            self._sockets.pop(connection_id, None)

    async def push(self, connection_id: str, event_type: str, payload: dict) -> bool:
        """Send ``{"event": ..., "data": ...}`` to the connection.

        Returns ``False`` when the connection is not held by this process.
        """
        async with self._lock:
            websocket = self._sockets.get(connection_id)
        if websocket is None:
            return False
        await websocket.send_json({"event": event_type, "data": jsonable_encoder(payload)})
        return True


# ══════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ══════════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """Best-effort, non-blocking delivery of match lifecycle events."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: Any,
        runner: BackgroundTaskRunner,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._runner = runner

    async def deliver(
        self, target_user_id: uuid.UUID | str, event_type: str, payload: dict
    ) -> bool:
        """Push one event now.  Never raises; returns whether it was sent."""
        target = str(target_user_id)
        log = logger.bind(target_user_id=target, event_type=event_type)
        try:
            connection_id = await self._registry.lookup(target)
            if connection_id is None:
                log.info("notification_not_delivered", reason="user not connected")
                return False

            delivered = await self._transport.push(connection_id, event_type, payload)
            if not delivered:
                log.info(
                    "notification_not_delivered",
                    reason="connection not held by this worker",
                    connection_id=connection_id,
                )
                return False

            log.info("notification_delivered", connection_id=connection_id)
            return True
        except Exception:
            log.exception("notification_delivery_failed")
            return False

    def notify(
        self, target_user_id: uuid.UUID | str, event_type: str, payload: dict
    ) -> asyncio.Task | None:
        """Schedule delivery and return immediately."""
        return self._runner.spawn(
            self.deliver(target_user_id, event_type, payload),
            label=f"notify:{event_type}:{target_user_id}",
        )

    # ── Convenience wrappers ──────────────────────────────────────────────

    def new_match_available(self, target_user_id: uuid.UUID | str, payload: dict):
        return self.notify(target_user_id, NEW_MATCH_AVAILABLE, payload)

    def match_status_changed(self, target_user_id: uuid.UUID | str, payload: dict):
        return self.notify(target_user_id, MATCH_STATUS_CHANGED, payload)

    def match_confirmed(self, target_user_id: uuid.UUID | str, payload: dict):
        return self.notify(target_user_id, MATCH_CONFIRMED, payload)
