"""Tests for connection registries, the WebSocket hub and the dispatcher."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from resonance.services.notification_service import (
    MATCH_CONFIRMED,
    NEW_MATCH_AVAILABLE,
    InMemoryConnectionRegistry,
    NotificationDispatcher,
    RedisConnectionRegistry,
    WebSocketHub,
)


class TestInMemoryConnectionRegistry:
    async def test_register_and_lookup(self):
        registry = InMemoryConnectionRegistry()
        await registry.register("u1", "c1")

        assert await registry.lookup("u1") == "c1"
        assert await registry.lookup("u2") is None
        assert await registry.connected_users() == ["u1"]

    async def test_newer_connection_replaces_older(self):
        registry = InMemoryConnectionRegistry()
        await registry.register("u1", "c1")
        await registry.register("u1", "c2")

        assert await registry.lookup("u1") == "c2"

    async def test_stale_unregister_keeps_newer_connection(self):
        registry = InMemoryConnectionRegistry()
        await registry.register("u1", "c1")
        await registry.register("u1", "c2")

        assert await registry.unregister("u1", "c1") is False
        assert await registry.lookup("u1") == "c2"
        assert await registry.unregister("u1", "c2") is True
        assert await registry.lookup("u1") is None

    async def test_unregister_unknown_user(self):
        registry = InMemoryConnectionRegistry()
        assert await registry.unregister("ghost") is False

    async def test_concurrent_registration(self):
        registry = InMemoryConnectionRegistry()
        await asyncio.gather(*(registry.register(f"u{i}", f"c{i}") for i in range(50)))

        assert len(await registry.connected_users()) == 50


class TestRedisConnectionRegistry:
    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.hset = AsyncMock(return_value=1)
        client.hget = AsyncMock(return_value="c1")
        client.hdel = AsyncMock(return_value=1)
        client.hkeys = AsyncMock(return_value=["u1", "u2"])
        client.eval = AsyncMock(return_value=0)
        return client

    async def test_register_writes_hash_field(self, redis_client):
        registry = RedisConnectionRegistry(redis_client, key="test:conns")
        await registry.register("u1", "c1")

        redis_client.hset.assert_awaited_once_with("test:conns", "u1", "c1")

    async def test_lookup_reads_hash_field(self, redis_client):
        registry = RedisConnectionRegistry(redis_client, key="test:conns")

        assert await registry.lookup("u1") == "c1"
        redis_client.hget.assert_awaited_once_with("test:conns", "u1")

    async def test_conditional_unregister_uses_script(self, redis_client):
        registry = RedisConnectionRegistry(redis_client, key="test:conns")

        assert await registry.unregister("u1", "stale") is False
        args = redis_client.eval.await_args.args
        assert args[1:] == (1, "test:conns", "u1", "stale")
        redis_client.hdel.assert_not_awaited()

    async def test_unconditional_unregister(self, redis_client):
        registry = RedisConnectionRegistry(redis_client, key="test:conns")

        assert await registry.unregister("u1") is True
        redis_client.hdel.assert_awaited_once_with("test:conns", "u1")

    async def test_connected_users(self, redis_client):
        registry = RedisConnectionRegistry(redis_client)
        assert await registry.connected_users() == ["u1", "u2"]


class TestWebSocketHub:
    async def test_push_sends_json_frame(self):
        hub = WebSocketHub()
        websocket = MagicMock()
        websocket.send_json = AsyncMock()
        await hub.attach("c1", websocket)

        assert await hub.push("c1", MATCH_CONFIRMED, {"match_id": "m1"}) is True
        websocket.send_json.assert_awaited_once_with(
            {"event": MATCH_CONFIRMED, "data": {"match_id": "m1"}}
        )

    async def test_push_to_unknown_connection(self):
        hub = WebSocketHub()
        assert await hub.push("missing", MATCH_CONFIRMED, {}) is False

    async def test_detach(self):
        hub = WebSocketHub()
        websocket = MagicMock()
        websocket.send_json = AsyncMock()
        await hub.attach("c1", websocket)
        await hub.detach("c1")

        assert await hub.push("c1", MATCH_CONFIRMED, {}) is False
        websocket.send_json.assert_not_awaited()


class TestNotificationDispatcher:
    async def test_delivers_to_connected_user(self, registry, transport, dispatcher):
        await registry.register("u1", "c1")

        assert await dispatcher.deliver("u1", NEW_MATCH_AVAILABLE, {"id": "m1"}) is True
        assert transport.sent == [("c1", NEW_MATCH_AVAILABLE, {"id": "m1"})]

    async def test_offline_user_is_not_an_error(self, transport, dispatcher):
        assert await dispatcher.deliver("nobody", NEW_MATCH_AVAILABLE, {}) is False
        assert transport.sent == []

    async def test_transport_failure_is_swallowed(self, registry, runner):
        await registry.register("u1", "c1")
        broken = MagicMock()
        broken.push = AsyncMock(side_effect=ConnectionResetError("socket closed"))
        dispatcher = NotificationDispatcher(registry, broken, runner)

        assert await dispatcher.deliver("u1", NEW_MATCH_AVAILABLE, {}) is False

    async def test_connection_on_other_worker(self, registry, runner):
        await registry.register("u1", "elsewhere")
        transport = MagicMock()
        transport.push = AsyncMock(return_value=False)
        dispatcher = NotificationDispatcher(registry, transport, runner)

        assert await dispatcher.deliver("u1", NEW_MATCH_AVAILABLE, {}) is False

    async def test_notify_returns_immediately(self, registry, transport, runner, dispatcher):
        await registry.register("u1", "c1")

        task = dispatcher.match_confirmed("u1", {"match_id": "m1"})
        assert transport.sent == []

        await runner.drain()
        assert task.done()
        assert transport.sent == [("c1", MATCH_CONFIRMED, {"match_id": "m1"})]

    async def test_notify_after_close_is_dropped(self, transport, runner, dispatcher):
        await runner.close()

        assert dispatcher.match_status_changed("u1", {}) is None
        assert transport.sent == []
