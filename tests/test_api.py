"""HTTP and WebSocket surface tests (httpx ASGITransport, in-memory DB)."""
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import WebSocketDisconnect
from httpx import ASGITransport, AsyncClient

from resonance.api.realtime import match_events
from resonance.main import create_app
from resonance.services.container import build_container
from resonance.services.errors import TransientStoreFailure
from resonance.services.notification_service import NEW_MATCH_AVAILABLE


@pytest.fixture
async def api_client(services):
    """Async HTTP client hitting a fresh app wired to the test services."""
    app = create_app()
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _as(user):
    return {"X-User-Id": str(user.id)}


class TestMatchingEndpoints:
    async def test_find_matches(self, api_client, alice_and_bob):
        alice, bob, alice_prompt, _ = alice_and_bob

        resp = await api_client.post(
            "/api/v1/matches/find",
            json={"deployed_prompt_id": str(alice_prompt.id)},
            headers=_as(alice),
        )

        assert resp.status_code == 200
        [match] = resp.json()
        assert match["user_profile"]["id"] == str(bob.id)
        assert match["status"] == "PENDING"
        assert match["compatibility_score"] == 1.0

    async def test_missing_identity_header(self, api_client, alice_and_bob):
        _, _, alice_prompt, _ = alice_and_bob
        resp = await api_client.post(
            "/api/v1/matches/find", json={"deployed_prompt_id": str(alice_prompt.id)}
        )
        assert resp.status_code == 422

    async def test_find_with_unknown_prompt(self, api_client, alice_and_bob):
        alice, _, _, _ = alice_and_bob
        resp = await api_client.post(
            "/api/v1/matches/find",
            json={"deployed_prompt_id": str(uuid.uuid4())},
            headers=_as(alice),
        )
        assert resp.status_code == 404

    async def test_find_with_foreign_prompt(self, api_client, alice_and_bob):
        alice, _, _, bob_prompt = alice_and_bob
        resp = await api_client.post(
            "/api/v1/matches/find",
            json={"deployed_prompt_id": str(bob_prompt.id)},
            headers=_as(alice),
        )
        assert resp.status_code == 409

    async def test_accept_flow(self, api_client, alice_and_bob, pending_match):
        alice, bob, _, _ = alice_and_bob
        match_id = pending_match.id

        first = await api_client.post(f"/api/v1/matches/{match_id}/accept", headers=_as(alice))
        assert first.status_code == 200
        assert first.json()["match_status"] == "PENDING"

        check = await api_client.get(f"/api/v1/matches/{match_id}/confirmation")
        assert check.json() == {"match_id": str(match_id), "confirmed": False}

        second = await api_client.post(f"/api/v1/matches/{match_id}/accept", headers=_as(bob))
        assert second.status_code == 200
        body = second.json()
        assert body["match_status"] == "CONFIRMED"
        assert body["relationship_id"] is not None

        check = await api_client.get(f"/api/v1/matches/{match_id}/confirmation")
        assert check.json()["confirmed"] is True

    async def test_accept_by_stranger_forbidden(self, api_client, create_user, pending_match):
        mallory = await create_user("mallory")
        resp = await api_client.post(
            f"/api/v1/matches/{pending_match.id}/accept", headers=_as(mallory)
        )
        assert resp.status_code == 403

    async def test_accept_unknown_match(self, api_client, alice_and_bob):
        alice, _, _, _ = alice_and_bob
        resp = await api_client.post(f"/api/v1/matches/{uuid.uuid4()}/accept", headers=_as(alice))
        assert resp.status_code == 404

    async def test_decline_then_accept_conflicts(self, api_client, alice_and_bob, pending_match):
        alice, bob, _, _ = alice_and_bob

        declined = await api_client.post(
            f"/api/v1/matches/{pending_match.id}/decline", headers=_as(bob)
        )
        assert declined.status_code == 204

        resp = await api_client.post(
            f"/api/v1/matches/{pending_match.id}/accept", headers=_as(alice)
        )
        assert resp.status_code == 409

        expired = await api_client.get("/api/v1/matches/expired", headers=_as(alice))
        assert [m["id"] for m in expired.json()] == [str(pending_match.id)]

    async def test_list_matches(self, api_client, alice_and_bob, pending_match):
        alice, _, _, _ = alice_and_bob
        resp = await api_client.get("/api/v1/matches", headers=_as(alice))

        assert resp.status_code == 200
        assert [m["id"] for m in resp.json()] == [str(pending_match.id)]

    async def test_cleanup_endpoint(self, api_client):
        resp = await api_client.post("/api/v1/matches/cleanup")
        assert resp.status_code == 200
        assert resp.json() == {"expired_by_date": 0, "expired_abandoned": 0, "total": 0}

    async def test_store_outage_maps_to_503(self, api_client, services, alice_and_bob):
        alice, _, _, _ = alice_and_bob
        with patch.object(
            services.lifecycle,
            "get_user_matches",
            AsyncMock(side_effect=TransientStoreFailure("database unavailable")),
        ):
            resp = await api_client.get("/api/v1/matches", headers=_as(alice))
        assert resp.status_code == 503


class TestPromptEndpoints:
    async def test_deploy_and_cancel(self, api_client, services, create_user):
        alice = await create_user("alice")

        created = await api_client.post(
            "/api/v1/prompts",
            json={"theme_id": "T1", "theme_name": "Travel", "question": "Q1"},
            headers=_as(alice),
        )
        await services.runner.drain()
        assert created.status_code == 201
        prompt_id = created.json()["id"]

        active = await api_client.get("/api/v1/prompts/active", headers=_as(alice))
        assert active.json()["id"] == prompt_id

        cancelled = await api_client.patch(f"/api/v1/prompts/{prompt_id}/cancel", headers=_as(alice))
        assert cancelled.status_code == 200
        assert cancelled.json() == {"success": True, "expired_matches": 0}

        again = await api_client.patch(f"/api/v1/prompts/{prompt_id}/cancel", headers=_as(alice))
        assert again.status_code == 404

        active = await api_client.get("/api/v1/prompts/active", headers=_as(alice))
        assert active.json() is None

    async def test_deploy_validates_body(self, api_client, create_user):
        alice = await create_user("alice")
        resp = await api_client.post(
            "/api/v1/prompts",
            json={"theme_id": "", "theme_name": "Travel", "question": "Q1"},
            headers=_as(alice),
        )
        assert resp.status_code == 422


class TestHealth:
    async def test_liveness(self, api_client):
        resp = await api_client.get("/health")
        assert resp.json() == {"status": "healthy"}

    async def test_readiness_checks(self, api_client):
        resp = await api_client.get("/health/deep")
        body = resp.json()
        assert body["database"] == "connected"
        assert body["redis"] == "not_configured"
        assert body["status"] == "healthy"
        assert body["background_tasks"] == 0

    async def test_readiness_reports_redis_failure(self, services):
        app = create_app()
        app.state.services = services
        app.state.redis = MagicMock()
        app.state.redis.ping = AsyncMock(side_effect=ConnectionError("refused"))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            body = (await client.get("/health/deep")).json()

        assert body["database"] == "connected"
        assert body["redis"].startswith("error:")
        assert body["status"] == "degraded"

    async def test_request_id_is_echoed(self, api_client):
        resp = await api_client.get("/health", headers={"X-Request-Id": "req-42"})
        assert resp.headers["X-Request-Id"] == "req-42"

    async def test_request_id_is_generated(self, api_client):
        resp = await api_client.get("/health")
        assert len(resp.headers["X-Request-Id"]) == 32


class TestMatchEventsSocket:
    """The WebSocket endpoint registers the connection for its lifetime."""

    async def test_connection_receives_pushes_until_disconnect(self, session_factory, settings):
        services = build_container(session_factory, settings=settings)
        user_id = uuid.uuid4()
        websocket = MagicMock()
        websocket.app.state.services = services
        websocket.accept = AsyncMock()
        websocket.send_json = AsyncMock()
        seen = {}

        async def receive_text():
            seen["connection_id"] = await services.registry.lookup(str(user_id))
            seen["delivered"] = await services.dispatcher.deliver(
                user_id, NEW_MATCH_AVAILABLE, {"id": "m1"}
            )
            raise WebSocketDisconnect(code=1000)

        websocket.receive_text = receive_text

        await match_events(websocket, user_id)

        websocket.accept.assert_awaited_once()
        assert seen["connection_id"] is not None
        assert seen["delivered"] is True
        websocket.send_json.assert_awaited_once_with(
            {"event": NEW_MATCH_AVAILABLE, "data": {"id": "m1"}}
        )
        assert await services.registry.lookup(str(user_id)) is None
        await services.runner.close()
