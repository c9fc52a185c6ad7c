"""
Resonance — Real-time match events over WebSocket.

A client connects to ``/ws/matches?user_id=...`` and receives
``{"event": ..., "data": ...}`` frames for its matches.  The newest
connection of a user wins; a stale disconnect never evicts it.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from resonance.services.container import ServiceContainer

logger = structlog.get_logger("resonance.api.realtime")

router = APIRouter()


@router.websocket("/ws/matches")
async def match_events(websocket: WebSocket, user_id: uuid.UUID = Query(...)) -> None:
    services: ServiceContainer = websocket.app.state.services
    connection_id = services.hub.new_connection_id()
    user_key = str(user_id)

    await websocket.accept()
    await services.hub.attach(connection_id, websocket)
    await services.registry.register(user_key, connection_id)
    log = logger.bind(user_id=user_key, connection_id=connection_id)
    log.info("websocket_connected")

    try:
        while True:
            # Inbound frames are ignored; reading detects the disconnect.
            await websocket.receive_text()
    except WebSocketDisconnect:
        log.info("websocket_disconnected")
    finally:
        await services.registry.unregister(user_key, connection_id)
        await services.hub.detach(connection_id)
