"""Relay WebSocket endpoint.

Endpoints:
    WS /ws?key=...&org=...&channels=...   — API key connection
    WS /ws?token=...                      — session token connection
    WS /ws                                — credentials in a first AUTH message
"""

from __future__ import annotations

from fastapi import APIRouter, WebSocket

from governs_relay.relay.dependencies import RuntimeDep
from governs_relay.relay.transport import WebSocketTransport

router = APIRouter()


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket, runtime: RuntimeDep) -> None:
    transport = WebSocketTransport(
        websocket, max_message_bytes=runtime.settings.relay_max_message_bytes
    )
    await runtime.gateway.handle(transport, websocket.query_params)
