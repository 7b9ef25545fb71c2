"""Transport seam between the relay and a concrete socket."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from fastapi import WebSocketDisconnect
from starlette.websockets import WebSocketState

from governs_relay.core.exceptions import InvalidMessageError

if TYPE_CHECKING:
    from fastapi import WebSocket


class TransportClosed(Exception):
    """The peer went away; no further reads or writes are possible."""

    def __init__(self, code: int | None = None) -> None:
        self.code = code
        super().__init__(f"transport closed (code={code})")


class RelayTransport(ABC):
    """WebSocket-like duplex JSON transport."""

    @property
    def client(self) -> str | None:
        return None

    @abstractmethod
    async def accept(self) -> None: ...

    @abstractmethod
    async def receive_json(self) -> Any:
        """Next inbound JSON value. Raises TransportClosed or InvalidMessageError."""

    @abstractmethod
    async def send_json(self, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class WebSocketTransport(RelayTransport):
    """Thin wrapper around a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, *, max_message_bytes: int = 1024 * 1024) -> None:
        self._websocket = websocket
        self._max_message_bytes = max_message_bytes

    @property
    def client(self) -> str | None:
        peer = self._websocket.client
        return f"{peer.host}:{peer.port}" if peer else None

    async def accept(self) -> None:
        await self._websocket.accept()

    async def receive_json(self) -> Any:
        try:
            raw = await self._websocket.receive_text()
        except WebSocketDisconnect as exc:
            raise TransportClosed(exc.code) from exc
        except RuntimeError as exc:
            # Starlette raises RuntimeError once the socket is no longer connected.
            raise TransportClosed() from exc
        if len(raw.encode()) > self._max_message_bytes:
            raise InvalidMessageError("Message too large.")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidMessageError("Message is not valid JSON.") from exc

    async def send_json(self, payload: dict[str, Any]) -> None:
        try:
            await self._websocket.send_text(json.dumps(payload))
        except WebSocketDisconnect as exc:
            raise TransportClosed(exc.code) from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        await self._websocket.close(code=code, reason=reason)
