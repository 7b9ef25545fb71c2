"""Relay client — the consumer side of the relay contract.

Connects with an API key or session token, subscribes, acknowledges every
delivered cursor and answers heartbeats. On disconnect it reconnects with
exponential backoff and resubscribes with the last cursor it saw on each
channel, so the relay replays whatever was missed. Authentication failures
are terminal; after ``max_attempts`` consecutive failed reconnects it raises
ReconnectExhaustedError.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import structlog
import websockets
from websockets.exceptions import WebSocketException

from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.core.exceptions import (
    AuthenticationError,
    InvalidMessageError,
    ReconnectExhaustedError,
    RelayError,
    error_from_code,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    EventHandler = Callable[[dict[str, Any]], Awaitable[None]]

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    base_delay: float = 0.5
    max_delay: float = 30.0
    max_attempts: int = 8
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ReconnectPolicy:
        s = settings or default_settings
        return cls(
            base_delay=s.reconnect_base_delay_seconds,
            max_delay=s.reconnect_max_delay_seconds,
            max_attempts=s.reconnect_max_attempts,
            jitter=s.reconnect_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before reconnect ``attempt`` (1-based), capped at ``max_delay``."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, delay)


class RelayClient:
    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        org: str | None = None,
        token: str | None = None,
        channels: Iterable[str] = (),
        on_event: EventHandler | None = None,
        policy: ReconnectPolicy | None = None,
        connect: Callable[[str], Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        auto_ack: bool = True,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._org = org
        self._token = token
        self._channels = list(channels)
        self._on_event = on_event
        self._policy = policy or ReconnectPolicy.from_settings()
        self._connect = connect
        self._sleep = sleep
        self._auto_ack = auto_ack
        self._failures = 0
        self._stopped = asyncio.Event()
        self._ws: Any = None
        self.cursors: dict[str, str] = {}
        self.connection_id: str | None = None

    def build_url(self) -> str:
        params = {
            name: value
            for name, value in (("key", self._api_key), ("org", self._org), ("token", self._token))
            if value
        }
        if not params:
            return self._url
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode(params)}"

    async def run(self) -> None:
        """Stay connected until ``stop`` is called or reconnecting is hopeless."""
        while not self._stopped.is_set():
            try:
                async with self._connect(self.build_url()) as ws:
                    self._ws = ws
                    await self._session(ws)
            except AuthenticationError:
                logger.warning("relay_client_auth_rejected", url=self._url)
                raise
            except (OSError, TimeoutError, WebSocketException, RelayError) as exc:
                logger.info("relay_client_disconnected", error=str(exc) or type(exc).__name__)
            finally:
                self._ws = None

            if self._stopped.is_set():
                return
            self._failures += 1
            if self._failures > self._policy.max_attempts:
                raise ReconnectExhaustedError(detail={"attempts": self._failures - 1})
            delay = self._policy.delay_for(self._failures)
            logger.warning("relay_client_reconnecting", attempt=self._failures, delay=round(delay, 3))
            await self._sleep(delay)

    async def stop(self) -> None:
        self._stopped.set()
        if self._ws is not None:
            await self._ws.close()

    async def send(self, message: dict[str, Any]) -> None:
        if self._ws is None:
            raise RelayError("Relay client is not connected.")
        await self._ws.send(json.dumps(message))

    async def _session(self, ws: Any) -> None:
        ready = json.loads(await ws.recv())
        if ready.get("type") == "ERROR":
            raise error_from_code(ready.get("code", ""), ready.get("data", {}).get("message"))
        if ready.get("type") != "READY":
            raise InvalidMessageError(f"Expected READY, got {ready.get('type')!r}.")

        self._failures = 0
        self.connection_id = ready.get("connectionId")
        logger.info("relay_client_connected", connection_id=self.connection_id)

        if self._channels:
            subscribe: dict[str, Any] = {"type": "SUB", "channels": self._channels}
            cursors = {ch: self.cursors[ch] for ch in self._channels if ch in self.cursors}
            if cursors:
                subscribe["cursors"] = cursors
            await ws.send(json.dumps(subscribe))

        async for raw in ws:
            await self._handle(ws, json.loads(raw))

    async def _handle(self, ws: Any, frame: dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "EVENT":
            channel, cursor = frame["channel"], frame["cursor"]
            self.cursors[channel] = cursor
            if self._on_event is not None:
                await self._on_event(frame)
            if self._auto_ack:
                await ws.send(json.dumps({"type": "ACK", "channel": channel, "cursor": cursor}))
        elif kind == "HEARTBEAT":
            await ws.send(json.dumps({"type": "PING"}))
        elif kind == "ERROR":
            error = error_from_code(frame.get("code", ""), frame.get("data", {}).get("message"))
            if isinstance(error, AuthenticationError):
                raise error
            logger.info("relay_client_error_frame", code=error.code, data=frame.get("data"))
