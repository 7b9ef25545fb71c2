"""Per-connection state: lifecycle state machine and the outbound send queue.

Live producers (dispatcher, gateway) only ever ``put_nowait`` onto the
bounded outbound queue; catch-up and replay wait at most the send timeout
for space. A dedicated sender task is the single writer to the transport.
A slow consumer therefore fills its own queue and is torn down without
stalling anyone else.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
import uuid_utils

from governs_relay.core.enums import ConnectionState
from governs_relay.core.exceptions import (
    InvalidStateTransitionError,
    TransportWriteFailureError,
)
from governs_relay.relay.transport import TransportClosed

if TYPE_CHECKING:
    from collections.abc import Callable

    from governs_relay.core.exceptions import RelayError
    from governs_relay.relay.authenticator import Identity
    from governs_relay.relay.transport import RelayTransport

    FailureCallback = Callable[["RelayConnection", RelayError], None]

logger = structlog.get_logger()

_VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.CLOSING},
    ConnectionState.AUTHENTICATED: {ConnectionState.SUBSCRIBED, ConnectionState.CLOSING},
    ConnectionState.SUBSCRIBED: {ConnectionState.SUBSCRIBED, ConnectionState.CLOSING},
    ConnectionState.CLOSING: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


def _validate_transition(current: ConnectionState, target: ConnectionState) -> None:
    if target not in _VALID_TRANSITIONS.get(current, set()):
        raise InvalidStateTransitionError(
            f"Cannot transition from '{current}' to '{target}'.",
            detail={"current_state": current, "target_state": target},
        )


class RelayConnection:
    def __init__(
        self,
        transport: RelayTransport,
        *,
        connection_id: str | None = None,
        queue_size: int = 256,
        send_timeout: float = 5.0,
    ) -> None:
        self.id = connection_id or str(uuid_utils.uuid7())
        self.transport = transport
        self.identity: Identity | None = None
        self.state = ConnectionState.CONNECTING
        self.connected_at = datetime.now(UTC)
        self.last_seen = time.monotonic()
        self.message_count = 0
        self._send_timeout = send_timeout
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._delivered: dict[str, int] = {}
        self._catching_up: dict[str, int] = {}
        self._catch_up_locks: dict[str, asyncio.Lock] = {}
        self._sender: asyncio.Task[None] | None = None

    # -- state --------------------------------------------------------------

    def transition(self, target: ConnectionState) -> None:
        _validate_transition(self.state, target)
        self.state = target

    def authenticated(self, identity: Identity) -> None:
        self.transition(ConnectionState.AUTHENTICATED)
        self.identity = identity

    @property
    def is_open(self) -> bool:
        return self.state in (ConnectionState.AUTHENTICATED, ConnectionState.SUBSCRIBED)

    def touch(self) -> None:
        self.last_seen = time.monotonic()
        self.message_count += 1

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_seen

    # -- outbound -----------------------------------------------------------

    def enqueue(self, frame: dict[str, Any]) -> None:
        """Queue a control frame. Raises TransportWriteFailureError if it cannot."""
        if not self.is_open:
            raise TransportWriteFailureError("Connection is closing.")
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull as exc:
            raise TransportWriteFailureError("Outbound queue is full.") from exc

    def offer_event(self, channel: str, cursor: int, frame: dict[str, Any]) -> bool:
        """Queue an EVENT frame unless this channel already delivered ``cursor``.

        Returns False when the event is skipped as already delivered.
        """
        last = self._delivered.get(channel)
        if last is not None and cursor <= last:
            return False
        self.enqueue(frame)
        self._delivered[channel] = cursor
        return True

    async def offer_event_when_ready(self, channel: str, cursor: int, frame: dict[str, Any]) -> bool:
        """Like ``offer_event`` but waits up to the send timeout for queue space.

        Used by catch-up and replay, which may produce more frames than the
        queue holds.
        """
        last = self._delivered.get(channel)
        if last is not None and cursor <= last:
            return False
        if not self.is_open:
            raise TransportWriteFailureError("Connection is closing.")
        try:
            await asyncio.wait_for(self._outbound.put(frame), timeout=self._send_timeout)
        except TimeoutError as exc:
            raise TransportWriteFailureError("Outbound queue is full.") from exc
        self._delivered[channel] = cursor
        return True

    def rewind(self, channel: str, cursor: int | None) -> None:
        """Reset the delivered position for a channel before a replay.

        ``None`` forgets the channel entirely, ending any catch-up on it.
        """
        if cursor is None:
            self._delivered.pop(channel, None)
            self._catching_up.pop(channel, None)
        else:
            self._delivered[channel] = cursor

    def start_position(self, channel: str, cursor: int) -> None:
        """Set where live delivery starts, unless the channel already has a position."""
        if channel not in self._delivered and channel not in self._catching_up:
            self._delivered[channel] = cursor

    def delivered_cursor(self, channel: str) -> int | None:
        return self._delivered.get(channel)

    # -- catch-up -----------------------------------------------------------
    # While a channel is catching up, live dispatch does not queue its events;
    # it records the highest cursor it saw and the catch-up reader fetches
    # everything after the delivered position from the store.

    def begin_catch_up(self, channel: str) -> None:
        self._catching_up.setdefault(channel, 0)

    def is_catching_up(self, channel: str) -> bool:
        return channel in self._catching_up

    def note_pending(self, channel: str, cursor: int) -> None:
        if channel in self._catching_up:
            self._catching_up[channel] = max(self._catching_up[channel], cursor)

    def pending_head(self, channel: str) -> int:
        return self._catching_up.get(channel, 0)

    def end_catch_up(self, channel: str) -> None:
        self._catching_up.pop(channel, None)

    def catch_up_lock(self, channel: str) -> asyncio.Lock:
        """Serialises catch-up readers of one channel on this connection."""
        lock = self._catch_up_locks.get(channel)
        if lock is None:
            lock = self._catch_up_locks[channel] = asyncio.Lock()
        return lock

    @property
    def pending(self) -> int:
        return self._outbound.qsize()

    # -- sender -------------------------------------------------------------

    def start_sender(self, on_failure: FailureCallback) -> None:
        if self._sender is None:
            self._sender = asyncio.create_task(self._send_loop(on_failure))

    @property
    def sender_running(self) -> bool:
        return self._sender is not None and not self._sender.done()

    async def _send_loop(self, on_failure: FailureCallback) -> None:
        while True:
            frame = await self._outbound.get()
            try:
                await asyncio.wait_for(self.transport.send_json(frame), timeout=self._send_timeout)
            except (TimeoutError, TransportClosed, OSError, RuntimeError) as exc:
                logger.warning(
                    "relay_send_failed",
                    connection_id=self.id,
                    frame_type=frame.get("type"),
                    error=str(exc) or type(exc).__name__,
                )
                on_failure(self, TransportWriteFailureError())
                return
            finally:
                self._outbound.task_done()

    async def stop_sender(self, drain_timeout: float) -> None:
        """Let the sender flush queued frames for up to ``drain_timeout``, then stop it."""
        sender = self._sender
        if sender is None or sender is asyncio.current_task():
            return
        if not sender.done():
            try:
                await asyncio.wait_for(self._outbound.join(), timeout=drain_timeout)
            except TimeoutError:
                logger.info("relay_drain_timeout", connection_id=self.id, pending=self.pending)
            sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass

    async def send_now(self, frame: dict[str, Any]) -> None:
        """Write directly to the transport, bypassing the queue (no sender running)."""
        await asyncio.wait_for(self.transport.send_json(frame), timeout=self._send_timeout)

    def force_queue(self, frame: dict[str, Any]) -> bool:
        """Queue a final frame while closing. Dropped if the queue is full."""
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True
