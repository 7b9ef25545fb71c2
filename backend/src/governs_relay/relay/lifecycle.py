"""Connection lifecycle manager — teardown, heartbeats, revocation, shutdown.

``close`` is the only teardown path. It is idempotent: the first caller moves
the connection to CLOSING synchronously, so concurrent callers (reader loop,
sender failure, heartbeat sweep, revocation) return immediately and the
registry is cleaned up exactly once.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from governs_relay.core.enums import CloseReason, ConnectionState
from governs_relay.core.exceptions import (
    ConnectionTimeoutError,
    CredentialInactiveError,
    TransportWriteFailureError,
)
from governs_relay.relay.authenticator import credential_principal
from governs_relay.relay.messages import HeartbeatFrame, error_frame, to_frame
from governs_relay.relay.transport import TransportClosed

if TYPE_CHECKING:
    from governs_relay.core.exceptions import RelayError
    from governs_relay.relay.connection import RelayConnection
    from governs_relay.relay.registry import SubscriptionRegistry

logger = structlog.get_logger()

CLOSE_CODES: dict[CloseReason, int] = {
    CloseReason.CLIENT_CLOSED: 1000,
    CloseReason.SERVER_SHUTDOWN: 1001,
    CloseReason.AUTH_FAILED: 1008,
    CloseReason.HEARTBEAT_TIMEOUT: 1008,
    CloseReason.REVOKED: 1008,
    CloseReason.TRANSPORT_ERROR: 1011,
    CloseReason.INTERNAL_ERROR: 1011,
}


class LifecycleManager:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        *,
        heartbeat_interval: float = 30.0,
        max_missed: int = 2,
        drain_seconds: float = 1.0,
        revocation_memory_seconds: float = 300.0,
    ) -> None:
        self._registry = registry
        self._interval = heartbeat_interval
        self._max_missed = max_missed
        self._drain_seconds = drain_seconds
        self._closing: set[asyncio.Task[bool]] = set()
        self._sweeper: asyncio.Task[None] | None = None
        self._revocation_memory = revocation_memory_seconds
        # credential id -> monotonic time of revocation
        self._revoked: dict[str, float] = {}

    @property
    def idle_limit(self) -> float:
        return self._interval * self._max_missed

    # -- teardown -----------------------------------------------------------

    async def close(
        self,
        connection: RelayConnection,
        reason: CloseReason,
        error: RelayError | None = None,
    ) -> bool:
        """Tear down a connection. Returns False if it was already closing."""
        if connection.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return False
        connection.transition(ConnectionState.CLOSING)

        if error is not None and reason != CloseReason.TRANSPORT_ERROR:
            await self._send_final(connection, error)
        await connection.stop_sender(self._drain_seconds)

        code = error.close_code if error is not None else CLOSE_CODES[reason]
        try:
            await connection.transport.close(code, str(reason))
        except (TransportClosed, OSError, RuntimeError) as exc:
            logger.debug("relay_transport_close_failed", connection_id=connection.id, error=str(exc))

        await self._registry.deregister(connection.id)
        connection.transition(ConnectionState.CLOSED)

        identity = connection.identity
        logger.info(
            "relay_connection_closed",
            connection_id=connection.id,
            reason=reason,
            code=code,
            error=error.code if error is not None else None,
            tenant_id=identity.tenant_id if identity else None,
            messages=connection.message_count,
        )
        return True

    async def _send_final(self, connection: RelayConnection, error: RelayError) -> None:
        frame = error_frame(error.code, error.message, **(error.detail or {}))
        if connection.sender_running:
            connection.force_queue(frame)
            return
        try:
            await connection.send_now(frame)
        except (TimeoutError, TransportClosed, OSError, RuntimeError) as exc:
            logger.debug("relay_final_error_undelivered", connection_id=connection.id, error=str(exc))

    def schedule_close(self, connection: RelayConnection, error: RelayError) -> None:
        """Failure callback for code that must not await teardown (sender, dispatch)."""
        if connection.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        reason = (
            CloseReason.TRANSPORT_ERROR
            if isinstance(error, TransportWriteFailureError)
            else CloseReason.INTERNAL_ERROR
        )
        task = asyncio.create_task(self.close(connection, reason, error))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # -- heartbeats ---------------------------------------------------------

    async def sweep(self, now: float | None = None) -> int:
        """Close silent connections and heartbeat the rest. Returns the number closed."""
        stale: list[RelayConnection] = []
        heartbeat = to_frame(HeartbeatFrame())
        for record in self._registry.connections():
            connection = record.connection
            if connection.idle_seconds(now) > self.idle_limit:
                stale.append(connection)
                continue
            try:
                connection.enqueue(heartbeat)
            except TransportWriteFailureError as exc:
                self.schedule_close(connection, exc)

        if stale:
            logger.info("relay_heartbeat_timeouts", count=len(stale))
            results = await asyncio.gather(
                *(
                    self.close(
                        connection,
                        CloseReason.HEARTBEAT_TIMEOUT,
                        ConnectionTimeoutError("Heartbeat timeout."),
                    )
                    for connection in stale
                )
            )
            return sum(1 for closed in results if closed)
        return 0

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("relay_heartbeat_sweep_failed")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    # -- revocation & shutdown ----------------------------------------------

    async def revoke_credential(self, credential_id: str) -> int:
        """Close every live connection authenticated with ``credential_id``.

        The id is remembered for ``revocation_memory_seconds`` so a handshake
        that authenticated just before the revocation is closed on register.
        """
        self._revoked[credential_id] = time.monotonic()
        self._registry.forget_principal(credential_principal(credential_id))
        records = self._registry.connections_for_credential(credential_id)
        results = await asyncio.gather(
            *(
                self.close(
                    record.connection,
                    CloseReason.REVOKED,
                    CredentialInactiveError("API key revoked."),
                )
                for record in records
            )
        )
        closed = sum(1 for result in results if result)
        logger.info("relay_credential_revoked", credential_id=credential_id, closed=closed)
        return closed

    def is_revoked(self, credential_id: str | None, now: float | None = None) -> bool:
        if credential_id is None:
            return False
        now = now if now is not None else time.monotonic()
        expired = [cid for cid, at in self._revoked.items() if now - at > self._revocation_memory]
        for cid in expired:
            del self._revoked[cid]
        return credential_id in self._revoked

    async def shutdown(self) -> None:
        await self.stop()
        records = self._registry.connections()
        await asyncio.gather(
            *(self.close(record.connection, CloseReason.SERVER_SHUTDOWN) for record in records)
        )
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        logger.info("relay_lifecycle_shutdown", closed=len(records))
