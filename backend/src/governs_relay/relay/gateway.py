"""Relay gateway — drives one WebSocket connection from accept to close.

1. Accept, then authenticate from query parameters or a first AUTH message.
   Failures are reported with an ERROR frame and close 1008 before any
   registry state exists.
2. Register the connection with its allow-list (closing it if its key was
   revoked meanwhile), start its sender and send READY. Channels
   named in the ``channels`` query parameter are subscribed.
3. Read client messages until the peer goes away or the connection is
   closed from elsewhere (heartbeat sweep, revocation, send failure).
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.core.enums import CloseReason, ConnectionState
from governs_relay.core.exceptions import (
    AuthenticationError,
    ChannelForbiddenError,
    ConnectionTimeoutError,
    CredentialInactiveError,
    CredentialMissingError,
    InternalError,
    InvalidMessageError,
    RelayError,
    TransportWriteFailureError,
)
from governs_relay.relay.authenticator import CredentialRequest
from governs_relay.relay.connection import RelayConnection
from governs_relay.relay.messages import (
    AckMessage,
    AuthMessage,
    IngestMessage,
    PingMessage,
    PongFrame,
    ReadyFrame,
    ReplayCompleteFrame,
    ReplayMessage,
    SubscribeMessage,
    SubSuccessFrame,
    UnsubscribeMessage,
    UnsubSuccessFrame,
    error_frame,
    parse_client_message,
    to_frame,
)
from governs_relay.relay.transport import TransportClosed

if TYPE_CHECKING:
    from collections.abc import Mapping

    from governs_relay.relay.authenticator import ConnectionAuthenticator, Identity
    from governs_relay.relay.dispatcher import EventDispatcher
    from governs_relay.relay.ingest import DecisionIngestor
    from governs_relay.relay.lifecycle import LifecycleManager
    from governs_relay.relay.messages import ClientMessage
    from governs_relay.relay.registry import SubscribeResult, SubscriptionRegistry
    from governs_relay.relay.transport import RelayTransport

logger = structlog.get_logger()


def split_channels(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class RelayGateway:
    def __init__(
        self,
        authenticator: ConnectionAuthenticator,
        registry: SubscriptionRegistry,
        dispatcher: EventDispatcher,
        lifecycle: LifecycleManager,
        ingestor: DecisionIngestor,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._authenticator = authenticator
        self._registry = registry
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._ingestor = ingestor
        self._settings = settings or default_settings

    async def handle(self, transport: RelayTransport, params: Mapping[str, str]) -> RelayConnection:
        """Serve one connection until it closes. Returns the (closed) connection."""
        await transport.accept()
        connection = RelayConnection(
            transport,
            queue_size=self._settings.relay_outbound_queue_size,
            send_timeout=self._settings.relay_send_timeout_seconds,
        )

        identity = await self._authenticate(connection, params)
        if identity is None:
            return connection

        connection.authenticated(identity)
        await self._registry.register(connection, identity)
        # A revocation that ran while the credential was being checked saw no
        # connection to close.
        if self._lifecycle.is_revoked(identity.credential_id):
            await self._lifecycle.close(
                connection, CloseReason.REVOKED, CredentialInactiveError("API key revoked.")
            )
            return connection
        connection.start_sender(self._lifecycle.schedule_close)
        logger.info(
            "relay_connection_opened",
            connection_id=connection.id,
            tenant_id=identity.tenant_id,
            user_id=identity.user_id,
            method=identity.auth_method,
            client=transport.client,
        )

        try:
            self._send(
                connection,
                to_frame(
                    ReadyFrame(
                        connection_id=connection.id,
                        channels=sorted(identity.allowed_channels),
                    )
                ),
            )
            initial = split_channels(params.get("channels"))
            if initial:
                await self._subscribe(connection, initial[:10], {})
            await self._read_loop(connection)
        except TransportClosed:
            pass
        except asyncio.CancelledError:
            await self._lifecycle.close(connection, CloseReason.SERVER_SHUTDOWN)
            raise
        except Exception:
            logger.exception("relay_connection_failed", connection_id=connection.id)
            await self._lifecycle.close(connection, CloseReason.INTERNAL_ERROR, InternalError())
            return connection

        await self._lifecycle.close(connection, CloseReason.CLIENT_CLOSED)
        return connection

    # -- authentication -----------------------------------------------------

    async def _authenticate(
        self, connection: RelayConnection, params: Mapping[str, str]
    ) -> Identity | None:
        request = CredentialRequest(
            api_key=params.get("key") or None,
            tenant=params.get("org") or None,
            session_token=params.get("token") or None,
        )
        try:
            if request.is_empty:
                request = await self._await_auth_message(connection.transport)
            return await self._authenticator.authenticate(request)
        except (AuthenticationError, ConnectionTimeoutError, InvalidMessageError) as exc:
            await self._lifecycle.close(connection, CloseReason.AUTH_FAILED, exc)
        except TransportClosed:
            await self._lifecycle.close(connection, CloseReason.CLIENT_CLOSED)
        return None

    async def _await_auth_message(self, transport: RelayTransport) -> CredentialRequest:
        try:
            raw = await asyncio.wait_for(
                transport.receive_json(), timeout=self._settings.relay_auth_timeout_seconds
            )
        except TimeoutError as exc:
            raise ConnectionTimeoutError("No credentials received.") from exc
        message = parse_client_message(raw)
        if not isinstance(message, AuthMessage):
            raise CredentialMissingError("The first message must be AUTH.")
        return CredentialRequest(api_key=message.key, tenant=message.org, session_token=message.token)

    # -- message loop -------------------------------------------------------

    async def _read_loop(self, connection: RelayConnection) -> None:
        while connection.is_open:
            try:
                raw = await connection.transport.receive_json()
                connection.touch()
                await self._route(connection, parse_client_message(raw))
            except RelayError as exc:
                logger.info(
                    "relay_message_rejected",
                    connection_id=connection.id,
                    code=exc.code,
                    error=exc.message,
                )
                self._send(connection, error_frame(exc.code, exc.message, **(exc.detail or {})))

    async def _route(self, connection: RelayConnection, message: ClientMessage) -> None:
        identity = connection.identity
        assert identity is not None

        if isinstance(message, PingMessage):
            self._send(connection, to_frame(PongFrame()))
        elif isinstance(message, SubscribeMessage):
            cursors = {channel: int(cursor) for channel, cursor in (message.cursors or {}).items()}
            await self._subscribe(connection, message.channels, cursors)
        elif isinstance(message, UnsubscribeMessage):
            removed = await self._dispatcher.unsubscribe(connection, message.channels)
            self._send(connection, to_frame(UnsubSuccessFrame(channels=removed)))
        elif isinstance(message, AckMessage):
            await self._registry.record_ack(connection.id, message.channel, int(message.cursor))
        elif isinstance(message, ReplayMessage):
            await self._replay(connection, identity, message)
        elif isinstance(message, IngestMessage):
            result = await self._ingestor.ingest(identity, message)
            self._send(connection, result.frame())
        elif isinstance(message, AuthMessage):
            raise InvalidMessageError("Connection is already authenticated.")

    async def _subscribe(
        self, connection: RelayConnection, channels: list[str], cursors: dict[str, int]
    ) -> None:
        def announce(result: SubscribeResult) -> None:
            if result.accepted and connection.is_open:
                connection.transition(ConnectionState.SUBSCRIBED)
                self._send(connection, to_frame(SubSuccessFrame(channels=result.accepted)))
            for channel in result.rejected:
                self._send(
                    connection,
                    error_frame(
                        ChannelForbiddenError.code,
                        ChannelForbiddenError.message,
                        channel=channel,
                    ),
                )

        await self._dispatcher.subscribe(connection, channels, cursors, announce=announce)

    async def _replay(
        self, connection: RelayConnection, identity: Identity, message: ReplayMessage
    ) -> None:
        if message.channel not in identity.allowed_channels:
            raise ChannelForbiddenError(detail={"channel": message.channel})
        if message.cursor is not None:
            since = int(message.cursor)
        else:
            since = self._registry.resume_cursor(identity, message.channel) or 0
        count = await self._dispatcher.replay(connection, message.channel, since)
        delivered = connection.delivered_cursor(message.channel)
        self._send(
            connection,
            to_frame(
                ReplayCompleteFrame(
                    channel=message.channel,
                    count=count,
                    cursor=str(delivered) if delivered is not None else None,
                )
            ),
        )

    def _send(self, connection: RelayConnection, frame: dict[str, Any]) -> None:
        try:
            connection.enqueue(frame)
        except TransportWriteFailureError as exc:
            self._lifecycle.schedule_close(connection, exc)
