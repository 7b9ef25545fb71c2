"""Tests for LifecycleManager — teardown, heartbeats, revocation."""

from __future__ import annotations

import asyncio
import time

import pytest

from governs_relay.core.enums import CloseReason, ConnectionState
from governs_relay.core.exceptions import (
    CredentialNotFoundError,
    InternalError,
    TransportWriteFailureError,
)
from governs_relay.relay.connection import RelayConnection
from governs_relay.relay.lifecycle import LifecycleManager
from governs_relay.relay.registry import SubscriptionRegistry

CHANNEL = "org:org1:decisions"


@pytest.fixture
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry(shards=4)


@pytest.fixture
def lifecycle(registry) -> LifecycleManager:
    return LifecycleManager(registry, heartbeat_interval=10.0, max_missed=2, drain_seconds=0.2)


@pytest.fixture
def connect(registry, lifecycle, make_transport, make_identity):
    async def _connect(credential_id: str = "key1") -> RelayConnection:
        connection = RelayConnection(make_transport(), send_timeout=0.2)
        identity = make_identity(credential_id=credential_id)
        connection.authenticated(identity)
        await registry.register(connection, identity)
        await registry.subscribe(connection.id, [CHANNEL])
        connection.start_sender(lifecycle.schedule_close)
        return connection

    return _connect


async def test_close_is_idempotent_and_deregisters_once(lifecycle, registry, connect) -> None:
    connection = await connect()

    results = await asyncio.gather(
        lifecycle.close(connection, CloseReason.CLIENT_CLOSED),
        lifecycle.close(connection, CloseReason.INTERNAL_ERROR, InternalError()),
    )

    assert results == [True, False]
    assert connection.state == ConnectionState.CLOSED
    assert connection.transport.closed_with == (1000, "client_closed")
    assert registry.get(connection.id) is None
    assert registry.subscribers(CHANNEL) == ()


async def test_close_with_error_sends_final_error_frame(lifecycle, connect) -> None:
    connection = await connect()

    await lifecycle.close(connection, CloseReason.INTERNAL_ERROR, InternalError())

    assert connection.transport.frames("ERROR")[-1]["code"] == "InternalError"
    assert connection.transport.closed_with[0] == 1011


async def test_close_before_authentication(lifecycle, make_transport) -> None:
    """Auth failures close a connection that was never registered."""
    connection = RelayConnection(make_transport())

    await lifecycle.close(connection, CloseReason.AUTH_FAILED, CredentialNotFoundError())

    assert connection.state == ConnectionState.CLOSED
    assert connection.transport.frames("ERROR")[0]["code"] == "CredentialNotFound"
    assert connection.transport.closed_with[0] == 1008


async def test_sweep_closes_silent_connections_and_heartbeats_the_rest(
    lifecycle, registry, connect
) -> None:
    silent = await connect("key-silent")
    alive = await connect("key-alive")
    silent.last_seen = time.monotonic() - 25.0

    closed = await lifecycle.sweep()

    assert closed == 1
    assert silent.state == ConnectionState.CLOSED
    assert silent.transport.frames("ERROR")[-1]["code"] == "ConnectionTimeout"
    assert registry.get(silent.id) is None
    assert (await alive.transport.next_frame("HEARTBEAT"))["type"] == "HEARTBEAT"
    assert alive.is_open


async def test_revoke_closes_only_that_credentials_connections(lifecycle, registry, connect) -> None:
    first = await connect("key-a")
    second = await connect("key-a")
    other = await connect("key-b")

    closed = await lifecycle.revoke_credential("key-a")

    assert closed == 2
    for connection in (first, second):
        assert connection.state == ConnectionState.CLOSED
        assert connection.transport.frames("ERROR")[-1]["code"] == "CredentialInactive"
        assert connection.transport.closed_with[0] == 1008
    assert other.is_open
    assert registry.count() == 1


async def test_revocation_is_remembered_and_forgets_resume_cursors(
    lifecycle, registry, connect, make_identity
) -> None:
    connection = await connect("key-a")
    await registry.record_ack(connection.id, CHANNEL, 7)

    await lifecycle.revoke_credential("key-a")

    assert lifecycle.is_revoked("key-a")
    assert not lifecycle.is_revoked("key-b")
    assert not lifecycle.is_revoked(None)
    assert registry.resume_cursor(make_identity(credential_id="key-a"), CHANNEL) is None


async def test_revocation_memory_expires(registry) -> None:
    lifecycle = LifecycleManager(registry, revocation_memory_seconds=5.0)

    await lifecycle.revoke_credential("key-a")

    assert lifecycle.is_revoked("key-a", now=time.monotonic() + 1)
    assert not lifecycle.is_revoked("key-a", now=time.monotonic() + 10)
    assert not lifecycle.is_revoked("key-a")


async def test_schedule_close_after_write_failure(lifecycle, registry, connect) -> None:
    connection = await connect()

    lifecycle.schedule_close(connection, TransportWriteFailureError())
    lifecycle.schedule_close(connection, TransportWriteFailureError())
    await lifecycle.shutdown()

    assert connection.state == ConnectionState.CLOSED
    assert connection.transport.closed_with[0] == 1011
    assert registry.count() == 0


async def test_shutdown_closes_everything_with_going_away(lifecycle, registry, connect) -> None:
    connections = [await connect(f"key-{i}") for i in range(3)]
    lifecycle.start()

    await lifecycle.shutdown()

    assert registry.count() == 0
    assert {c.transport.closed_with[0] for c in connections} == {1001}
