"""Tests for RelayConnection — state machine and outbound queue."""

from __future__ import annotations

import asyncio

import pytest

from governs_relay.core.enums import ConnectionState
from governs_relay.core.exceptions import (
    InvalidStateTransitionError,
    TransportWriteFailureError,
)
from governs_relay.relay.connection import RelayConnection


@pytest.fixture
def connection(make_transport, make_identity) -> RelayConnection:
    conn = RelayConnection(make_transport(), queue_size=2, send_timeout=0.1)
    conn.authenticated(make_identity())
    return conn


def test_happy_path_transitions(make_transport, make_identity) -> None:
    conn = RelayConnection(make_transport())
    assert conn.state == ConnectionState.CONNECTING

    conn.authenticated(make_identity())
    conn.transition(ConnectionState.SUBSCRIBED)
    conn.transition(ConnectionState.SUBSCRIBED)
    conn.transition(ConnectionState.CLOSING)
    conn.transition(ConnectionState.CLOSED)

    assert conn.state == ConnectionState.CLOSED


def test_auth_failure_path(make_transport) -> None:
    conn = RelayConnection(make_transport())
    conn.transition(ConnectionState.CLOSING)
    conn.transition(ConnectionState.CLOSED)
    assert conn.state == ConnectionState.CLOSED


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ([], ConnectionState.SUBSCRIBED),
        ([], ConnectionState.CLOSED),
        ([ConnectionState.AUTHENTICATED], ConnectionState.CONNECTING),
        ([ConnectionState.CLOSING, ConnectionState.CLOSED], ConnectionState.CLOSING),
        ([ConnectionState.CLOSING], ConnectionState.SUBSCRIBED),
    ],
)
def test_invalid_transitions_raise(make_transport, path, target) -> None:
    conn = RelayConnection(make_transport())
    for state in path:
        conn.transition(state)

    with pytest.raises(InvalidStateTransitionError):
        conn.transition(target)


def test_offer_event_skips_already_delivered_cursors(connection) -> None:
    assert connection.offer_event("org:org1:decisions", 5, {"type": "EVENT"}) is True
    assert connection.offer_event("org:org1:decisions", 5, {"type": "EVENT"}) is False
    assert connection.offer_event("org:org1:decisions", 4, {"type": "EVENT"}) is False
    assert connection.delivered_cursor("org:org1:decisions") == 5


def test_catch_up_tracks_the_newest_pending_cursor(connection) -> None:
    channel = "org:org1:decisions"
    connection.note_pending(channel, 3)
    assert connection.pending_head(channel) == 0

    connection.begin_catch_up(channel)
    connection.note_pending(channel, 7)
    connection.note_pending(channel, 5)

    assert connection.is_catching_up(channel)
    assert connection.pending_head(channel) == 7
    connection.rewind(channel, None)
    assert not connection.is_catching_up(channel)


def test_start_position_keeps_an_existing_position(connection) -> None:
    channel = "org:org1:decisions"
    connection.start_position(channel, 4)
    connection.start_position(channel, 9)

    assert connection.delivered_cursor(channel) == 4


def test_full_queue_is_a_write_failure(connection) -> None:
    connection.enqueue({"type": "PONG"})
    connection.enqueue({"type": "PONG"})

    with pytest.raises(TransportWriteFailureError):
        connection.enqueue({"type": "PONG"})


def test_closing_connection_refuses_frames(connection) -> None:
    connection.transition(ConnectionState.CLOSING)

    with pytest.raises(TransportWriteFailureError):
        connection.offer_event("org:org1:decisions", 1, {"type": "EVENT"})


async def test_sender_writes_in_order(connection) -> None:
    failures: list[object] = []
    connection.start_sender(lambda conn, err: failures.append(err))

    connection.enqueue({"type": "PONG", "n": 1})
    connection.enqueue({"type": "PONG", "n": 2})

    first = await connection.transport.next_frame()
    second = await connection.transport.next_frame()
    assert [first["n"], second["n"]] == [1, 2]
    assert failures == []
    await connection.stop_sender(0.1)


async def test_stuck_transport_reports_failure(connection) -> None:
    failed = asyncio.Event()
    errors: list[Exception] = []

    def on_failure(conn, err) -> None:
        errors.append(err)
        failed.set()

    connection.transport.block_sends = True
    connection.start_sender(on_failure)
    connection.enqueue({"type": "PONG"})

    await asyncio.wait_for(failed.wait(), timeout=1.0)
    assert isinstance(errors[0], TransportWriteFailureError)
    assert connection.transport.sent == []
