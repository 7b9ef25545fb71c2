"""Tests for RelayGateway — handshake, message routing and teardown.

Each test runs ``gateway.handle`` as a task over a MemoryTransport and talks
to it the way a client would.
"""

from __future__ import annotations

import asyncio

from governs_relay.core.auth import SessionTokenService
from governs_relay.core.enums import ConnectionState
from governs_relay.relay.gateway import split_channels
from governs_relay.relay.runtime import RelayRuntime


async def _open(runtime, transport, params):
    task = asyncio.create_task(runtime.gateway.handle(transport, params))
    return task


async def _finish(transport, task):
    transport.disconnect()
    return await asyncio.wait_for(task, timeout=2.0)


def test_split_channels() -> None:
    assert split_channels(None) == []
    assert split_channels(" a , ,b ") == ["a", "b"]


async def test_query_credentials_yield_ready(runtime, make_transport, api_key, org) -> None:
    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0], "org": "acme"})

    ready = await transport.next_frame("READY")

    assert transport.accepted is True
    assert f"org:{org.id}:decisions" in ready["channels"]
    assert runtime.registry.count() == 1
    connection = await _finish(transport, task)
    assert connection.state == ConnectionState.CLOSED
    assert transport.closed_with == (1000, "client_closed")
    assert runtime.registry.count() == 0


async def test_auth_message_handshake(runtime, make_transport, settings, org, user) -> None:
    token = SessionTokenService(settings).issue(str(user.id), str(org.id))
    transport = make_transport()
    task = await _open(runtime, transport, {})

    transport.push({"type": "AUTH", "token": token})
    ready = await transport.next_frame("READY")

    assert ready["connectionId"]
    await _finish(transport, task)


async def test_bad_credentials_close_with_policy_violation(runtime, make_transport) -> None:
    transport = make_transport()

    connection = await asyncio.wait_for(
        runtime.gateway.handle(transport, {"key": "gai_unknown"}), timeout=2.0
    )

    assert connection.state == ConnectionState.CLOSED
    assert transport.frames("ERROR")[0]["code"] == "CredentialNotFound"
    assert transport.closed_with is not None
    assert transport.closed_with[0] == 1008
    assert transport.frames("READY") == []
    assert runtime.registry.count() == 0


async def test_first_message_must_be_auth(runtime, make_transport) -> None:
    transport = make_transport()
    task = await _open(runtime, transport, {})

    transport.push({"type": "PING"})
    await asyncio.wait_for(task, timeout=2.0)

    assert transport.frames("ERROR")[0]["code"] == "CredentialMissing"
    assert transport.closed_with is not None
    assert transport.closed_with[0] == 1008


async def test_silent_client_times_out(session_factory, settings, make_transport) -> None:
    runtime = RelayRuntime(
        settings.model_copy(update={"relay_auth_timeout_seconds": 0.05}), session_factory
    )
    transport = make_transport()

    await asyncio.wait_for(runtime.gateway.handle(transport, {}), timeout=2.0)

    assert transport.frames("ERROR")[0]["code"] == "ConnectionTimeout"
    await runtime.stop()


async def test_ping_sub_and_forbidden_channel(
    runtime, make_transport, api_key, org, other_org
) -> None:
    own = f"org:{org.id}:decisions"
    foreign = f"org:{other_org.id}:decisions"
    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0]})
    await transport.next_frame("READY")

    transport.push({"type": "PING"})
    assert (await transport.next_frame())["type"] == "PONG"

    transport.push({"type": "SUB", "channels": [own, foreign]})
    success = await transport.next_frame("SUB_SUCCESS")
    error = await transport.next_frame("ERROR")

    assert success["channels"] == [own]
    assert error["code"] == "ChannelForbidden"
    assert error["data"]["channel"] == foreign
    connection = runtime.registry.connections()[0].connection
    assert connection.state == ConnectionState.SUBSCRIBED
    assert runtime.registry.channels_of(connection.id) == {own}
    await _finish(transport, task)


async def test_invalid_message_keeps_connection_open(runtime, make_transport, api_key) -> None:
    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0]})
    await transport.next_frame("READY")

    transport.push({"type": "SUB", "channels": []})
    transport.push({"type": "NOPE"})
    transport.push(["not", "an", "object"])
    transport.push({"type": "PING"})

    codes = [(await transport.next_frame("ERROR"))["code"] for _ in range(3)]
    assert codes == ["InvalidMessage"] * 3
    await transport.next_frame("PONG")
    assert not task.done()
    await _finish(transport, task)


async def test_initial_channels_from_query(runtime, make_transport, api_key, org) -> None:
    own = f"org:{org.id}:decisions"
    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0], "channels": own})

    success = await transport.next_frame("SUB_SUCCESS")

    assert success["channels"] == [own]
    await _finish(transport, task)


async def test_events_replay_and_ack(runtime, make_transport, api_key, org) -> None:
    channel = f"org:{org.id}:decisions"
    for n in range(4):
        await runtime.publisher.publish(channel, {"n": n})

    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0]})
    await transport.next_frame("READY")

    transport.push({"type": "SUB", "channels": [channel], "cursors": {channel: "2"}})
    await transport.next_frame("SUB_SUCCESS")
    replayed = [(await transport.next_frame("EVENT"))["cursor"] for _ in range(2)]
    assert replayed == ["3", "4"]

    await runtime.publisher.publish(channel, {"n": 4})
    live = await transport.next_frame("EVENT")
    assert live["cursor"] == "5"

    transport.push({"type": "ACK", "channel": channel, "cursor": "5"})
    transport.push({"type": "REPLAY", "channel": channel, "cursor": "3"})
    events = [(await transport.next_frame("EVENT"))["cursor"] for _ in range(2)]
    complete = await transport.next_frame("REPLAY_COMPLETE")

    assert events == ["4", "5"]
    assert complete == {"type": "REPLAY_COMPLETE", "channel": channel, "count": 2, "cursor": "5"}
    connection = runtime.registry.connections()[0].connection
    assert runtime.registry.acked_cursor(connection.id, channel) == 5
    await _finish(transport, task)


async def test_ingest_returns_ack(runtime, make_transport, api_key, org) -> None:
    channel = f"org:{org.id}:decisions"
    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0]})
    await transport.next_frame("READY")

    transport.push(
        {
            "type": "INGEST",
            "channel": channel,
            "schema": "decision.v1",
            "idempotencyKey": "abc",
            "data": {"direction": "postcheck", "decision": "allow", "payloadHash": "sha256:ffff0000"},
        }
    )
    ack = await transport.next_frame("INGEST_ACK")

    assert ack["dedup"] is False
    assert ack["cursor"] == "1"
    assert ack["decisionId"]
    await _finish(transport, task)


async def test_second_auth_is_rejected(runtime, make_transport, api_key) -> None:
    transport = make_transport()
    task = await _open(runtime, transport, {"key": api_key[0]})
    await transport.next_frame("READY")

    transport.push({"type": "AUTH", "key": api_key[0]})
    error = await transport.next_frame("ERROR")

    assert error["code"] == "InvalidMessage"
    await _finish(transport, task)


async def test_revocation_ends_the_read_loop(runtime, make_transport, api_key) -> None:
    raw, stored = api_key
    transport = make_transport()
    task = await _open(runtime, transport, {"key": raw})
    await transport.next_frame("READY")

    closed = await runtime.lifecycle.revoke_credential(str(stored.id))
    connection = await asyncio.wait_for(task, timeout=2.0)

    assert closed == 1
    assert connection.state == ConnectionState.CLOSED
    assert transport.frames("ERROR")[-1]["code"] == "CredentialInactive"
    assert transport.closed_with is not None
    assert transport.closed_with[0] == 1008


async def test_key_revoked_during_handshake_is_closed_on_register(
    runtime, make_transport, api_key
) -> None:
    raw, stored = api_key
    # The revocation lands after the key was checked but before the
    # connection is registered, so there is nothing for it to close yet.
    assert await runtime.lifecycle.revoke_credential(str(stored.id)) == 0
    transport = make_transport()

    connection = await asyncio.wait_for(runtime.gateway.handle(transport, {"key": raw}), timeout=2.0)

    assert connection.state == ConnectionState.CLOSED
    assert transport.frames("READY") == []
    assert transport.frames("ERROR")[-1]["code"] == "CredentialInactive"
    assert transport.closed_with is not None
    assert transport.closed_with[0] == 1008
    assert runtime.registry.count() == 0
