"""Tests for DecisionIngestor and EventPublisher (local fan-out)."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from governs_relay.core.exceptions import ChannelForbiddenError, InvalidMessageError
from governs_relay.core.models import Decision, RelayEvent
from governs_relay.relay.authenticator import CredentialRequest
from governs_relay.relay.messages import IngestMessage


def _decision(channel: str, key: str = "idem-1", **data) -> IngestMessage:
    return IngestMessage(
        channel=channel,
        schema_name="decision.v1",
        idempotency_key=key,
        data={
            "direction": "precheck",
            "decision": "deny",
            "tool": "send_email",
            "payloadHash": "sha256:0123456789abcdef",
            "latencyMs": 4,
            **data,
        },
    )


@pytest.fixture
async def identity(runtime, api_key):
    return await runtime.authenticator.authenticate(CredentialRequest(api_key=api_key[0]))


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def test_decision_is_stored_and_published(runtime, identity, session_factory) -> None:
    channel = f"org:{identity.tenant_id}:decisions"

    result = await runtime.ingestor.ingest(identity, _decision(channel))

    assert result.dedup is False
    assert result.cursor == 1
    assert result.decision_id is not None
    assert await _count(session_factory, Decision) == 1
    events = await runtime.store.since(channel, 0)
    assert events[0].data["id"] == result.decision_id
    assert events[0].data["decision"] == "deny"
    assert result.frame()["type"] == "INGEST_ACK"
    assert result.frame()["decisionId"] == result.decision_id


async def test_duplicate_idempotency_key_is_not_republished(
    runtime, identity, session_factory
) -> None:
    channel = f"org:{identity.tenant_id}:decisions"

    first = await runtime.ingestor.ingest(identity, _decision(channel))
    second = await runtime.ingestor.ingest(identity, _decision(channel))

    assert second.dedup is True
    assert second.decision_id == first.decision_id
    assert second.cursor is None
    assert await _count(session_factory, Decision) == 1
    assert await _count(session_factory, RelayEvent) == 1


async def test_ingest_to_foreign_channel_is_forbidden(runtime, identity, other_org) -> None:
    with pytest.raises(ChannelForbiddenError):
        await runtime.ingestor.ingest(identity, _decision(f"org:{other_org.id}:decisions"))


async def test_invalid_decision_data_is_rejected(runtime, identity) -> None:
    channel = f"org:{identity.tenant_id}:decisions"

    with pytest.raises(InvalidMessageError):
        await runtime.ingestor.ingest(identity, _decision(channel, payloadHash="md5:nope"))


async def test_other_schemas_are_published_as_is(runtime, identity, session_factory) -> None:
    channel = f"org:{identity.tenant_id}:dlq"
    message = IngestMessage(
        channel=channel, schema_name="dlq.v1", idempotency_key="dlq-1", data={"reason": "x"}
    )

    result = await runtime.ingestor.ingest(identity, message)

    assert result.decision_id is None
    assert await _count(session_factory, Decision) == 0
    events = await runtime.store.since(channel, 0)
    assert events[0].data == {"schema": "dlq.v1", "idempotencyKey": "dlq-1", "data": {"reason": "x"}}


async def test_publish_rejects_unknown_channels(runtime) -> None:
    with pytest.raises(InvalidMessageError):
        await runtime.publisher.publish("team:x:decisions", {})


async def test_publish_with_explicit_cursor(runtime) -> None:
    event = await runtime.publisher.publish("org:org1:decisions", {"n": 1}, cursor=42)

    assert event.cursor == 42
    assert event.frame()["cursor"] == "42"


async def test_local_revoke_closes_connections(runtime) -> None:
    assert await runtime.publisher.revoke("unknown-key") == 0
