"""Typed relay wire messages.

Every message is a JSON object discriminated by its ``type`` field. Inbound
(client -> relay) messages are parsed through ``parse_client_message``;
outbound (relay -> client) frames are Pydantic models serialised with
``to_frame``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from governs_relay.core.enums import (  # noqa: TCH001 (Pydantic needs these at runtime)
    DecisionDirection,
    DecisionOutcome,
    IngestSchema,
)
from governs_relay.core.exceptions import InvalidMessageError

CursorStr = Annotated[str, Field(pattern=r"^\d{1,18}$")]
ChannelList = Annotated[list[Annotated[str, Field(min_length=1)]], Field(min_length=1, max_length=10)]


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Client -> relay
# ---------------------------------------------------------------------------


class AuthMessage(BaseModel):
    """Handshake credential, used when none were given as query parameters."""

    type: Literal["AUTH"] = "AUTH"
    key: str | None = None
    org: str | None = None
    token: str | None = None


class SubscribeMessage(BaseModel):
    type: Literal["SUB"] = "SUB"
    channels: ChannelList
    cursors: dict[str, CursorStr] | None = None


class UnsubscribeMessage(BaseModel):
    type: Literal["UNSUB"] = "UNSUB"
    channels: ChannelList


class AckMessage(BaseModel):
    type: Literal["ACK"] = "ACK"
    channel: str
    cursor: CursorStr


class PingMessage(BaseModel):
    type: Literal["PING"] = "PING"
    timestamp: datetime | None = None


class ReplayMessage(BaseModel):
    """Replay a channel since ``cursor`` (or the principal's last ack)."""

    type: Literal["REPLAY"] = "REPLAY"
    channel: str
    cursor: CursorStr | None = None


class IngestMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["INGEST"] = "INGEST"
    channel: str = Field(min_length=1)
    schema_name: IngestSchema = Field(alias="schema")
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=200)
    data: dict[str, Any]


ClientMessage = Annotated[
    AuthMessage
    | SubscribeMessage
    | UnsubscribeMessage
    | AckMessage
    | PingMessage
    | ReplayMessage
    | IngestMessage,
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: object) -> ClientMessage:
    """Validate an inbound JSON object. Raises InvalidMessageError."""
    if not isinstance(raw, dict):
        raise InvalidMessageError("Message must be a JSON object.")
    try:
        return _client_adapter.validate_python(raw)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise InvalidMessageError(
            f"Invalid {raw.get('type', 'message')} message.", detail={"errors": errors}
        ) from exc


# ---------------------------------------------------------------------------
# Ingestion payloads
# ---------------------------------------------------------------------------


class DecisionPayload(BaseModel):
    """``decision.v1`` data. Accepts the platform's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    direction: DecisionDirection
    decision: DecisionOutcome
    tool: str | None = None
    scope: str | None = None
    detector_summary: dict[str, Any] = Field(default_factory=dict)
    payload_hash: str = Field(min_length=8, pattern=r"^sha256:")
    latency_ms: int | None = Field(default=None, ge=0)
    correlation_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    ts: datetime | None = None


# ---------------------------------------------------------------------------
# Relay -> client
# ---------------------------------------------------------------------------


class ReadyFrame(BaseModel):
    type: Literal["READY"] = "READY"
    connection_id: str = Field(serialization_alias="connectionId")
    channels: list[str]
    t: datetime = Field(default_factory=utc_now)


class EventFrame(BaseModel):
    type: Literal["EVENT"] = "EVENT"
    channel: str
    cursor: str
    data: Any
    t: datetime


class HeartbeatFrame(BaseModel):
    type: Literal["HEARTBEAT"] = "HEARTBEAT"
    t: datetime = Field(default_factory=utc_now)


class PongFrame(BaseModel):
    type: Literal["PONG"] = "PONG"
    t: datetime = Field(default_factory=utc_now)


class SubSuccessFrame(BaseModel):
    type: Literal["SUB_SUCCESS"] = "SUB_SUCCESS"
    channels: list[str]


class UnsubSuccessFrame(BaseModel):
    type: Literal["UNSUB_SUCCESS"] = "UNSUB_SUCCESS"
    channels: list[str]


class ReplayCompleteFrame(BaseModel):
    type: Literal["REPLAY_COMPLETE"] = "REPLAY_COMPLETE"
    channel: str
    count: int
    cursor: str | None


class IngestAckFrame(BaseModel):
    type: Literal["INGEST_ACK"] = "INGEST_ACK"
    id: str
    decision_id: str | None = Field(default=None, serialization_alias="decisionId")
    dedup: bool = False
    cursor: str | None = None


class ErrorFrame(BaseModel):
    type: Literal["ERROR"] = "ERROR"
    code: str
    data: dict[str, Any] = Field(default_factory=dict)
    t: datetime = Field(default_factory=utc_now)


def to_frame(message: BaseModel) -> dict[str, Any]:
    """Serialise an outbound model to a JSON-ready dict."""
    return message.model_dump(mode="json", by_alias=True)


def error_frame(code: str, message: str, **data: Any) -> dict[str, Any]:
    return to_frame(ErrorFrame(code=code, data={"message": message, **data}))
