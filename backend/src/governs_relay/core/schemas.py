"""Pydantic v2 request/response schemas for the relay's HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from governs_relay.core.enums import AuthMethod, ConnectionState, IngestSchema


class ErrorResponse(BaseModel):
    """Standard error response body."""

    code: str
    message: str
    detail: dict[str, object] | None = None


class HealthResponse(BaseModel):
    status: str
    connections: int
    uptime_seconds: float
    version: str
    fanout: str
    bridge: str | None = None


class InfoResponse(BaseModel):
    service: str
    version: str
    channel_patterns: list[str]
    topics: list[str]
    client_messages: list[str]
    server_messages: list[str]
    auth_methods: list[str]
    max_channels_per_request: int
    heartbeat_interval_seconds: float


class ConnectionInfo(BaseModel):
    connection_id: str
    user_id: str
    auth_method: AuthMethod
    state: ConnectionState
    channels: list[str]
    connected_at: datetime
    idle_seconds: float
    message_count: int


class ConnectionsResponse(BaseModel):
    org_id: str
    count: int
    connections: list[ConnectionInfo]
    channel_stats: dict[str, Any]


class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel: str = Field(min_length=1)
    schema_name: IngestSchema = Field(alias="schema")
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=200)
    data: dict[str, Any]


class IngestResponse(BaseModel):
    id: str
    decision_id: str | None = Field(default=None, serialization_alias="decisionId")
    dedup: bool
    cursor: str | None = None


class RevokeResponse(BaseModel):
    key_id: str
    revoked: bool
    notified: int
