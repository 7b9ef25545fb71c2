"""Service status routes.

Endpoints:
    GET /health           — liveness, connection count and Redis bridge state
    GET /info             — channel patterns and message catalogue
    GET /api/connections  — live connections of one organisation (internal)
"""

from __future__ import annotations

from typing import get_args

from fastapi import APIRouter, Query

from governs_relay.core.enums import AuthMethod, ChannelTopic
from governs_relay.core.schemas import (
    ConnectionInfo,
    ConnectionsResponse,
    HealthResponse,
    InfoResponse,
)
from governs_relay.relay.channels import CHANNEL_PATTERNS
from governs_relay.relay.dependencies import InternalTokenDep, RuntimeDep
from governs_relay.relay.messages import (
    ClientMessage,
    ErrorFrame,
    EventFrame,
    HeartbeatFrame,
    IngestAckFrame,
    PongFrame,
    ReadyFrame,
    ReplayCompleteFrame,
    SubSuccessFrame,
    UnsubSuccessFrame,
)

router = APIRouter(tags=["health"])

_SERVER_FRAMES = (
    ReadyFrame,
    EventFrame,
    HeartbeatFrame,
    PongFrame,
    SubSuccessFrame,
    UnsubSuccessFrame,
    ReplayCompleteFrame,
    IngestAckFrame,
    ErrorFrame,
)


def _message_types(models: tuple[type, ...]) -> list[str]:
    return [model.model_fields["type"].default for model in models]


@router.get("/health", response_model=HealthResponse)
async def health(runtime: RuntimeDep) -> HealthResponse:
    """Liveness probe — no auth required.

    Reports ``degraded`` while the Redis bridge is reconnecting, since
    events published by other relay processes are not arriving.
    """
    bridge = runtime.bridge
    bridge_state = None if bridge is None else ("connected" if bridge.connected else "reconnecting")
    return HealthResponse(
        status="degraded" if bridge_state == "reconnecting" else "healthy",
        connections=runtime.registry.count(),
        uptime_seconds=round(runtime.uptime_seconds, 3),
        version=runtime.settings.app_version,
        fanout="redis" if runtime.redis is not None else "local",
        bridge=bridge_state,
    )


@router.get("/info", response_model=InfoResponse)
async def info(runtime: RuntimeDep) -> InfoResponse:
    client_models = get_args(get_args(ClientMessage)[0])
    return InfoResponse(
        service=runtime.settings.app_name,
        version=runtime.settings.app_version,
        channel_patterns=list(CHANNEL_PATTERNS),
        topics=[topic.value for topic in ChannelTopic],
        client_messages=_message_types(client_models),
        server_messages=_message_types(_SERVER_FRAMES),
        auth_methods=[method.value for method in AuthMethod],
        max_channels_per_request=10,
        heartbeat_interval_seconds=runtime.settings.relay_heartbeat_interval_seconds,
    )


@router.get(
    "/api/connections",
    response_model=ConnectionsResponse,
    dependencies=[InternalTokenDep],
)
async def connections(
    runtime: RuntimeDep,
    org_id: str = Query(min_length=1),
) -> ConnectionsResponse:
    records = runtime.registry.connections_for_tenant(org_id)
    return ConnectionsResponse(
        org_id=org_id,
        count=len(records),
        connections=[
            ConnectionInfo(
                connection_id=record.connection.id,
                user_id=record.identity.user_id,
                auth_method=record.identity.auth_method,
                state=record.connection.state,
                channels=sorted(record.channels),
                connected_at=record.connection.connected_at,
                idle_seconds=round(record.connection.idle_seconds(), 3),
                message_count=record.connection.message_count,
            )
            for record in records
        ],
        channel_stats=runtime.registry.channel_stats(),
    )
