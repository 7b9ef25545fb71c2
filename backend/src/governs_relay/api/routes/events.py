"""HTTP ingestion and credential revocation.

Endpoints:
    POST /api/v1/events                        — ingest an event (API key)
    POST /api/v1/credentials/{key_id}/revoke   — deactivate a key and drop its connections (internal)
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID  # noqa: TCH003 (FastAPI needs UUID at runtime for path params)

import structlog
from fastapi import APIRouter, Header

from governs_relay.core.credentials import CredentialService
from governs_relay.core.exceptions import CredentialMissingError
from governs_relay.core.schemas import IngestRequest, IngestResponse, RevokeResponse
from governs_relay.relay.authenticator import CredentialRequest
from governs_relay.relay.dependencies import InternalTokenDep, RuntimeDep
from governs_relay.relay.messages import IngestMessage

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1")


@router.post("/events", response_model=IngestResponse, status_code=202)
async def ingest_event(
    body: IngestRequest,
    runtime: RuntimeDep,
    x_governs_key: Annotated[str | None, Header()] = None,
    x_governs_org: Annotated[str | None, Header()] = None,
) -> IngestResponse:
    if not x_governs_key:
        raise CredentialMissingError("X-Governs-Key header is required.")
    identity = await runtime.authenticator.authenticate(
        CredentialRequest(api_key=x_governs_key, tenant=x_governs_org)
    )
    result = await runtime.ingestor.ingest(
        identity,
        IngestMessage(
            channel=body.channel,
            schema_name=body.schema_name,
            idempotency_key=body.idempotency_key,
            data=body.data,
        ),
    )
    return IngestResponse(
        id=result.id,
        decision_id=result.decision_id,
        dedup=result.dedup,
        cursor=str(result.cursor) if result.cursor is not None else None,
    )


@router.post(
    "/credentials/{key_id}/revoke",
    response_model=RevokeResponse,
    dependencies=[InternalTokenDep],
)
async def revoke_credential(key_id: UUID, runtime: RuntimeDep) -> RevokeResponse:
    async with runtime.session_factory() as session, session.begin():
        api_key = await CredentialService(session).deactivate(key_id)
    notified = await runtime.publisher.revoke(str(key_id))
    runtime.audit.record_later(
        "api_key_revoked",
        "relay_auth",
        org_id=api_key.org_id,
        user_id=api_key.user_id,
        details={"credential_id": str(key_id), "notified": notified},
    )
    logger.info("relay_credential_revoke_requested", key_id=str(key_id), notified=notified)
    return RevokeResponse(key_id=str(key_id), revoked=True, notified=notified)
