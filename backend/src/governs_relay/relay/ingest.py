"""Decision ingestion shared by the INGEST message and the HTTP endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from governs_relay.core.enums import IngestSchema
from governs_relay.core.exceptions import ChannelForbiddenError, InvalidMessageError
from governs_relay.core.models import Decision
from governs_relay.relay.messages import DecisionPayload, IngestAckFrame, to_frame

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from governs_relay.relay.authenticator import Identity
    from governs_relay.relay.messages import IngestMessage
    from governs_relay.relay.publisher import EventPublisher

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class IngestResult:
    id: str
    decision_id: str | None
    dedup: bool
    cursor: int | None

    def frame(self) -> dict[str, Any]:
        return to_frame(
            IngestAckFrame(
                id=self.id,
                decision_id=self.decision_id,
                dedup=self.dedup,
                cursor=str(self.cursor) if self.cursor is not None else None,
            )
        )


def _naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(UTC).replace(tzinfo=None)
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.replace(tzinfo=None)


class DecisionIngestor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: EventPublisher,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher

    async def ingest(self, identity: Identity, message: IngestMessage) -> IngestResult:
        """Record and publish one ingested event on behalf of ``identity``.

        ``decision.v1`` payloads are validated and stored as decisions,
        deduplicated per organisation by idempotency key; a duplicate is
        acknowledged but not published again. Other schemas are published
        as-is.
        """
        if message.channel not in identity.allowed_channels:
            raise ChannelForbiddenError(detail={"channel": message.channel})

        if message.schema_name != IngestSchema.DECISION_V1:
            event = await self._publisher.publish(
                message.channel,
                {
                    "schema": message.schema_name,
                    "idempotencyKey": message.idempotency_key,
                    "data": message.data,
                },
                org_id=identity.tenant_id,
            )
            return IngestResult(
                id=message.idempotency_key, decision_id=None, dedup=False, cursor=event.cursor
            )

        try:
            payload = DecisionPayload.model_validate(message.data)
        except ValidationError as exc:
            raise InvalidMessageError(
                "Invalid decision data.",
                detail={"errors": [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]},
            ) from exc

        org_id = UUID(identity.tenant_id)
        decision, created = await self._store_decision(org_id, message.idempotency_key, payload)
        if not created:
            logger.info(
                "relay_ingest_duplicate",
                org_id=identity.tenant_id,
                idempotency_key=message.idempotency_key,
                decision_id=str(decision.id),
            )
            return IngestResult(
                id=message.idempotency_key, decision_id=str(decision.id), dedup=True, cursor=None
            )

        event = await self._publisher.publish(
            message.channel,
            {
                "schema": IngestSchema.DECISION_V1,
                "id": str(decision.id),
                "orgId": identity.tenant_id,
                "direction": decision.direction,
                "decision": decision.decision,
                "tool": decision.tool,
                "scope": decision.scope,
                "correlationId": decision.correlation_id,
                "ts": decision.ts.replace(tzinfo=UTC).isoformat(),
            },
            org_id=org_id,
        )
        logger.info(
            "relay_decision_ingested",
            org_id=identity.tenant_id,
            decision_id=str(decision.id),
            direction=decision.direction,
            decision=decision.decision,
            cursor=event.cursor,
        )
        return IngestResult(
            id=message.idempotency_key, decision_id=str(decision.id), dedup=False, cursor=event.cursor
        )

    async def _store_decision(
        self, org_id: UUID, idempotency_key: str, payload: DecisionPayload
    ) -> tuple[Decision, bool]:
        existing = await self._find(org_id, idempotency_key)
        if existing is not None:
            return existing, False
        decision = Decision(
            org_id=org_id,
            direction=payload.direction,
            decision=payload.decision,
            tool=payload.tool,
            scope=payload.scope,
            detector_summary=payload.detector_summary,
            payload_hash=payload.payload_hash,
            latency_ms=payload.latency_ms,
            correlation_id=payload.correlation_id,
            tags=payload.tags,
            idempotency_key=idempotency_key,
            ts=_naive_utc(payload.ts),
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(decision)
        except IntegrityError:
            # Lost a race with a concurrent ingest of the same key.
            existing = await self._find(org_id, idempotency_key)
            if existing is None:
                raise
            return existing, False
        return decision, True

    async def _find(self, org_id: UUID, idempotency_key: str) -> Decision | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Decision).where(
                    Decision.org_id == org_id, Decision.idempotency_key == idempotency_key
                )
            )
            return result.scalar_one_or_none()
