"""Durable event history in the record store.

Cursors are assigned here: the next cursor of a channel is one past the
highest stored cursor, inside the inserting transaction. The unique
``(channel, cursor)`` constraint turns a concurrent append into an
IntegrityError, which is retried with a fresh cursor. Replay reads only
committed rows, ordered by cursor.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from governs_relay.core.exceptions import InternalError, InvalidMessageError
from governs_relay.core.models import RelayEvent
from governs_relay.relay.messages import EventFrame, to_frame

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

_APPEND_RETRIES = 5


@dataclass(frozen=True, slots=True)
class StoredEvent:
    channel: str
    cursor: int
    data: Any
    t: datetime
    org_id: str | None = None

    def frame(self) -> dict[str, Any]:
        return to_frame(EventFrame(channel=self.channel, cursor=str(self.cursor), data=self.data, t=self.t))

    def to_wire(self) -> str:
        """Serialise for the cross-process fan-out bus."""
        return json.dumps(
            {
                "channel": self.channel,
                "cursor": self.cursor,
                "data": self.data,
                "t": self.t.isoformat(),
                "org_id": self.org_id,
            }
        )

    @classmethod
    def from_wire(cls, raw: str | bytes) -> StoredEvent:
        body = json.loads(raw)
        return cls(
            channel=body["channel"],
            cursor=int(body["cursor"]),
            data=body.get("data"),
            t=datetime.fromisoformat(body["t"]),
            org_id=body.get("org_id"),
        )

    @classmethod
    def from_row(cls, row: RelayEvent) -> StoredEvent:
        return cls(
            channel=row.channel,
            cursor=row.cursor,
            data=row.payload,
            t=row.created_at.replace(tzinfo=UTC),
            org_id=str(row.org_id) if row.org_id else None,
        )


def _as_uuid(value: str | UUID | None) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


class EventStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        channel: str,
        data: Any,
        *,
        cursor: int | None = None,
        org_id: str | UUID | None = None,
    ) -> StoredEvent:
        """Persist an event and return it with its assigned cursor.

        An explicit ``cursor`` must be greater than every cursor already
        stored on the channel; otherwise InvalidMessageError is raised.
        """
        for attempt in range(1, _APPEND_RETRIES + 1):
            try:
                return await self._append_once(channel, data, cursor=cursor, org_id=org_id)
            except IntegrityError:
                if cursor is not None:
                    raise InvalidMessageError(
                        "Cursor already used on channel.", detail={"channel": channel}
                    ) from None
                logger.info("relay_cursor_conflict", channel=channel, attempt=attempt)
        raise InternalError("Could not assign a cursor.", detail={"channel": channel})

    async def _append_once(
        self,
        channel: str,
        data: Any,
        *,
        cursor: int | None,
        org_id: str | UUID | None,
    ) -> StoredEvent:
        async with self._session_factory() as session, session.begin():
            current = await session.scalar(
                select(func.max(RelayEvent.cursor)).where(RelayEvent.channel == channel)
            )
            current = current or 0
            if cursor is None:
                cursor = current + 1
            elif cursor <= current:
                raise InvalidMessageError(
                    "Cursor must increase on every channel.",
                    detail={"channel": channel, "cursor": str(cursor), "latest": str(current)},
                )
            row = RelayEvent(
                channel=channel,
                cursor=cursor,
                payload=data,
                org_id=_as_uuid(org_id),
                created_at=datetime.now(UTC).replace(tzinfo=None),
            )
            session.add(row)
        return StoredEvent.from_row(row)

    async def since(self, channel: str, cursor: int, *, limit: int = 500) -> list[StoredEvent]:
        """Events on ``channel`` with a cursor greater than ``cursor``, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RelayEvent)
                .where(RelayEvent.channel == channel, RelayEvent.cursor > cursor)
                .order_by(RelayEvent.cursor)
                .limit(limit)
            )
            return [StoredEvent.from_row(row) for row in result.scalars()]

    async def latest_cursor(self, channel: str) -> int | None:
        async with self._session_factory() as session:
            value: int | None = await session.scalar(
                select(func.max(RelayEvent.cursor)).where(RelayEvent.channel == channel)
            )
            return value
