"""Audit log writer for relay authentication and ingestion events.

Audit writes describe a primary operation and must never block or fail it:
``record_later`` schedules the write in the background and logs failures.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from governs_relay.core.models import AuditLog

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()


def _as_uuid(value: str | UUID | None) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class AuditLogService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()

    async def record(
        self,
        action: str,
        resource: str,
        *,
        org_id: str | UUID | None = None,
        user_id: str | UUID | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Write one audit entry in its own transaction."""
        async with self._session_factory() as session, session.begin():
            session.add(
                AuditLog(
                    org_id=_as_uuid(org_id),
                    user_id=_as_uuid(user_id),
                    action=action,
                    resource=resource,
                    details={**(details or {}), "service": "relay"},
                    created_at=datetime.now(UTC).replace(tzinfo=None),
                )
            )

    def record_later(
        self,
        action: str,
        resource: str,
        *,
        org_id: str | UUID | None = None,
        user_id: str | UUID | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Fire-and-forget variant of ``record``."""
        task = asyncio.create_task(
            self._record_safely(action, resource, org_id=org_id, user_id=user_id, details=details)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_safely(self, action: str, resource: str, **kwargs: object) -> None:
        try:
            await self.record(action, resource, **kwargs)  # type: ignore[arg-type]
        except Exception as exc:
            logger.warning("audit_log_failed", action=action, resource=resource, error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight background writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
