"""API key service — lookup, usage tracking and deactivation.

Every lookup goes through the key hash; raw keys are never stored or logged.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from sqlalchemy import select, update

from governs_relay.core.auth import hash_api_key
from governs_relay.core.exceptions import CredentialNotFoundError
from governs_relay.core.models import ApiKey

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class CredentialService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_raw_key(self, raw_key: str) -> ApiKey | None:
        result = await self._session.execute(
            select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key))
        )
        return result.scalar_one_or_none()

    async def touch_last_used(self, key_id: UUID) -> None:
        await self._session.execute(
            update(ApiKey).where(ApiKey.id == key_id).values(last_used_at=_now())
        )

    async def deactivate(self, key_id: UUID) -> ApiKey:
        """Mark a key inactive. Raises CredentialNotFoundError if unknown."""
        result = await self._session.execute(select(ApiKey).where(ApiKey.id == key_id))
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise CredentialNotFoundError("API key not found.")
        api_key.is_active = False
        await self._session.flush()
        logger.info("api_key_deactivated", key_id=str(key_id), org_id=str(api_key.org_id))
        return api_key


def is_expired(api_key: ApiKey, now: datetime | None = None) -> bool:
    if api_key.expires_at is None:
        return False
    return api_key.expires_at <= (now or _now())
