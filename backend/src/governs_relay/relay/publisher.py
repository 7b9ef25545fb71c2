"""Event publisher — records events and fans them out.

Other services (HTTP ingestion, INGEST messages, platform jobs) use this to
push events onto relay channels. Every event is first appended to the record
store, which assigns its cursor. Fan-out then goes either through Redis
pub/sub, so every relay process sees it, or straight to the local dispatcher
when no Redis is configured. Concurrent publishes may reach the dispatcher
out of cursor order; it fills such gaps from the store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.core.exceptions import InvalidMessageError
from governs_relay.relay.channels import is_valid_channel

if TYPE_CHECKING:
    from uuid import UUID

    from redis.asyncio import Redis

    from governs_relay.relay.dispatcher import EventDispatcher
    from governs_relay.relay.lifecycle import LifecycleManager
    from governs_relay.relay.store import EventStore, StoredEvent

logger = structlog.get_logger()


class EventPublisher:
    def __init__(
        self,
        store: EventStore,
        dispatcher: EventDispatcher,
        lifecycle: LifecycleManager,
        *,
        redis: Redis | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._redis = redis
        self._settings = settings or default_settings

    async def publish(
        self,
        channel: str,
        data: Any,
        *,
        org_id: str | UUID | None = None,
        cursor: int | None = None,
    ) -> StoredEvent:
        """Append ``data`` to ``channel`` and fan it out. Returns the stored event."""
        if not is_valid_channel(channel):
            raise InvalidMessageError("Unknown channel.", detail={"channel": channel})

        event = await self._store.append(channel, data, cursor=cursor, org_id=org_id)
        if self._redis is not None:
            await self._redis.publish(self._settings.relay_events_channel, event.to_wire())
        else:
            await self._dispatcher.dispatch(event)

        logger.debug(
            "relay_event_published",
            channel=channel,
            cursor=event.cursor,
            via="redis" if self._redis is not None else "local",
        )
        return event

    async def revoke(self, credential_id: str) -> int:
        """Push a credential revocation to every relay process.

        With Redis this returns the number of bus subscribers notified;
        locally it returns the number of connections closed.
        """
        if self._redis is not None:
            receivers: int = await self._redis.publish(
                self._settings.relay_revocations_channel, credential_id
            )
            return receivers
        return await self._lifecycle.revoke_credential(credential_id)
