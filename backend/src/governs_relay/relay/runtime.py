"""Relay runtime — owns every relay component for one application instance.

Nothing in the relay is a module-level singleton: the app factory (or a
test) builds a RelayRuntime and everything is reached through it.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog
from redis.asyncio import Redis

from governs_relay.core.audit import AuditLogService
from governs_relay.core.auth import SessionTokenService
from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.core.database import create_engine, create_session_factory
from governs_relay.relay.authenticator import ConnectionAuthenticator
from governs_relay.relay.bridge import RedisBridge
from governs_relay.relay.dispatcher import EventDispatcher
from governs_relay.relay.gateway import RelayGateway
from governs_relay.relay.ingest import DecisionIngestor
from governs_relay.relay.lifecycle import LifecycleManager
from governs_relay.relay.publisher import EventPublisher
from governs_relay.relay.registry import SubscriptionRegistry
from governs_relay.relay.store import EventStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = structlog.get_logger()


class RelayRuntime:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        redis: Redis | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.redis = redis
        self._engine = engine
        self._started_at = time.monotonic()

        self.audit = AuditLogService(session_factory)
        self.authenticator = ConnectionAuthenticator(
            session_factory,
            self.audit,
            tokens=SessionTokenService(settings),
            timeout_seconds=settings.relay_auth_timeout_seconds,
        )
        self.registry = SubscriptionRegistry(
            settings.relay_lock_shards, resume_limit=settings.relay_resume_cursor_limit
        )
        self.lifecycle = LifecycleManager(
            self.registry,
            heartbeat_interval=settings.relay_heartbeat_interval_seconds,
            max_missed=settings.relay_heartbeat_max_missed,
            drain_seconds=settings.relay_close_drain_seconds,
            revocation_memory_seconds=settings.relay_revocation_memory_seconds,
        )
        self.store = EventStore(session_factory)
        self.dispatcher = EventDispatcher(
            self.registry,
            self.store,
            self.lifecycle.schedule_close,
            shards=settings.relay_lock_shards,
            replay_batch_limit=settings.relay_replay_batch_limit,
        )
        self.publisher = EventPublisher(
            self.store, self.dispatcher, self.lifecycle, redis=redis, settings=settings
        )
        self.ingestor = DecisionIngestor(session_factory, self.publisher)
        self.gateway = RelayGateway(
            self.authenticator,
            self.registry,
            self.dispatcher,
            self.lifecycle,
            self.ingestor,
            settings=settings,
        )
        self.bridge = (
            RedisBridge(redis, self.dispatcher, self.lifecycle, settings=settings)
            if redis is not None
            else None
        )

    @classmethod
    def build(cls, settings: Settings | None = None) -> RelayRuntime:
        """Create a runtime with its own engine and (optional) Redis client."""
        settings = settings or default_settings
        engine = create_engine(settings)
        redis = Redis.from_url(settings.redis_url) if settings.redis_url else None
        return cls(settings, create_session_factory(engine), redis=redis, engine=engine)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_at

    async def start(self) -> None:
        if self.bridge is not None:
            await self.bridge.start()
        self.lifecycle.start()
        logger.info(
            "relay_started",
            fanout="redis" if self.redis is not None else "local",
            heartbeat_interval=self.settings.relay_heartbeat_interval_seconds,
        )

    async def stop(self) -> None:
        await self.lifecycle.shutdown()
        if self.bridge is not None:
            await self.bridge.stop()
        await self.dispatcher.stop()
        await self.authenticator.drain()
        if self.redis is not None:
            await self.redis.aclose()
        if self._engine is not None:
            await self._engine.dispose()
        logger.info("relay_stopped")
