"""Redis pub/sub bridge — feeds bus traffic into the local relay.

Each relay process subscribes to the events channel (wire-encoded
StoredEvents, dispatched to local subscribers) and the revocations channel
(credential ids, whose local connections are closed).

A lost Redis connection is logged and retried with capped exponential
backoff; ``connected`` reports whether the subscription is currently live.
Events published while the bridge was down reach local subscribers through
the dispatcher's catch-up on the next event of the channel.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import RedisError

from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.relay.client import ReconnectPolicy
from governs_relay.relay.store import StoredEvent

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

    from governs_relay.relay.dispatcher import EventDispatcher
    from governs_relay.relay.lifecycle import LifecycleManager

logger = structlog.get_logger()


class RedisBridge:
    def __init__(
        self,
        redis: Redis,
        dispatcher: EventDispatcher,
        lifecycle: LifecycleManager,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._redis = redis
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._settings = settings or default_settings
        self._policy = ReconnectPolicy(
            base_delay=self._settings.relay_bridge_retry_base_seconds,
            max_delay=self._settings.relay_bridge_retry_max_seconds,
            max_attempts=0,
            jitter=self._settings.reconnect_jitter,
        )
        self._task: asyncio.Task[None] | None = None
        self._settled = asyncio.Event()
        self._connected = False
        self._failures = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        """Start listening; returns once the first subscribe attempt has settled.

        A failed attempt does not raise; the bridge keeps retrying in the
        background and ``connected`` stays False until it succeeds.
        """
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        settled = asyncio.create_task(self._settled.wait())
        await asyncio.wait({self._task, settled}, return_when=asyncio.FIRST_COMPLETED)
        settled.cancel()
        if self._task.done():
            task, self._task = self._task, None
            task.result()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._settled.clear()
        logger.info("relay_bridge_stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self._listen()
            except (RedisError, OSError) as exc:
                self._failures += 1
                delay = self._policy.delay_for(self._failures)
                logger.warning(
                    "relay_bridge_disconnected",
                    error=str(exc) or type(exc).__name__,
                    attempt=self._failures,
                    delay=round(delay, 3),
                )
                self._settled.set()
                await asyncio.sleep(delay)

    async def _listen(self) -> None:
        events_key = self._settings.relay_events_channel
        revocations_key = self._settings.relay_revocations_channel
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(events_key, revocations_key)
            self._connected = True
            self._failures = 0
            self._settled.set()
            logger.info("relay_bridge_subscribed", events=events_key, revocations=revocations_key)

            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None or message["type"] != "message":
                    continue
                channel = _decode(message["channel"])
                data = message["data"]
                try:
                    if channel == events_key:
                        await self._dispatcher.dispatch(StoredEvent.from_wire(data))
                    elif channel == revocations_key:
                        await self._lifecycle.revoke_credential(_decode(data))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning("relay_bridge_bad_message", channel=channel, error=str(exc))
        finally:
            self._connected = False
            await _close(pubsub)


async def _close(pubsub: PubSub) -> None:
    try:
        await pubsub.aclose()
    except (RedisError, OSError) as exc:
        logger.debug("relay_bridge_close_failed", error=str(exc))


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value
