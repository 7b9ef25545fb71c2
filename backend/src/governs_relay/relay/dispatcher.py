"""Event dispatcher — live fan-out and replay-since-cursor.

Live dispatch on a channel runs under a per-channel (sharded) lock and only
enqueues onto outbound queues; it never waits on a connection. Each
connection tracks the last cursor it was delivered per channel:

- the next cursor is queued directly;
- a cursor at or below the position is skipped as already delivered;
- a cursor beyond the next one means something is missing (a publish that
  lost the race to the lock, or an event dispatched by another relay), so
  the channel enters catch-up and the missing range is read from the store.

Replay is the same catch-up path started from an explicit cursor. Catch-up
reads and waits for queue space outside the dispatch lock, while live
dispatch only records the newest cursor it saw for that connection. Each
connection therefore sees a channel's cursors in increasing order with no
gaps, and a slow replay never delays other subscribers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from governs_relay.core.exceptions import TransportWriteFailureError
from governs_relay.relay.registry import ShardedLocks

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from governs_relay.relay.connection import FailureCallback, RelayConnection
    from governs_relay.relay.registry import SubscribeResult, SubscriptionRegistry
    from governs_relay.relay.store import EventStore, StoredEvent

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class DispatchReport:
    delivered: int = 0
    skipped: int = 0
    failed: tuple[str, ...] = field(default_factory=tuple)
    deferred: int = 0


class EventDispatcher:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        store: EventStore,
        on_failure: FailureCallback,
        *,
        shards: int = 16,
        replay_batch_limit: int = 500,
    ) -> None:
        self._registry = registry
        self._store = store
        self._on_failure = on_failure
        self._locks = ShardedLocks(shards)
        self._batch = replay_batch_limit
        self._catch_ups: set[asyncio.Task[None]] = set()

    async def dispatch(self, event: StoredEvent) -> DispatchReport:
        """Deliver ``event`` to every current subscriber of its channel."""
        channel, cursor = event.channel, event.cursor
        frame = event.frame()
        delivered = skipped = deferred = 0
        failed: list[str] = []
        async with self._locks.hold(channel):
            for connection in self._registry.subscribers(channel):
                if connection.is_catching_up(channel):
                    connection.note_pending(channel, cursor)
                    deferred += 1
                    continue
                last = connection.delivered_cursor(channel)
                if last is not None and cursor <= last:
                    skipped += 1
                    continue
                if last is not None and cursor != last + 1:
                    connection.begin_catch_up(channel)
                    connection.note_pending(channel, cursor)
                    self._spawn_catch_up(connection, channel)
                    deferred += 1
                    continue
                try:
                    connection.offer_event(channel, cursor, frame)
                    delivered += 1
                except TransportWriteFailureError as exc:
                    failed.append(connection.id)
                    self._on_failure(connection, exc)

        if failed:
            logger.warning(
                "relay_dispatch_failures",
                channel=channel,
                cursor=cursor,
                failed=len(failed),
            )
        logger.debug(
            "relay_event_dispatched",
            channel=channel,
            cursor=cursor,
            delivered=delivered,
            skipped=skipped,
            deferred=deferred,
        )
        return DispatchReport(
            delivered=delivered, skipped=skipped, failed=tuple(failed), deferred=deferred
        )

    async def subscribe(
        self,
        connection: RelayConnection,
        channels: Iterable[str],
        cursors: Mapping[str, int] | None = None,
        *,
        announce: Callable[[SubscribeResult], None] | None = None,
    ) -> tuple[SubscribeResult, dict[str, int]]:
        """Subscribe and replay from ``cursors`` without racing live dispatch.

        ``announce`` runs after the registry update and before any replayed
        event is queued, so acknowledgements precede replayed history.
        Channels without a cursor start live delivery after the newest stored
        event. Returns the subscribe result and the number of events replayed
        per channel.
        """
        requested = list(dict.fromkeys(channels))
        cursors = cursors or {}
        async with self._locks.hold(*requested):
            result = await self._registry.subscribe(connection.id, requested)
            if announce is not None:
                announce(result)
            for channel in result.accepted:
                if channel in cursors:
                    connection.begin_catch_up(channel)
                else:
                    latest = await self._store.latest_cursor(channel)
                    connection.start_position(channel, latest or 0)

        replayed: dict[str, int] = {}
        for channel in result.accepted:
            if channel in cursors:
                replayed[channel] = await self.replay(connection, channel, cursors[channel])
        return result, replayed

    async def unsubscribe(self, connection: RelayConnection, channels: Iterable[str]) -> list[str]:
        requested = list(dict.fromkeys(channels))
        async with self._locks.hold(*requested):
            removed = await self._registry.unsubscribe(connection.id, requested)
            for channel in removed:
                connection.rewind(channel, None)
        return removed

    async def replay(self, connection: RelayConnection, channel: str, since: int) -> int:
        """Queue every stored event on ``channel`` after ``since``. Returns the count."""
        async with connection.catch_up_lock(channel):
            async with self._locks.hold(channel):
                connection.rewind(channel, since)
                connection.begin_catch_up(channel)
            count = await self._drain(connection, channel)
        logger.info(
            "relay_replay_completed",
            connection_id=connection.id,
            channel=channel,
            since=since,
            count=count,
        )
        return count

    async def stop(self) -> None:
        """Cancel catch-ups still running in the background."""
        tasks = list(self._catch_ups)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- catch-up -----------------------------------------------------------

    def _spawn_catch_up(self, connection: RelayConnection, channel: str) -> None:
        task = asyncio.create_task(self._catch_up(connection, channel))
        self._catch_ups.add(task)
        task.add_done_callback(self._catch_ups.discard)

    async def _catch_up(self, connection: RelayConnection, channel: str) -> None:
        try:
            async with connection.catch_up_lock(channel):
                count = await self._drain(connection, channel)
        except Exception:
            logger.exception("relay_catch_up_failed", connection_id=connection.id, channel=channel)
            return
        logger.debug(
            "relay_catch_up_completed",
            connection_id=connection.id,
            channel=channel,
            count=count,
        )

    async def _drain(self, connection: RelayConnection, channel: str) -> int:
        """Queue stored events after the delivered position until live dispatch is reached.

        Runs without the dispatch lock. Catch-up ends, under the lock, once
        the delivered position covers every cursor live dispatch deferred.
        """
        count = 0
        try:
            while connection.is_catching_up(channel):
                position = connection.delivered_cursor(channel) or 0
                batch = await self._store.since(channel, position, limit=self._batch)
                for event in batch:
                    if await connection.offer_event_when_ready(channel, event.cursor, event.frame()):
                        count += 1
                if len(batch) == self._batch:
                    continue
                async with self._locks.hold(channel):
                    head = connection.pending_head(channel)
                    reached = connection.delivered_cursor(channel) or 0
                    if head <= reached:
                        connection.end_catch_up(channel)
                    elif not batch:
                        logger.warning(
                            "relay_catch_up_incomplete",
                            connection_id=connection.id,
                            channel=channel,
                            delivered=reached,
                            pending=head,
                        )
                        connection.end_catch_up(channel)
        except TransportWriteFailureError as exc:
            connection.end_catch_up(channel)
            self._on_failure(connection, exc)
        except (Exception, asyncio.CancelledError):
            connection.end_catch_up(channel)
            raise
        return count
