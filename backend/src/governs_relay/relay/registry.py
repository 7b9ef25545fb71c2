"""Channel subscription registry.

Holds the two relay indexes in memory:

- channel name -> connection ids subscribed to it
- connection id -> (identity, allow-list, subscribed channels, acked cursors)

Mutations are serialised by sharded asyncio locks keyed by crc32 of the
connection id and channel names. Locks are always taken in ascending shard
order so overlapping multi-channel operations cannot deadlock. Reads used on
the dispatch path (``subscribers``) return immutable snapshots.
"""

from __future__ import annotations

import asyncio
import zlib
from collections import Counter, OrderedDict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from governs_relay.core.exceptions import ChannelForbiddenError
from governs_relay.relay.channels import Channel

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from governs_relay.relay.authenticator import Identity
    from governs_relay.relay.connection import RelayConnection

logger = structlog.get_logger()


class ShardedLocks:
    """A fixed pool of asyncio locks addressed by string key."""

    def __init__(self, shards: int = 16) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks = [asyncio.Lock() for _ in range(shards)]

    def shard_for(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._locks)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire the locks covering ``keys`` in ascending shard order."""
        async with AsyncExitStack() as stack:
            for shard in sorted({self.shard_for(key) for key in keys}):
                await stack.enter_async_context(self._locks[shard])
            yield


@dataclass
class ConnectionRecord:
    connection: RelayConnection
    identity: Identity
    allowed: frozenset[str]
    channels: set[str] = field(default_factory=set)
    cursors: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubscribeResult:
    accepted: list[str]
    rejected: dict[str, str]


class SubscriptionRegistry:
    def __init__(self, shards: int = 16, *, resume_limit: int = 10_000) -> None:
        self._locks = ShardedLocks(shards)
        self._records: dict[str, ConnectionRecord] = {}
        self._channels: dict[str, set[str]] = {}
        # (principal, channel) -> cursor, least recently acked first
        self._resume: OrderedDict[tuple[str, str], int] = OrderedDict()
        self._resume_limit = resume_limit

    # -- registration -------------------------------------------------------

    async def register(
        self,
        connection: RelayConnection,
        identity: Identity,
        allowed: Iterable[str] | None = None,
    ) -> ConnectionRecord:
        """Start tracking a connection. Raises ValueError on a duplicate id."""
        allow_list = frozenset(allowed if allowed is not None else identity.allowed_channels)
        async with self._locks.hold(connection.id):
            if connection.id in self._records:
                raise ValueError(f"Connection {connection.id} is already registered")
            record = ConnectionRecord(connection=connection, identity=identity, allowed=allow_list)
            self._records[connection.id] = record
        return record

    async def deregister(self, connection_id: str) -> bool:
        """Forget a connection and all its subscriptions. Unknown ids are a no-op."""
        record = self._records.get(connection_id)
        if record is None:
            return False
        while True:
            held = frozenset(record.channels)
            async with self._locks.hold(connection_id, *held):
                if self._records.get(connection_id) is not record:
                    return False
                # A subscribe may have added channels while we waited for the locks.
                if not record.channels <= held:
                    continue
                del self._records[connection_id]
                for channel in record.channels:
                    self._remove_subscriber(channel, connection_id)
                record.channels.clear()
                break
        logger.debug("relay_connection_deregistered", connection_id=connection_id)
        return True

    # -- subscriptions ------------------------------------------------------

    async def subscribe(self, connection_id: str, channels: Iterable[str]) -> SubscribeResult:
        """Subscribe to every permitted channel; the rest are rejected individually."""
        requested = list(dict.fromkeys(channels))
        record = self._records.get(connection_id)
        if record is None:
            return SubscribeResult(accepted=[], rejected={})

        accepted: list[str] = []
        rejected: dict[str, str] = {}
        async with self._locks.hold(connection_id, *requested):
            if connection_id not in self._records:
                return SubscribeResult(accepted=[], rejected={})
            for channel in requested:
                if channel not in record.allowed:
                    rejected[channel] = ChannelForbiddenError.code
                    continue
                record.channels.add(channel)
                self._channels.setdefault(channel, set()).add(connection_id)
                accepted.append(channel)

        if rejected:
            logger.info(
                "relay_subscribe_rejected",
                connection_id=connection_id,
                channels=sorted(rejected),
            )
        return SubscribeResult(accepted=accepted, rejected=rejected)

    async def unsubscribe(self, connection_id: str, channels: Iterable[str]) -> list[str]:
        requested = list(dict.fromkeys(channels))
        record = self._records.get(connection_id)
        if record is None:
            return []
        removed: list[str] = []
        async with self._locks.hold(connection_id, *requested):
            for channel in requested:
                if channel in record.channels:
                    record.channels.discard(channel)
                    self._remove_subscriber(channel, connection_id)
                    removed.append(channel)
        return removed

    def _remove_subscriber(self, channel: str, connection_id: str) -> None:
        subscribers = self._channels.get(channel)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._channels[channel]

    # -- acknowledgements ---------------------------------------------------

    async def record_ack(self, connection_id: str, channel: str, cursor: int) -> bool:
        """Advance the acknowledged cursor for a channel.

        Returns True if the stored cursor moved forward. Stale or repeated
        acks are no-ops. Raises ChannelForbiddenError for a channel outside
        the connection's allow-list.
        """
        record = self._records.get(connection_id)
        if record is None:
            return False
        if channel not in record.allowed:
            raise ChannelForbiddenError(detail={"channel": channel})
        async with self._locks.hold(connection_id):
            current = record.cursors.get(channel)
            if current is not None and cursor <= current:
                return False
            record.cursors[channel] = cursor
            key = (record.identity.principal, channel)
            if cursor > self._resume.get(key, -1):
                self._resume[key] = cursor
            self._resume.move_to_end(key)
            while len(self._resume) > self._resume_limit:
                self._resume.popitem(last=False)
        return True

    def acked_cursor(self, connection_id: str, channel: str) -> int | None:
        record = self._records.get(connection_id)
        return record.cursors.get(channel) if record else None

    def resume_cursor(self, identity: Identity, channel: str) -> int | None:
        """Last cursor acknowledged on ``channel`` by any connection of this principal."""
        return self._resume.get((identity.principal, channel))

    def forget_principal(self, principal: str) -> int:
        """Drop every resume cursor remembered for ``principal``. Returns how many."""
        keys = [key for key in self._resume if key[0] == principal]
        for key in keys:
            del self._resume[key]
        return len(keys)

    # -- reads --------------------------------------------------------------

    def subscribers(self, channel: str) -> tuple[RelayConnection, ...]:
        ids = self._channels.get(channel)
        if not ids:
            return ()
        return tuple(self._records[cid].connection for cid in tuple(ids) if cid in self._records)

    def get(self, connection_id: str) -> ConnectionRecord | None:
        return self._records.get(connection_id)

    def channels_of(self, connection_id: str) -> frozenset[str]:
        record = self._records.get(connection_id)
        return frozenset(record.channels) if record else frozenset()

    def count(self) -> int:
        return len(self._records)

    def connections(self) -> list[ConnectionRecord]:
        return list(self._records.values())

    def connections_for_tenant(self, tenant_id: str) -> list[ConnectionRecord]:
        return [r for r in self._records.values() if r.identity.tenant_id == tenant_id]

    def connections_for_credential(self, credential_id: str) -> list[ConnectionRecord]:
        return [r for r in self._records.values() if r.identity.credential_id == credential_id]

    def channel_stats(self) -> dict[str, object]:
        """Subscriber counts per channel scope and topic."""
        by_scope: Counter[str] = Counter()
        by_topic: Counter[str] = Counter()
        subscriptions = 0
        for name, ids in self._channels.items():
            parsed = Channel.parse(name)
            if parsed is None:
                continue
            by_scope[parsed.scope] += len(ids)
            by_topic[parsed.topic] += len(ids)
            subscriptions += len(ids)
        return {
            "channels": len(self._channels),
            "subscriptions": subscriptions,
            "by_scope": dict(by_scope),
            "by_topic": dict(by_topic),
        }
