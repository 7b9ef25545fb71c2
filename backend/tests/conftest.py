"""Shared test fixtures for the relay.

Uses a file-backed SQLite database per test (aiosqlite), so background
writers (audit, usage tracking) and the code under test share one store.
Sockets are replaced by MemoryTransport.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import uuid_utils

from governs_relay.core.auth import generate_api_key, hash_api_key
from governs_relay.core.config import Settings
from governs_relay.core.database import Base, create_engine, create_session_factory
from governs_relay.core.enums import AuthMethod, OrgRole
from governs_relay.core.models import ApiKey, Org, OrgMembership, User
from governs_relay.relay.authenticator import Identity
from governs_relay.relay.channels import derive_allowed_channels
from governs_relay.relay.runtime import RelayRuntime
from governs_relay.relay.transport import RelayTransport, TransportClosed

_CLOSE = object()


class MemoryTransport(RelayTransport):
    """In-memory duplex transport recording everything the relay sends."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.closed_with: tuple[int, str] | None = None
        self.block_sends = False
        self._arrived = asyncio.Event()
        self._read = 0

    @property
    def client(self) -> str | None:
        return "memory"

    async def accept(self) -> None:
        self.accepted = True

    async def receive_json(self) -> Any:
        item = await self.inbound.get()
        if item is _CLOSE:
            raise TransportClosed(1000)
        return item

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed_with is not None:
            raise TransportClosed(self.closed_with[0])
        if self.block_sends:
            await asyncio.Event().wait()
        self.sent.append(payload)
        self._arrived.set()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed_with is None:
            self.closed_with = (code, reason)
            self.inbound.put_nowait(_CLOSE)

    # -- test helpers -------------------------------------------------------

    def push(self, message: Any) -> None:
        self.inbound.put_nowait(message)

    def disconnect(self) -> None:
        self.inbound.put_nowait(_CLOSE)

    def frames(self, kind: str) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if frame["type"] == kind]

    async def next_frame(self, kind: str | None = None, timeout: float = 2.0) -> dict[str, Any]:
        """Next sent frame (of ``kind``) not yet returned by this method."""

        async def _wait() -> dict[str, Any]:
            while True:
                while self._read < len(self.sent):
                    frame = self.sent[self._read]
                    self._read += 1
                    if kind is None or frame["type"] == kind:
                        return frame
                self._arrived.clear()
                await self._arrived.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture
def make_transport():
    return MemoryTransport


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/relay.db",
        redis_url="",
        jwt_secret_key="test-secret",
        internal_api_token="internal-secret",
        relay_auth_timeout_seconds=2.0,
        relay_send_timeout_seconds=0.3,
        relay_close_drain_seconds=0.2,
        relay_heartbeat_interval_seconds=30.0,
        relay_heartbeat_max_missed=2,
        relay_outbound_queue_size=8,
        relay_replay_batch_limit=3,
        relay_lock_shards=4,
    )


@pytest.fixture
async def engine(settings: Settings):
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def runtime(settings: Settings, session_factory):
    """A fully wired relay without Redis (local fan-out). The sweeper is not started."""
    runtime = RelayRuntime(settings, session_factory)
    yield runtime
    await runtime.stop()


def _now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@pytest.fixture
async def org(session_factory) -> Org:
    async with session_factory() as session, session.begin():
        org = Org(id=uuid_utils.uuid7(), name="Acme", slug="acme", created_at=_now())
        session.add(org)
    return org


@pytest.fixture
async def other_org(session_factory) -> Org:
    async with session_factory() as session, session.begin():
        org = Org(id=uuid_utils.uuid7(), name="Globex", slug="globex", created_at=_now())
        session.add(org)
    return org


@pytest.fixture
async def user(session_factory, org: Org) -> User:
    async with session_factory() as session, session.begin():
        user = User(id=uuid_utils.uuid7(), email="dev@acme.test", name="Dev", created_at=_now())
        session.add(user)
        await session.flush()
        session.add(OrgMembership(org_id=org.id, user_id=user.id, role=OrgRole.DEVELOPER))
    return user


async def _create_key(
    session_factory,
    org: Org,
    user: User,
    *,
    is_active: bool = True,
    expires_at: datetime | None = None,
) -> tuple[str, ApiKey]:
    raw = generate_api_key()
    async with session_factory() as session, session.begin():
        api_key = ApiKey(
            id=uuid_utils.uuid7(),
            key_hash=hash_api_key(raw),
            key_prefix=raw[:8],
            name="test key",
            user_id=user.id,
            org_id=org.id,
            scopes=["decisions:write"],
            is_active=is_active,
            expires_at=expires_at,
            created_at=_now(),
        )
        session.add(api_key)
    return raw, api_key


@pytest.fixture
async def api_key(session_factory, org: Org, user: User) -> tuple[str, ApiKey]:
    """(raw key, stored ApiKey row) for an active key."""
    return await _create_key(session_factory, org, user)


@pytest.fixture
async def inactive_api_key(session_factory, org: Org, user: User) -> tuple[str, ApiKey]:
    return await _create_key(session_factory, org, user, is_active=False)


@pytest.fixture
async def expired_api_key(session_factory, org: Org, user: User) -> tuple[str, ApiKey]:
    return await _create_key(session_factory, org, user, expires_at=_now() - timedelta(minutes=1))


@pytest.fixture
def make_identity():
    """Build an Identity (with its derived allow-list) without touching the store."""

    def _make(
        tenant_id: str = "org1",
        user_id: str = "user1",
        credential_id: str | None = "key1",
    ) -> Identity:
        identity = Identity(
            tenant_id=tenant_id,
            user_id=user_id,
            auth_method=AuthMethod.API_KEY if credential_id else AuthMethod.SESSION,
            credential_id=credential_id,
        )
        return Identity(
            tenant_id=tenant_id,
            user_id=user_id,
            auth_method=identity.auth_method,
            credential_id=credential_id,
            allowed_channels=derive_allowed_channels(identity),
        )

    return _make
