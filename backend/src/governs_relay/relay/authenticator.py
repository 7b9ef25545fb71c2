"""Connection authenticator — resolves a credential to a relay identity.

Two credential kinds are accepted:
1. API key (``key`` query parameter or AUTH handshake), optionally with the
   organisation it must belong to (``org``, id or slug).
2. Platform session token (``token``), a JWT naming the user and organisation.

Record store lookups run under a hard timeout. Usage tracking and audit
writes run in the background and can never fail an authentication.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from governs_relay.core.auth import SessionTokenService
from governs_relay.core.credentials import CredentialService, is_expired
from governs_relay.core.enums import AuthMethod
from governs_relay.core.exceptions import (
    AuthenticationError,
    ConnectionTimeoutError,
    CredentialInactiveError,
    CredentialMissingError,
    CredentialNotFoundError,
    MembershipNotFoundError,
    TenantMismatchError,
    TokenInvalidError,
)
from governs_relay.core.models import OrgMembership, User
from governs_relay.relay.channels import derive_allowed_channels

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from governs_relay.core.audit import AuditLogService

logger = structlog.get_logger()

SESSION_SCOPES: tuple[str, ...] = ("dashboard:read", "dashboard:write")


@dataclass(frozen=True, slots=True)
class CredentialRequest:
    """Credential material presented by a connecting client."""

    api_key: str | None = None
    tenant: str | None = None
    session_token: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.api_key or self.session_token)


@dataclass(frozen=True, slots=True)
class Identity:
    """Resolved tenant/user identity for a connection."""

    tenant_id: str
    user_id: str
    auth_method: AuthMethod
    scopes: tuple[str, ...] = ()
    credential_id: str | None = None
    tenant_slug: str | None = None
    tenant_name: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    allowed_channels: frozenset[str] = field(default_factory=frozenset)

    @property
    def principal(self) -> str:
        """Stable key for remembering acked cursors across connections."""
        if self.credential_id:
            return credential_principal(self.credential_id)
        return f"session:{self.tenant_id}:{self.user_id}"


def credential_principal(credential_id: str) -> str:
    return f"key:{credential_id}"


def _parse_uuid(value: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        return None


class ConnectionAuthenticator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogService,
        *,
        tokens: SessionTokenService | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._tokens = tokens or SessionTokenService()
        self._timeout = timeout_seconds
        self._background: set[asyncio.Task[None]] = set()

    async def authenticate(self, request: CredentialRequest) -> Identity:
        """Resolve ``request`` to an Identity with its channel allow-list.

        Raises an AuthenticationError subclass describing the exact failure,
        or ConnectionTimeoutError if the record store does not answer in time.
        """
        if request.is_empty:
            self._audit_outcome(request, None, CredentialMissingError())
            raise CredentialMissingError()

        try:
            identity = await asyncio.wait_for(self._resolve(request), timeout=self._timeout)
        except TimeoutError as exc:
            error = ConnectionTimeoutError("Authentication timed out.")
            logger.warning("relay_auth_timeout", timeout_seconds=self._timeout)
            self._audit_outcome(request, None, error)
            raise error from exc
        except AuthenticationError as exc:
            logger.info("relay_auth_failed", code=exc.code, method=self._method(request))
            self._audit_outcome(request, None, exc)
            raise

        identity = _with_channels(identity)
        self._audit_outcome(request, identity, None)
        logger.info(
            "relay_auth_succeeded",
            tenant_id=identity.tenant_id,
            user_id=identity.user_id,
            method=identity.auth_method,
        )
        return identity

    async def _resolve(self, request: CredentialRequest) -> Identity:
        if request.api_key:
            return await self._resolve_api_key(request.api_key, request.tenant)
        assert request.session_token is not None
        return await self._resolve_session(request.session_token)

    async def _resolve_api_key(self, raw_key: str, tenant: str | None) -> Identity:
        async with self._session_factory() as session:
            api_key = await CredentialService(session).find_by_raw_key(raw_key)
            if api_key is None:
                raise CredentialNotFoundError("Invalid API key.")
            if not api_key.is_active or is_expired(api_key):
                raise CredentialInactiveError("API key is inactive.")

            org = api_key.org
            if tenant is not None and tenant not in (str(org.id), org.slug):
                raise TenantMismatchError()

            identity = Identity(
                tenant_id=str(org.id),
                user_id=str(api_key.user_id),
                auth_method=AuthMethod.API_KEY,
                scopes=tuple(api_key.scopes or ()),
                credential_id=str(api_key.id),
                tenant_slug=org.slug,
                tenant_name=org.name,
                user_email=api_key.user.email,
                user_name=api_key.user.name,
            )

        self._spawn(self._touch_last_used(api_key.id))
        return identity

    async def _resolve_session(self, token: str) -> Identity:
        claims = self._tokens.verify(token)
        user_id = _parse_uuid(claims.sub)
        org_id = _parse_uuid(claims.org_id)
        if user_id is None or org_id is None:
            raise TokenInvalidError("Token subject or organisation is malformed.")

        async with self._session_factory() as session:
            result = await session.execute(
                select(User)
                .where(User.id == user_id)
                .options(selectinload(User.memberships).selectinload(OrgMembership.org))
            )
            user = result.scalar_one_or_none()
            membership = None
            if user is not None:
                membership = next((m for m in user.memberships if m.org_id == org_id), None)
            if user is None or membership is None:
                raise MembershipNotFoundError()

            return Identity(
                tenant_id=str(membership.org_id),
                user_id=str(user.id),
                auth_method=AuthMethod.SESSION,
                scopes=SESSION_SCOPES,
                tenant_slug=membership.org.slug,
                tenant_name=membership.org.name,
                user_email=user.email,
                user_name=user.name,
            )

    async def _touch_last_used(self, key_id: UUID) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await CredentialService(session).touch_last_used(key_id)
        except Exception as exc:
            logger.warning("api_key_touch_failed", key_id=str(key_id), error=str(exc))

    def _audit_outcome(
        self,
        request: CredentialRequest,
        identity: Identity | None,
        error: Exception | None,
    ) -> None:
        details: dict[str, object] = {"method": self._method(request), "success": error is None}
        if error is not None:
            details["reason"] = getattr(error, "code", type(error).__name__)
        if identity is not None and identity.credential_id:
            details["credential_id"] = identity.credential_id
        self._audit.record_later(
            "relay_auth_succeeded" if error is None else "relay_auth_failed",
            "relay_auth",
            org_id=identity.tenant_id if identity else None,
            user_id=identity.user_id if identity else None,
            details=details,
        )

    def _spawn(self, coro: object) -> None:
        task = asyncio.create_task(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background usage tracking and audit writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._audit.drain()

    @staticmethod
    def _method(request: CredentialRequest) -> str:
        return AuthMethod.API_KEY if request.api_key else AuthMethod.SESSION


def _with_channels(identity: Identity) -> Identity:
    return Identity(
        tenant_id=identity.tenant_id,
        user_id=identity.user_id,
        auth_method=identity.auth_method,
        scopes=identity.scopes,
        credential_id=identity.credential_id,
        tenant_slug=identity.tenant_slug,
        tenant_name=identity.tenant_name,
        user_email=identity.user_email,
        user_name=identity.user_name,
        allowed_channels=derive_allowed_channels(identity),
    )
