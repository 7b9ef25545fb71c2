"""Session token and API key primitives.

Session tokens are HS256 JWTs issued by the platform for dashboard users.
API keys are opaque secrets; the record store only holds their sha256 hash.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass

import structlog
from jose import ExpiredSignatureError, JWTError, jwt

from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.core.exceptions import TokenExpiredError, TokenInvalidError

logger = structlog.get_logger()

API_KEY_PREFIX = "gai_"


@dataclass(frozen=True, slots=True)
class SessionClaims:
    """Claims required from a session token."""

    sub: str
    org_id: str
    exp: int


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    """Create a new raw API key. Callers persist only ``hash_api_key`` of it."""
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


class SessionTokenService:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings

    def verify(self, token: str) -> SessionClaims:
        """Validate signature, expiry and required claims.

        Raises TokenExpiredError for an expired token and TokenInvalidError for
        anything else that is wrong with it.
        """
        try:
            payload = jwt.decode(
                token,
                self._settings.jwt_secret_key,
                algorithms=[self._settings.jwt_algorithm],
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            logger.warning("session_token_invalid", error=str(exc))
            raise TokenInvalidError() from exc

        sub = payload.get("sub")
        org_id = payload.get("org_id")
        exp = payload.get("exp")
        if not all([sub, org_id, exp]):
            raise TokenInvalidError("Token missing required claims.")

        return SessionClaims(sub=str(sub), org_id=str(org_id), exp=int(exp))

    def issue(self, user_id: str, org_id: str, *, expires_in: int | None = None) -> str:
        """Create a session token. Used by the platform and by tests."""
        now = int(time.time())
        ttl = (
            expires_in
            if expires_in is not None
            else self._settings.session_token_expire_minutes * 60
        )
        payload = {
            "sub": str(user_id),
            "org_id": str(org_id),
            "iat": now,
            "exp": now + ttl,
        }
        result: str = jwt.encode(
            payload, self._settings.jwt_secret_key, algorithm=self._settings.jwt_algorithm
        )
        return result
