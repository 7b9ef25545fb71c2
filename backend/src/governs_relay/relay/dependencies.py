"""FastAPI dependencies for relay endpoints."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Header
from starlette.requests import HTTPConnection

from governs_relay.core.exceptions import InternalAccessDeniedError
from governs_relay.relay.runtime import RelayRuntime


def get_runtime(connection: HTTPConnection) -> RelayRuntime:
    """The runtime attached to the app (works for HTTP and WebSocket scopes)."""
    runtime: RelayRuntime = connection.app.state.runtime
    return runtime


RuntimeDep = Annotated[RelayRuntime, Depends(get_runtime)]


def require_internal_token(
    runtime: RuntimeDep,
    x_internal_token: Annotated[str | None, Header()] = None,
) -> None:
    """Guard for internal endpoints. Disabled (always 403) when no token is configured."""
    expected = runtime.settings.internal_api_token
    if not expected or not x_internal_token:
        raise InternalAccessDeniedError()
    if not secrets.compare_digest(expected, x_internal_token):
        raise InternalAccessDeniedError()


InternalTokenDep = Depends(require_internal_token)
