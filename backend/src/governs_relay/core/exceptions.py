"""Relay error taxonomy.

Every error carries a stable ``code`` that is sent to clients in ``ERROR``
frames and HTTP error bodies, so callers can make retry/backoff decisions
programmatically. Global exception handlers in api/main.py convert these to
ErrorResponse.
"""


class RelayError(Exception):
    """Base exception for all relay errors."""

    status_code: int = 500
    code: str = "InternalError"
    message: str = "An unexpected error occurred."
    close_code: int = 1011

    def __init__(self, message: str | None = None, detail: dict[str, object] | None = None):
        self.message = message or self.__class__.message
        self.detail = detail
        super().__init__(self.message)


class AuthenticationError(RelayError):
    """Base for failures that terminate a connection attempt."""

    status_code = 401
    close_code = 1008


class CredentialMissingError(AuthenticationError):
    code = "CredentialMissing"
    message = "A credential is required."


class CredentialNotFoundError(AuthenticationError):
    code = "CredentialNotFound"
    message = "Credential not recognised."


class CredentialInactiveError(AuthenticationError):
    code = "CredentialInactive"
    message = "Credential is inactive."


class TenantMismatchError(AuthenticationError):
    status_code = 403
    code = "TenantMismatch"
    message = "Credential does not belong to the specified organisation."


class TokenInvalidError(AuthenticationError):
    code = "TokenInvalid"
    message = "Invalid session token."


class TokenExpiredError(AuthenticationError):
    code = "TokenExpired"
    message = "Session token has expired."


class MembershipNotFoundError(AuthenticationError):
    status_code = 403
    code = "MembershipNotFound"
    message = "User is not a member of the organisation."


class ConnectionTimeoutError(RelayError):
    status_code = 504
    code = "ConnectionTimeout"
    message = "Timed out."
    close_code = 1008


class ChannelForbiddenError(RelayError):
    status_code = 403
    code = "ChannelForbidden"
    message = "Not authorised for channel."
    close_code = 1008


class InvalidMessageError(RelayError):
    status_code = 422
    code = "InvalidMessage"
    message = "Message could not be processed."
    close_code = 1003


class TransportWriteFailureError(RelayError):
    code = "TransportWriteFailure"
    message = "Could not deliver to connection."


class InvalidStateTransitionError(RelayError):
    code = "InvalidStateTransition"
    message = "Invalid connection state transition."


class ReconnectExhaustedError(RelayError):
    status_code = 503
    code = "ReconnectExhausted"
    message = "Gave up reconnecting to the relay."


class InternalError(RelayError):
    pass


class InternalAccessDeniedError(RelayError):
    status_code = 403
    code = "Forbidden"
    message = "Internal API token required."


_ERRORS_BY_CODE: dict[str, type[RelayError]] = {
    cls.code: cls
    for cls in (
        CredentialMissingError,
        CredentialNotFoundError,
        CredentialInactiveError,
        TenantMismatchError,
        TokenInvalidError,
        TokenExpiredError,
        MembershipNotFoundError,
        ConnectionTimeoutError,
        ChannelForbiddenError,
        InvalidMessageError,
        TransportWriteFailureError,
        InvalidStateTransitionError,
        ReconnectExhaustedError,
        InternalError,
    )
}


def error_from_code(code: str, message: str | None = None) -> RelayError:
    """Rebuild a typed error from an ``ERROR`` frame. Unknown codes become InternalError."""
    return _ERRORS_BY_CODE.get(code, InternalError)(message)
