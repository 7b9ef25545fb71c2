"""Shared StrEnum definitions for the relay and the record store."""

from enum import StrEnum


class ChannelScope(StrEnum):
    ORG = "org"
    USER = "user"
    KEY = "key"


class ChannelTopic(StrEnum):
    DECISIONS = "decisions"
    NOTIFICATIONS = "notifications"
    USAGE = "usage"
    PRECHECK = "precheck"
    POSTCHECK = "postcheck"
    DLQ = "dlq"
    APPROVALS = "approvals"


class AuthMethod(StrEnum):
    API_KEY = "api_key"
    SESSION = "session"


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(StrEnum):
    CLIENT_CLOSED = "client_closed"
    AUTH_FAILED = "auth_failed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    REVOKED = "revoked"
    TRANSPORT_ERROR = "transport_error"
    SERVER_SHUTDOWN = "server_shutdown"
    INTERNAL_ERROR = "internal_error"


class OrgRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    DEVELOPER = "developer"
    VIEWER = "viewer"


class DecisionDirection(StrEnum):
    PRECHECK = "precheck"
    POSTCHECK = "postcheck"


class DecisionOutcome(StrEnum):
    ALLOW = "allow"
    TRANSFORM = "transform"
    DENY = "deny"


class IngestSchema(StrEnum):
    DECISION_V1 = "decision.v1"
    TOOLCALL_V1 = "toolcall.v1"
    DLQ_V1 = "dlq.v1"
