"""Relay channel naming and allow-list derivation.

Channels are named ``{scope}:{scope_id}:{topic}``. The scope id is always
embedded in the name, so a connection's allow-list is a plain set of names
derived from its identity; no pattern matching happens at subscribe time.

Channel patterns:
    org:{org_id}:{decisions|notifications|precheck|postcheck|dlq|approvals}
    user:{user_id}:{notifications|usage}
    key:{api_key_id}:usage
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from governs_relay.core.enums import AuthMethod, ChannelScope, ChannelTopic

if TYPE_CHECKING:
    from governs_relay.relay.authenticator import Identity

_CHANNEL_RE = re.compile(
    r"^(?P<scope>org|user|key):(?P<scope_id>[A-Za-z0-9_-]+):"
    r"(?P<topic>decisions|notifications|usage|precheck|postcheck|dlq|approvals)$"
)

ORG_TOPICS: tuple[ChannelTopic, ...] = (
    ChannelTopic.DECISIONS,
    ChannelTopic.NOTIFICATIONS,
    ChannelTopic.PRECHECK,
    ChannelTopic.POSTCHECK,
    ChannelTopic.DLQ,
    ChannelTopic.APPROVALS,
)
USER_TOPICS: tuple[ChannelTopic, ...] = (ChannelTopic.NOTIFICATIONS, ChannelTopic.USAGE)
KEY_TOPICS: tuple[ChannelTopic, ...] = (ChannelTopic.USAGE,)

CHANNEL_PATTERNS: tuple[str, ...] = (
    *(f"org:{{orgId}}:{topic}" for topic in ORG_TOPICS),
    *(f"user:{{userId}}:{topic}" for topic in USER_TOPICS),
    *(f"key:{{keyId}}:{topic}" for topic in KEY_TOPICS),
)


@dataclass(frozen=True, slots=True)
class Channel:
    """Typed relay channel identifier."""

    scope: ChannelScope
    scope_id: str
    topic: ChannelTopic

    @property
    def name(self) -> str:
        return f"{self.scope}:{self.scope_id}:{self.topic}"

    @classmethod
    def parse(cls, name: str) -> Channel | None:
        """Parse a channel name. Returns None for anything malformed."""
        match = _CHANNEL_RE.match(name)
        if match is None:
            return None
        return cls(
            scope=ChannelScope(match["scope"]),
            scope_id=match["scope_id"],
            topic=ChannelTopic(match["topic"]),
        )

    @classmethod
    def for_org(cls, org_id: str, topic: ChannelTopic) -> Channel:
        return cls(scope=ChannelScope.ORG, scope_id=str(org_id), topic=topic)

    @classmethod
    def for_user(cls, user_id: str, topic: ChannelTopic) -> Channel:
        return cls(scope=ChannelScope.USER, scope_id=str(user_id), topic=topic)

    @classmethod
    def for_key(cls, key_id: str, topic: ChannelTopic = ChannelTopic.USAGE) -> Channel:
        return cls(scope=ChannelScope.KEY, scope_id=str(key_id), topic=topic)


def is_valid_channel(name: str) -> bool:
    return _CHANNEL_RE.match(name) is not None


def derive_allowed_channels(identity: Identity) -> frozenset[str]:
    """Compute the channel allow-list for an identity. Pure, no I/O."""
    channels = [Channel.for_org(identity.tenant_id, topic).name for topic in ORG_TOPICS]
    channels.extend(Channel.for_user(identity.user_id, topic).name for topic in USER_TOPICS)
    if identity.auth_method == AuthMethod.API_KEY and identity.credential_id:
        channels.extend(
            Channel.for_key(identity.credential_id, topic).name for topic in KEY_TOPICS
        )
    return frozenset(channels)
