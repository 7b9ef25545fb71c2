"""Tests for channel naming and allow-list derivation."""

from governs_relay.core.enums import AuthMethod, ChannelScope, ChannelTopic
from governs_relay.relay.authenticator import Identity
from governs_relay.relay.channels import (
    CHANNEL_PATTERNS,
    Channel,
    derive_allowed_channels,
    is_valid_channel,
)


def test_channel_name_roundtrip() -> None:
    ch = Channel.for_org("org_1", ChannelTopic.DECISIONS)

    assert ch.name == "org:org_1:decisions"
    assert Channel.parse(ch.name) == ch


def test_parse_rejects_malformed_names() -> None:
    assert Channel.parse("org:abc") is None
    assert Channel.parse("team:abc:decisions") is None
    assert Channel.parse("org:abc:unknown") is None
    assert Channel.parse("org:a.b:decisions") is None
    assert Channel.parse("org::decisions") is None


def test_is_valid_channel() -> None:
    assert is_valid_channel("user:u-1:usage")
    assert is_valid_channel("key:k_1:usage")
    assert not is_valid_channel("user:u-1:usage:extra")


def test_api_key_allow_list_is_exact() -> None:
    identity = Identity(
        tenant_id="T", user_id="U", auth_method=AuthMethod.API_KEY, credential_id="K"
    )

    assert derive_allowed_channels(identity) == frozenset(
        {
            "org:T:decisions",
            "org:T:notifications",
            "org:T:precheck",
            "org:T:postcheck",
            "org:T:dlq",
            "org:T:approvals",
            "user:U:notifications",
            "user:U:usage",
            "key:K:usage",
        }
    )


def test_session_allow_list_has_no_key_channels() -> None:
    identity = Identity(tenant_id="T", user_id="U", auth_method=AuthMethod.SESSION)

    allowed = derive_allowed_channels(identity)

    assert len(allowed) == 8
    assert not any(name.startswith("key:") for name in allowed)


def test_allow_list_never_names_other_tenants() -> None:
    identity = Identity(
        tenant_id="T", user_id="U", auth_method=AuthMethod.API_KEY, credential_id="K"
    )

    for name in derive_allowed_channels(identity):
        parsed = Channel.parse(name)
        assert parsed is not None
        expected = {ChannelScope.ORG: "T", ChannelScope.USER: "U", ChannelScope.KEY: "K"}
        assert parsed.scope_id == expected[parsed.scope]


def test_patterns_cover_every_topic() -> None:
    topics = {pattern.rsplit(":", 1)[1] for pattern in CHANNEL_PATTERNS}
    assert topics == {topic.value for topic in ChannelTopic}
