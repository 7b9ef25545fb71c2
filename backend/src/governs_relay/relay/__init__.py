"""WebSocket relay: authentication, subscriptions, fan-out and replay."""

from governs_relay.relay.channels import Channel
from governs_relay.relay.client import ReconnectPolicy, RelayClient
from governs_relay.relay.publisher import EventPublisher

__all__ = [
    "Channel",
    "EventPublisher",
    "ReconnectPolicy",
    "RelayClient",
]
