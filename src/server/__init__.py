"""Realtime server package.

The broadcaster keeps sessions, topic subscriptions and rooms; the
WebSocket server exposes it on a single port with a /health probe.
"""

from server.protocol import (
    Envelope,
    ProtocolError,
    decode_inbound,
    deployment_room,
    instance_room,
    operation_topic,
)
from server.broadcaster import (
    Broadcaster,
    Session,
    Transport,
    CLOSE_GOING_AWAY,
    CLOSE_LIVENESS_TIMEOUT,
)
from server.wsd import RealtimeServer

__all__ = [
    # Protocol
    "Envelope",
    "ProtocolError",
    "decode_inbound",
    "deployment_room",
    "instance_room",
    "operation_topic",
    # Broadcaster
    "Broadcaster",
    "Session",
    "Transport",
    "CLOSE_GOING_AWAY",
    "CLOSE_LIVENESS_TIMEOUT",
    # Server
    "RealtimeServer",
]
