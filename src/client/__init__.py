"""Realtime client."""

from client.realtime import (
    IDLE,
    CONNECTING,
    CONNECTED,
    BACKOFF,
    GIVEN_UP,
    CLOSED,
    CONNECTION_LOST,
    RealtimeClient,
)

__all__ = [
    'IDLE',
    'CONNECTING',
    'CONNECTED',
    'BACKOFF',
    'GIVEN_UP',
    'CLOSED',
    'CONNECTION_LOST',
    'RealtimeClient',
]
