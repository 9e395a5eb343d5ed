"""Realtime message envelope and inbound message types.

Every message on the wire is a JSON object:

    {"type": str, "payload": object, "timestamp": ISO-8601, "id": str?}

Inbound messages form a closed set keyed on "type"; decode_inbound()
returns one of the dataclasses below or raises ProtocolError. Unknown
types are rejected rather than ignored.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from common import utc_now

# Outbound event types
CONNECTION_ESTABLISHED = 'connection_established'
SUBSCRIPTION_CONFIRMED = 'subscription_confirmed'
ROOM_JOINED = 'room_joined'
ROOM_LEFT = 'room_left'
HEARTBEAT = 'heartbeat'
DEPLOYMENT_STATUS_UPDATE = 'deployment_status_update'
INSTANCE_STATE_CHANGE = 'instance_state_change'
OPERATION_LOG = 'operation_log'
DRIFT_DETECTION_COMPLETED = 'drift_detection_completed'
DRIFT_DETECTION_FAILED = 'drift_detection_failed'
STATE_REFRESHED = 'state_refreshed'

# Inbound message types
SUBSCRIBE = 'subscribe'
UNSUBSCRIBE = 'unsubscribe'
JOIN_ROOM = 'join_room'
LEAVE_ROOM = 'leave_room'
HEARTBEAT_RESPONSE = 'heartbeat_response'
DEPLOYMENT_SUBSCRIBE = 'deployment_subscribe'
INSTANCE_SUBSCRIBE = 'instance_subscribe'

# Topics for subscription-based fan-out
OPERATION_LOGS_TOPIC = 'operation_logs'


class ProtocolError(ValueError):
    """Inbound message could not be decoded."""


@dataclass
class Envelope:
    """A message on the wire."""
    type: str
    payload: Any = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)
    id: Optional[str] = None

    def to_dict(self) -> dict:
        d = {'type': self.type, 'payload': self.payload, 'timestamp': self.timestamp}
        if self.id is not None:
            d['id'] = self.id
        return d

    def encode(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def parse(cls, raw) -> 'Envelope':
        """Parse raw text/bytes into an Envelope without checking the type set.

        Raises:
            ProtocolError: If the message is not a JSON object with a string type
        """
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError as e:
                raise ProtocolError("message is not UTF-8") from e
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"message is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("message must be a JSON object")
        msg_type = data.get('type')
        if not isinstance(msg_type, str) or not msg_type:
            raise ProtocolError("message has no type")
        payload = data.get('payload')
        msg_id = data.get('id')
        return cls(
            type=msg_type,
            payload={} if payload is None else payload,
            timestamp=str(data.get('timestamp') or utc_now()),
            id=str(msg_id) if msg_id is not None else None,
        )


@dataclass(frozen=True)
class Subscribe:
    topic: str


@dataclass(frozen=True)
class Unsubscribe:
    topic: str


@dataclass(frozen=True)
class JoinRoom:
    room: str


@dataclass(frozen=True)
class LeaveRoom:
    room: str


@dataclass(frozen=True)
class HeartbeatResponse:
    pass


@dataclass(frozen=True)
class DeploymentSubscribe:
    deployment_id: str


@dataclass(frozen=True)
class InstanceSubscribe:
    instance_id: str


InboundMessage = Union[
    Subscribe,
    Unsubscribe,
    JoinRoom,
    LeaveRoom,
    HeartbeatResponse,
    DeploymentSubscribe,
    InstanceSubscribe,
]


def _field(payload, *keys: str) -> str:
    """First non-empty string among keys in payload."""
    if not isinstance(payload, dict):
        raise ProtocolError("payload must be an object")
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    raise ProtocolError(f"payload needs a non-empty '{keys[0]}'")


def decode_inbound(raw) -> InboundMessage:
    """Decode one inbound message.

    subscribe/unsubscribe accept "topic" or the older "eventType" key.

    Raises:
        ProtocolError: If the message is malformed or its type is unknown
    """
    envelope = Envelope.parse(raw)
    payload = envelope.payload
    msg_type = envelope.type

    if msg_type == SUBSCRIBE:
        return Subscribe(_field(payload, 'topic', 'eventType'))
    if msg_type == UNSUBSCRIBE:
        return Unsubscribe(_field(payload, 'topic', 'eventType'))
    if msg_type == JOIN_ROOM:
        return JoinRoom(_field(payload, 'room'))
    if msg_type == LEAVE_ROOM:
        return LeaveRoom(_field(payload, 'room'))
    if msg_type == HEARTBEAT_RESPONSE:
        return HeartbeatResponse()
    if msg_type == DEPLOYMENT_SUBSCRIBE:
        return DeploymentSubscribe(_field(payload, 'deploymentId'))
    if msg_type == INSTANCE_SUBSCRIBE:
        return InstanceSubscribe(_field(payload, 'instanceId'))
    raise ProtocolError(f"unknown message type: {msg_type}")


def deployment_room(deployment_id: str) -> str:
    return f"deployment:{deployment_id}"


def instance_room(instance_id: str) -> str:
    return f"instance:{instance_id}"


def operation_topic(operation_id: str) -> str:
    return f"operation:{operation_id}"
