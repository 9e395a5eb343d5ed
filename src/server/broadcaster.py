"""Realtime broadcaster.

Keeps the registry of connected sessions, their topic subscriptions and
room memberships, and fans typed events out to them.

Delivery is best-effort and at-most-once. Each session owns a bounded
outbox drained by a single writer task, so one session's messages arrive
in the order they were sent and a slow consumer only ever loses its own
messages (overflow is dropped). A send to a closed transport is dropped
and never retried.

A liveness loop runs every heartbeat_interval seconds: it first evicts
sessions whose last heartbeat_response is older than heartbeat_timeout,
then sends a heartbeat to every survivor.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from common import LogLine
from config import ServerSettings
from server.protocol import (
    CONNECTION_ESTABLISHED,
    DEPLOYMENT_STATUS_UPDATE,
    HEARTBEAT,
    INSTANCE_STATE_CHANGE,
    OPERATION_LOG,
    OPERATION_LOGS_TOPIC,
    ROOM_JOINED,
    ROOM_LEFT,
    SUBSCRIPTION_CONFIRMED,
    DeploymentSubscribe,
    Envelope,
    HeartbeatResponse,
    InboundMessage,
    InstanceSubscribe,
    JoinRoom,
    LeaveRoom,
    ProtocolError,
    Subscribe,
    Unsubscribe,
    decode_inbound,
    deployment_room,
    instance_room,
    operation_topic,
)

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_GOING_AWAY = 1001
CLOSE_LIVENESS_TIMEOUT = 4000


class Transport(Protocol):
    """The send/close half of a connection (a websockets connection fits)."""

    async def send(self, message: str) -> None:
        """Write one text frame."""

    async def close(self, code: int = 1000, reason: str = '') -> None:
        """Close the connection."""


@dataclass(eq=False)
class Session:
    """One live connection and its subscriptions.

    Attributes:
        id: Session identifier (uuid4)
        transport: Connection used for outbound frames
        subscriptions: Topics for type-based fan-out
        rooms: Rooms this session is a member of (back-reference only)
        last_liveness: Clock reading of the last heartbeat_response
        metadata: Connection details (remote address, user agent, ...)
    """
    id: str
    transport: Transport
    last_liveness: float
    outbox: asyncio.Queue
    subscriptions: set[str] = field(default_factory=set)
    rooms: set[str] = field(default_factory=set)
    metadata: dict = field(default_factory=dict)
    closed: bool = False
    writer: Optional[asyncio.Task] = None


class Broadcaster:
    """Registry of sessions and rooms with typed fan-out."""

    def __init__(self, settings: Optional[ServerSettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or ServerSettings()
        self.clock = clock
        self.sessions: dict[str, Session] = {}
        self.rooms: dict[str, set[str]] = {}
        self._liveness_task: Optional[asyncio.Task] = None

    # Session lifecycle

    def connect(self, transport: Transport, metadata: Optional[dict] = None) -> Session:
        """Register a new session and greet it with connection_established.

        Must be called from a running event loop.
        """
        session = Session(
            id=str(uuid.uuid4()),
            transport=transport,
            last_liveness=self.clock(),
            outbox=asyncio.Queue(maxsize=self.settings.session_queue_size),
            metadata=dict(metadata or {}),
        )
        session.writer = asyncio.create_task(self._writer(session))
        self.sessions[session.id] = session
        logger.info(f"Session {session.id} connected ({len(self.sessions)} active)")
        self.send_to_session(session.id, Envelope(CONNECTION_ESTABLISHED, {'sessionId': session.id}))
        return session

    def disconnect(self, session_id: str) -> bool:
        """Drop a session from every room and the registry."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        session.closed = True
        for room in list(session.rooms):
            self._remove_from_room(session, room)
        if session.writer is not None:
            session.writer.cancel()
        logger.info(f"Session {session_id} disconnected ({len(self.sessions)} active)")
        return True

    async def _writer(self, session: Session) -> None:
        while True:
            text = await session.outbox.get()
            try:
                if not session.closed:
                    await session.transport.send(text)
            except Exception as e:
                session.closed = True
                logger.debug(f"Send to session {session.id} failed, dropping: {e}")
            finally:
                session.outbox.task_done()

    # Rooms

    def join_room(self, session_id: str, room: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        self.rooms.setdefault(room, set()).add(session_id)
        session.rooms.add(room)
        logger.debug(f"Session {session_id} joined {room}")
        return True

    def leave_room(self, session_id: str, room: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None or room not in session.rooms:
            return False
        self._remove_from_room(session, room)
        return True

    def _remove_from_room(self, session: Session, room: str) -> None:
        session.rooms.discard(room)
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(session.id)
        if not members:
            del self.rooms[room]

    # Inbound

    def handle_message(self, session_id: str, raw: Union[str, bytes]) -> Optional[InboundMessage]:
        """Decode and apply one inbound message.

        Malformed messages and unknown types are logged and dropped.

        Returns:
            The decoded message, or None if it was dropped
        """
        session = self.sessions.get(session_id)
        if session is None:
            logger.debug(f"Message for unknown session {session_id} dropped")
            return None
        try:
            message = decode_inbound(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping message from session {session_id}: {e}")
            return None

        if isinstance(message, HeartbeatResponse):
            session.last_liveness = self.clock()
        elif isinstance(message, Subscribe):
            session.subscriptions.add(message.topic)
            self._enqueue(session, Envelope(SUBSCRIPTION_CONFIRMED, {'topic': message.topic, 'subscribed': True}))
        elif isinstance(message, Unsubscribe):
            session.subscriptions.discard(message.topic)
            self._enqueue(session, Envelope(SUBSCRIPTION_CONFIRMED, {'topic': message.topic, 'subscribed': False}))
        elif isinstance(message, JoinRoom):
            self._join_and_confirm(session, message.room)
        elif isinstance(message, LeaveRoom):
            self.leave_room(session_id, message.room)
            self._enqueue(session, Envelope(ROOM_LEFT, {'room': message.room}))
        elif isinstance(message, DeploymentSubscribe):
            self._join_and_confirm(session, deployment_room(message.deployment_id))
        elif isinstance(message, InstanceSubscribe):
            self._join_and_confirm(session, instance_room(message.instance_id))
        return message

    def _join_and_confirm(self, session: Session, room: str) -> None:
        self.join_room(session.id, room)
        self._enqueue(session, Envelope(ROOM_JOINED, {'room': room}))

    # Outbound

    def _enqueue(self, session: Session, message: Envelope) -> bool:
        if session.closed:
            return False
        try:
            session.outbox.put_nowait(message.encode())
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for session {session.id}, dropping {message.type}")
            return False
        return True

    def _deliver(self, message: Envelope, session_ids: Iterable[str]) -> int:
        sent = 0
        for session_id in session_ids:
            session = self.sessions.get(session_id)
            if session is not None and self._enqueue(session, message):
                sent += 1
        return sent

    def send_to_session(self, session_id: str, message: Envelope) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        return self._enqueue(session, message)

    def broadcast(self, message: Envelope, predicate: Optional[Callable[[Session], bool]] = None) -> int:
        """Send to every session, or to those matching predicate."""
        targets = [s.id for s in self.sessions.values() if predicate is None or predicate(s)]
        return self._deliver(message, targets)

    def send_to_room(self, room: str, message: Envelope) -> int:
        return self._deliver(message, list(self.rooms.get(room, ())))

    def publish(self, topics: Iterable[str], message: Envelope, rooms: Iterable[str] = ()) -> int:
        """Send once to each session subscribed to any topic or in any room."""
        topics = set(topics)
        targets = {s.id for s in self.sessions.values() if s.subscriptions & topics}
        for room in rooms:
            targets.update(self.rooms.get(room, ()))
        return self._deliver(message, sorted(targets))

    def notify_deployment_update(self, deployment_id: str, status: str, details: Optional[dict] = None) -> int:
        message = Envelope(DEPLOYMENT_STATUS_UPDATE, {
            'deploymentId': deployment_id,
            'status': status,
            'details': details or {},
        })
        return self.publish([DEPLOYMENT_STATUS_UPDATE], message, rooms=[deployment_room(deployment_id)])

    def notify_instance_state_change(self, instance_id: str, state: str, details: Optional[dict] = None) -> int:
        message = Envelope(INSTANCE_STATE_CHANGE, {
            'instanceId': instance_id,
            'state': state,
            'details': details or {},
        })
        return self.publish([INSTANCE_STATE_CHANGE], message, rooms=[instance_room(instance_id)])

    def send_operation_log(self, operation_id: str, line: Union[LogLine, str]) -> int:
        """Forward one log line to operation_logs and operation:{id} subscribers."""
        payload: dict[str, Any] = {'operationId': operation_id}
        if isinstance(line, LogLine):
            payload.update(seq=line.seq, stream=line.stream, log=line.text, timestamp=line.timestamp)
        else:
            payload['log'] = line
        message = Envelope(OPERATION_LOG, payload)
        return self.publish([OPERATION_LOGS_TOPIC, operation_topic(operation_id)], message)

    # Liveness

    async def sweep(self) -> list[str]:
        """Close and remove sessions silent for longer than heartbeat_timeout.

        Returns:
            Ids of the evicted sessions
        """
        now = self.clock()
        stale = [
            s for s in self.sessions.values()
            if now - s.last_liveness > self.settings.heartbeat_timeout
        ]
        for session in stale:
            logger.info(f"Session {session.id} missed heartbeats for "
                        f"{now - session.last_liveness:.0f}s, disconnecting")
            self.disconnect(session.id)
            await self._close_transport(session, CLOSE_LIVENESS_TIMEOUT, 'liveness timeout')
        return [s.id for s in stale]

    def heartbeat(self) -> int:
        return self.broadcast(Envelope(HEARTBEAT, {}))

    async def _close_transport(self, session: Session, code: int, reason: str) -> None:
        try:
            await session.transport.close(code, reason)
        except Exception as e:
            logger.debug(f"Closing session {session.id} failed: {e}")

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            await self.sweep()
            self.heartbeat()

    def start(self) -> None:
        """Start the periodic liveness loop."""
        if self._liveness_task is None or self._liveness_task.done():
            self._liveness_task = asyncio.create_task(self._liveness_loop())
            logger.info(f"Liveness loop started (interval {self.settings.heartbeat_interval}s, "
                        f"timeout {self.settings.heartbeat_timeout}s)")

    async def shutdown(self) -> None:
        """Stop the liveness loop and close every session."""
        if self._liveness_task is not None:
            self._liveness_task.cancel()
            try:
                await self._liveness_task
            except asyncio.CancelledError:
                pass
            self._liveness_task = None
        for session in list(self.sessions.values()):
            self.disconnect(session.id)
            await self._close_transport(session, CLOSE_GOING_AWAY, 'server shutdown')
        logger.info("Broadcaster shut down")

    async def flush(self) -> None:
        """Wait until every session's outbox has been drained."""
        await asyncio.gather(*(s.outbox.join() for s in list(self.sessions.values())))

    def stats(self) -> dict:
        topics: dict[str, int] = {}
        for session in self.sessions.values():
            for topic in session.subscriptions:
                topics[topic] = topics.get(topic, 0) + 1
        return {
            'sessions': len(self.sessions),
            'rooms': {room: len(members) for room, members in self.rooms.items()},
            'subscriptions': topics,
        }
