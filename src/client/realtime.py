"""Reconnecting realtime client.

One logical connection driven by a single task through an explicit state
machine:

    idle → connecting → connected
                ↑           │ abnormal close / connect failure
                └─ backoff ←┘
    backoff → given_up     after max_attempts consecutive failures
    any     → closed       after close(), or a clean (1000) close

The delay before reconnect attempt n is base_delay * 2**(n-1). Once
given up, a connection_lost event is dispatched and the client stays
down until reconnect() is called.

Outbound messages are queued and sent in submission order. A message
leaves the queue only after the transport accepted it, so messages sent
while disconnected are delivered after reconnect exactly once.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from config import ClientSettings
from server.protocol import (
    HEARTBEAT,
    HEARTBEAT_RESPONSE,
    DEPLOYMENT_SUBSCRIBE,
    INSTANCE_SUBSCRIBE,
    JOIN_ROOM,
    LEAVE_ROOM,
    SUBSCRIBE,
    UNSUBSCRIBE,
    Envelope,
    ProtocolError,
)

logger = logging.getLogger(__name__)

IDLE = 'idle'
CONNECTING = 'connecting'
CONNECTED = 'connected'
BACKOFF = 'backoff'
GIVEN_UP = 'given_up'
CLOSED = 'closed'

CONNECTION_LOST = 'connection_lost'
CLOSE_NORMAL = 1000


class RealtimeClient:
    """Single reconnecting connection with queued sends and event dispatch.

    Args:
        url: ws:// or wss:// endpoint
        settings: Reconnect attempt limit and base delay
        connect: Awaitable factory returning a connection; defaults to
            websockets' asyncio client
        sleep: Backoff timer
    """

    def __init__(
        self,
        url: str,
        settings: Optional[ClientSettings] = None,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.settings = settings or ClientSettings()
        self._connect = connect or ws_connect
        self._sleep = sleep
        self.state = IDLE
        self.attempt = 0
        self.connection_lost = False
        self._queue: deque[str] = deque()
        self._subscribers: dict[str, list[Callable[[Any], None]]] = {}
        self._connection = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._wakeup = asyncio.Event()
        self._waiters: list[tuple[frozenset, asyncio.Future]] = []

    # State

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        logger.debug(f"Realtime client {self.state} -> {state}")
        self.state = state
        for waiter in list(self._waiters):
            states, future = waiter
            if state in states and not future.done():
                future.set_result(state)
                self._waiters.remove(waiter)

    async def wait_for(self, *states: str) -> str:
        """Wait until the client enters one of states."""
        if self.state in states:
            return self.state
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((frozenset(states), future))
        return await future

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    @property
    def pending(self) -> int:
        """Number of queued outbound messages."""
        return len(self._queue)

    # Lifecycle

    def start(self) -> None:
        """Start the connection task. Must be called from a running loop."""
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())

    def reconnect(self) -> None:
        """Restart after giving up (or after close) with a fresh attempt count."""
        self.attempt = 0
        self.connection_lost = False
        self._set_state(IDLE)
        self.start()

    async def close(self) -> None:
        """Close cleanly; no reconnect follows."""
        self._closing = True
        if self._connection is not None:
            try:
                await self._connection.close(CLOSE_NORMAL, 'Client disconnect')
            except ConnectionClosed:
                pass
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._connection = None
        self._set_state(CLOSED)

    async def _run(self) -> None:
        while not self._closing:
            self._set_state(CONNECTING)
            try:
                connection = await self._connect(self.url)
            except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
                logger.warning(f"Connecting to {self.url} failed: {e}")
            else:
                code = await self._session(connection)
                if code == CLOSE_NORMAL or self._closing:
                    logger.info("Realtime connection closed")
                    break
                logger.warning(f"Realtime connection lost (code {code})")

            if self._closing:
                break
            self.attempt += 1
            if self.attempt > self.settings.max_attempts:
                self._give_up()
                return
            delay = self.settings.base_delay * 2 ** (self.attempt - 1)
            logger.info(f"Reconnecting in {delay:g}s (attempt {self.attempt}/{self.settings.max_attempts})")
            self._set_state(BACKOFF)
            await self._sleep(delay)
        self._set_state(CLOSED)

    def _give_up(self) -> None:
        self.connection_lost = True
        self._set_state(GIVEN_UP)
        logger.error(f"Realtime connection lost after {self.settings.max_attempts} reconnect attempts")
        self._dispatch(Envelope(CONNECTION_LOST, {
            'title': 'Connection Lost',
            'message': 'Unable to reconnect to the server.',
            'attempts': self.settings.max_attempts,
            'persistent': True,
        }))

    async def _session(self, connection) -> Optional[int]:
        """Serve one connection until it closes; return its close code."""
        self._connection = connection
        self.attempt = 0
        self.connection_lost = False
        self._set_state(CONNECTED)
        logger.info(f"Connected to {self.url}")
        sender = asyncio.create_task(self._sender(connection))
        try:
            async for raw in connection:
                await self._on_frame(connection, raw)
        except ConnectionClosed as e:
            logger.debug(f"Connection closed: {e}")
        finally:
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, ConnectionClosed):
                pass
            self._connection = None
        return getattr(connection, 'close_code', None)

    # Outbound

    async def _sender(self, connection) -> None:
        while True:
            while self._queue:
                await connection.send(self._queue[0])
                self._queue.popleft()
            self._wakeup.clear()
            await self._wakeup.wait()

    def send(self, message_type: str, payload: Any = None) -> None:
        """Queue a message; it is sent as soon as the client is connected."""
        self._queue.append(Envelope(message_type, {} if payload is None else payload).encode())
        self._wakeup.set()

    def subscribe_topic(self, topic: str) -> None:
        self.send(SUBSCRIBE, {'topic': topic})

    def unsubscribe_topic(self, topic: str) -> None:
        self.send(UNSUBSCRIBE, {'topic': topic})

    def join_room(self, room: str) -> None:
        self.send(JOIN_ROOM, {'room': room})

    def leave_room(self, room: str) -> None:
        self.send(LEAVE_ROOM, {'room': room})

    def subscribe_to_deployment(self, deployment_id: str) -> None:
        self.send(DEPLOYMENT_SUBSCRIBE, {'deploymentId': deployment_id})

    def subscribe_to_instance(self, instance_id: str) -> None:
        self.send(INSTANCE_SUBSCRIBE, {'instanceId': instance_id})

    # Inbound

    async def _on_frame(self, connection, raw) -> None:
        try:
            envelope = Envelope.parse(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed message: {e}")
            return
        if envelope.type == HEARTBEAT:
            try:
                await connection.send(Envelope(HEARTBEAT_RESPONSE, {}).encode())
            except ConnectionClosed:
                return
        self._dispatch(envelope)

    def _dispatch(self, envelope: Envelope) -> None:
        for callback in list(self._subscribers.get(envelope.type, ())):
            try:
                callback(envelope.payload)
            except Exception as e:
                logger.error(f"Subscriber for {envelope.type} failed: {e}")

    def subscribe(self, event_type: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register callback for event_type; returns a function that removes it."""
        self._subscribers.setdefault(event_type, []).append(callback)
        return lambda: self.unsubscribe(event_type, callback)

    def unsubscribe(self, event_type: str, callback: Optional[Callable[[Any], None]] = None) -> None:
        """Remove one callback, or every callback when none is given."""
        if callback is None:
            self._subscribers.pop(event_type, None)
            return
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self._subscribers.pop(event_type, None)
