"""WebSocket server for realtime sessions.

Serves realtime sessions on one path (default /ws) and a plain HTTP
health probe on /health. Every connection becomes a Broadcaster session
for its lifetime; inbound frames are handed to Broadcaster.handle_message.
"""

import asyncio
import http
import json
import logging
import signal
from typing import Optional
from urllib.parse import urlparse

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError
from websockets.http11 import Request, Response

from config import ServerSettings
from server.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

HEALTH_PATH = '/health'


class RealtimeServer:
    """Realtime WebSocket endpoint backed by a Broadcaster."""

    def __init__(self, broadcaster: Broadcaster, settings: Optional[ServerSettings] = None):
        self.broadcaster = broadcaster
        self.settings = settings or broadcaster.settings
        self._server: Optional[Server] = None

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is None:
            raise RuntimeError("Server not started")
        return self._server.sockets[0].getsockname()[1]

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        path = urlparse(request.path).path
        if path == HEALTH_PATH:
            body = json.dumps({'status': 'ok', **self.broadcaster.stats()})
            return connection.respond(http.HTTPStatus.OK, body + '\n')
        if path != self.settings.path:
            return connection.respond(http.HTTPStatus.NOT_FOUND, 'Not Found\n')
        return None

    async def _handle(self, connection: ServerConnection) -> None:
        metadata = {
            'remote_address': str(connection.remote_address),
            'user_agent': connection.request.headers.get('User-Agent', '') if connection.request else '',
        }
        session = self.broadcaster.connect(connection, metadata)
        try:
            async for raw in connection:
                self.broadcaster.handle_message(session.id, raw)
        except ConnectionClosedError as e:
            logger.debug(f"Session {session.id} closed abnormally: {e}")
        finally:
            self.broadcaster.disconnect(session.id)

    async def start(self) -> None:
        """Bind the listener and start the liveness loop."""
        self._server = await serve(
            self._handle,
            self.settings.bind,
            self.settings.port,
            process_request=self._process_request,
        )
        self.broadcaster.start()
        logger.info(f"Realtime server listening on ws://{self.settings.bind}:{self.port}{self.settings.path}")

    async def stop(self) -> None:
        """Close all sessions with 1001 and stop listening."""
        logger.info("Shutting down realtime server")
        await self.broadcaster.shutdown()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def serve_forever(self) -> None:
        """Run until SIGINT or SIGTERM."""
        await self.start()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, stop.set)
        try:
            await stop.wait()
            logger.info("Shutdown requested")
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
            await self.stop()
