import logging
from collections.abc import AsyncIterator, Callable
from http import HTTPStatus
from urllib.parse import urlparse

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from domain.events import ClientDisconnected, ClientMessageReceived
from domain.session import SessionProxy
from ports.client import ClientEvent
from ports.upstream import UpstreamPort

logger = logging.getLogger(__name__)


class WebSocketClientConnection:
    def __init__(self, websocket: ServerConnection) -> None:
        self._ws = websocket

    @property
    def peer(self) -> str:
        address = self._ws.remote_address
        if isinstance(address, tuple) and len(address) >= 2:
            return f"{address[0]}:{address[1]}"
        return str(address)

    async def events(self) -> AsyncIterator[ClientEvent]:
        try:
            async for message in self._ws:
                yield ClientMessageReceived(data=message)
        except ConnectionClosed:
            pass
        yield ClientDisconnected(code=self._ws.close_code, reason=self._ws.close_reason or "")

    async def send(self, message: str | bytes) -> None:
        try:
            await self._ws.send(message)
        except ConnectionClosed:
            logger.debug("Client %s gone, frame dropped", self.peer)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code, reason)
        except Exception:
            logger.debug("Ignoring error while closing client %s", self.peer, exc_info=True)


class ProxyServer:
    def __init__(
        self,
        upstream_factory: Callable[[], UpstreamPort],
        host: str = "0.0.0.0",
        port: int = 8080,
        path: str = "/ws",
    ) -> None:
        self._upstream_factory = upstream_factory
        self._host = host
        self._port = port
        self._path = path
        self._server: Server | None = None
        self._sessions: dict[str, SessionProxy] = {}

    @property
    def sessions(self) -> dict[str, SessionProxy]:
        return self._sessions

    @property
    def port(self) -> int:
        if self._server is None:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await websockets.serve(
            self._handle_connection,
            self._host,
            self._port,
            process_request=self._check_path,
            compression=None,
            max_size=None,
        )
        logger.info("Proxy listening on ws://%s:%d%s", self._host, self.port, self._path)

    async def stop(self) -> None:
        for session in list(self._sessions.values()):
            await session.close(code=1001, reason="server shutting down")
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Proxy stopped")

    def _check_path(self, connection: ServerConnection, request: Request) -> Response | None:
        if urlparse(request.path).path != self._path:
            logger.warning("Rejected connection on unknown path %s", request.path)
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        session = SessionProxy(
            client=WebSocketClientConnection(websocket),
            upstream_factory=self._upstream_factory,
        )
        self._sessions[session.session_id] = session
        try:
            await session.run()
        finally:
            self._sessions.pop(session.session_id, None)
