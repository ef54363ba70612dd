import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = logging.getLogger(__name__)


class ProxyClient:
    def __init__(
        self,
        url: str = "ws://localhost:8080/ws",
        connector: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._connector = connector
        self._ws = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state == State.OPEN

    async def connect(self) -> None:
        if self.is_open:
            return
        self._ws = await self._connector(self._url, compression=None, max_size=None)
        logger.info("Connected to proxy at %s", self._url)

    async def send(self, message: str) -> None:
        if not self.is_open:
            logger.debug("Proxy connection not open, message dropped")
            return
        try:
            await self._ws.send(message)
        except ConnectionClosed:
            logger.warning("Proxy connection closed during send")

    async def messages(self) -> AsyncIterator[str | bytes]:
        ws = self._ws
        if ws is None:
            return
        try:
            async for message in ws:
                yield message
        except ConnectionClosed as exc:
            logger.warning("Proxy connection lost: %s", exc)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception:
            logger.debug("Ignoring error while closing proxy connection", exc_info=True)
        logger.info("Disconnected from proxy")
