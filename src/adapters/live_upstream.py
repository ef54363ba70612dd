import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from domain.errors import UpstreamSetupError
from domain.events import UpstreamDisconnected, UpstreamFailed, UpstreamMessageReceived
from domain.frames import RESPONSE_SAMPLE_RATE_HZ, build_setup_message
from ports.upstream import UpstreamEvent, UpstreamState

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_URL = "wss://generativelanguage.googleapis.com/v1beta/live:connect"


async def load_instructions(path: str | Path) -> str:
    return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")


class LiveUpstreamSession:
    """One real-time connection to the speech model provider.

    ``connect`` sends the setup message as the first frame; ``send`` drops
    anything offered while the connection is not open.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        instructions_path: str | Path,
        url: str = DEFAULT_UPSTREAM_URL,
        sample_rate: int = RESPONSE_SAMPLE_RATE_HZ,
        open_timeout: float = 10.0,
        connector: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._instructions_path = instructions_path
        self._url = url
        self._sample_rate = sample_rate
        self._open_timeout = open_timeout
        self._connector = connector
        self._ws = None
        self._state = UpstreamState.UNCONNECTED

    @property
    def state(self) -> UpstreamState:
        return self._state

    @property
    def endpoint(self) -> str:
        return f"{self._url}?key={quote(self._api_key, safe='')}"

    async def connect(self) -> None:
        if self._state != UpstreamState.UNCONNECTED:
            return
        self._state = UpstreamState.CONNECTING

        try:
            instructions = await load_instructions(self._instructions_path)
        except (OSError, UnicodeDecodeError) as exc:
            self._state = UpstreamState.CLOSED
            reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else exc
            raise UpstreamSetupError(
                f"Cannot read system instructions from {self._instructions_path}: {reason}"
            ) from exc
        if self._state != UpstreamState.CONNECTING:
            raise UpstreamSetupError("Upstream closed while connecting")

        logger.info("Upstream connecting to %s (model=%s)", self._url, self._model)
        try:
            self._ws = await self._connector(
                self.endpoint,
                compression=None,
                max_size=None,
                open_timeout=self._open_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self._state = UpstreamState.CLOSED
            raise UpstreamSetupError(f"Cannot open upstream connection: {exc}") from exc

        # close() ran while the handshake was in flight
        if self._state != UpstreamState.CONNECTING:
            ws, self._ws = self._ws, None
            await self._discard(ws)
            raise UpstreamSetupError("Upstream closed while connecting")

        self._state = UpstreamState.OPEN
        setup = build_setup_message(self._model, instructions, sample_rate=self._sample_rate)
        try:
            await self._ws.send(json.dumps(setup))
        except ConnectionClosed as exc:
            self._state = UpstreamState.CLOSED
            raise UpstreamSetupError(f"Upstream closed before setup: {exc}") from exc
        logger.info("Upstream open, setup sent (model=%s)", self._model)

    async def send(self, frame: dict[str, Any] | str | bytes) -> None:
        if self._state != UpstreamState.OPEN or self._ws is None:
            logger.debug("Upstream not open (%s), dropping frame", self._state.name)
            return
        message = frame if isinstance(frame, (str, bytes)) else json.dumps(frame)
        try:
            await self._ws.send(message)
        except ConnectionClosed:
            logger.warning("Upstream closed during send, frame dropped")

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        ws = self._ws
        if ws is None:
            return
        try:
            async for message in ws:
                yield UpstreamMessageReceived(data=message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            yield UpstreamFailed(message=f"Upstream connection error: {exc}")

        self._state = UpstreamState.CLOSED
        yield UpstreamDisconnected(code=ws.close_code, reason=ws.close_reason or "")

    async def close(self) -> None:
        if self._state == UpstreamState.CLOSED and self._ws is None:
            return
        self._state = UpstreamState.CLOSED
        ws, self._ws = self._ws, None
        if ws is None:
            return
        await self._discard(ws)
        logger.info("Upstream closed (model=%s)", self._model)

    async def _discard(self, ws) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("Ignoring error while closing upstream", exc_info=True)
