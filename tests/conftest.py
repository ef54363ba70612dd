import asyncio
from collections.abc import AsyncIterator

import numpy as np
import pytest
import pytest_asyncio
import websockets

from domain.events import (
    ClientDisconnected,
    ClientMessageReceived,
    UpstreamDisconnected,
    UpstreamFailed,
    UpstreamMessageReceived,
)
from domain.errors import UpstreamSetupError
from domain.playback import PlaybackController
from ports.client import ClientEvent
from ports.upstream import UpstreamEvent, UpstreamState


SAMPLE_RATE = 16000
CHUNK_DURATION_MS = 200


def generate_silence(duration_ms: int = CHUNK_DURATION_MS, sample_rate: int = SAMPLE_RATE) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    return np.zeros(num_samples, dtype=np.int16).tobytes()


def generate_sine_wave(
    frequency: float = 440.0,
    duration_ms: int = CHUNK_DURATION_MS,
    amplitude: float = 0.8,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(num_samples) / sample_rate
    signal = np.sin(2 * np.pi * frequency * t) * amplitude
    return (signal * 32767).astype(np.int16).tobytes()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class FakeUpstream:
    def __init__(self, fail_with: str | None = None) -> None:
        self._fail_with = fail_with
        self._state = UpstreamState.UNCONNECTED
        self._events: asyncio.Queue[UpstreamEvent] = asyncio.Queue()
        self.sent: list = []
        self.connect_calls = 0
        self.close_calls = 0

    @property
    def state(self) -> UpstreamState:
        return self._state

    async def connect(self) -> None:
        self.connect_calls += 1
        if self._state != UpstreamState.UNCONNECTED:
            return
        if self._fail_with:
            self._state = UpstreamState.CLOSED
            raise UpstreamSetupError(self._fail_with)
        self._state = UpstreamState.OPEN

    async def send(self, frame) -> None:
        if self._state != UpstreamState.OPEN:
            return
        self.sent.append(frame)

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, UpstreamDisconnected):
                break

    async def close(self) -> None:
        self.close_calls += 1
        self._state = UpstreamState.CLOSED

    def emit(self, data: str | bytes) -> None:
        self._events.put_nowait(UpstreamMessageReceived(data=data))

    def fail(self, message: str) -> None:
        self._events.put_nowait(UpstreamFailed(message=message))

    def disconnect(self, code: int | None = 1006, reason: str = "") -> None:
        self._events.put_nowait(UpstreamDisconnected(code=code, reason=reason))


class FakeClientConnection:
    def __init__(self) -> None:
        self._incoming: asyncio.Queue[ClientEvent] = asyncio.Queue()
        self.sent: list[str | bytes] = []
        self.closed = False
        self.close_code: int | None = None

    @property
    def peer(self) -> str:
        return "127.0.0.1:50000"

    async def events(self) -> AsyncIterator[ClientEvent]:
        while True:
            event = await self._incoming.get()
            yield event
            if isinstance(event, ClientDisconnected):
                break

    async def send(self, message: str | bytes) -> None:
        if not self.closed:
            self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self.close_code = code

    def feed(self, data: str | bytes) -> None:
        self._incoming.put_nowait(ClientMessageReceived(data=data))

    def disconnect(self, code: int = 1000) -> None:
        self._incoming.put_nowait(ClientDisconnected(code=code))


class FakeAudioCapture:
    def __init__(self, chunks: list[bytes] | None = None) -> None:
        self._chunks = chunks or []
        self._started = False
        self.start_calls = 0

    @property
    def sample_rate(self) -> int:
        return SAMPLE_RATE

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={SAMPLE_RATE}"

    async def start(self) -> None:
        self.start_calls += 1
        self._started = True

    async def stop(self) -> None:
        self._started = False

    async def read_chunks(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            if not self._started:
                break
            yield chunk
            await asyncio.sleep(0)


class FakeAudioSink:
    def __init__(self) -> None:
        self.sample_rate: int | None = None
        self.written: list[bytes] = []
        self.abort_calls = 0
        self.closed = False

    def open(self, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self.closed = False

    def write(self, pcm: bytes) -> None:
        self.written.append(pcm)

    def abort(self) -> None:
        self.abort_calls += 1

    def close(self) -> None:
        self.closed = True


class FakeProxyTransport:
    def __init__(self) -> None:
        self._incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self._open = False
        self.sent: list[str] = []
        self.connect_calls = 0

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        self.connect_calls += 1
        self._open = True

    async def send(self, message: str) -> None:
        if self._open:
            self.sent.append(message)

    async def messages(self) -> AsyncIterator[str | bytes]:
        while True:
            message = await self._incoming.get()
            if message is None:
                break
            yield message

    async def close(self) -> None:
        self._open = False

    def feed(self, message: str | bytes) -> None:
        self._incoming.put_nowait(message)

    def drop(self) -> None:
        self._open = False
        self._incoming.put_nowait(None)


class FakeProvider:
    """Local WebSocket server standing in for the speech model provider."""

    def __init__(self) -> None:
        self.received: list[str | bytes] = []
        self.paths: list[str] = []
        self.connections: list = []
        self._server = None

    @property
    def url(self) -> str:
        port = self._server.sockets[0].getsockname()[1]
        return f"ws://127.0.0.1:{port}/v1beta/live:connect"

    async def start(self) -> None:
        self._server = await websockets.serve(self._handler, "127.0.0.1", 0)

    async def stop(self) -> None:
        self._server.close()
        await self._server.wait_closed()

    async def send(self, message: str | bytes) -> None:
        for ws in self.connections:
            await ws.send(message)

    async def drop_connections(self, code: int = 1011) -> None:
        for ws in self.connections:
            await ws.close(code, "provider failure")

    async def _handler(self, ws) -> None:
        self.connections.append(ws)
        self.paths.append(ws.request.path)
        try:
            async for message in ws:
                self.received.append(message)
        except websockets.ConnectionClosed:
            pass


@pytest_asyncio.fixture
async def provider():
    server = FakeProvider()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def instructions_file(tmp_path):
    path = tmp_path / "system.txt"
    path.write_text("You are a concise voice assistant.", encoding="utf-8")
    return path


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def fake_client():
    return FakeClientConnection()


@pytest.fixture
def fake_sink():
    return FakeAudioSink()


@pytest.fixture
def fake_transport():
    return FakeProxyTransport()


@pytest.fixture
def fake_capture():
    return FakeAudioCapture()


@pytest.fixture
def playback(fake_sink):
    return PlaybackController(sink=fake_sink, sample_rate=SAMPLE_RATE)
