import asyncio
import logging
from collections.abc import Callable

from domain.frames import (
    ControlEvent,
    ErrorFrame,
    ResponseAudio,
    ResponseEnd,
    ResponseText,
    Transcript,
    decode_message,
    encode_audio_input,
    encode_interrupt,
    encode_session_start,
    parse_downstream_frames,
)
from domain.playback import PlaybackController
from ports.audio import AudioCapturePort
from ports.client import ProxyTransportPort

logger = logging.getLogger(__name__)

Renderer = Callable[[str, str], None]


def _log_renderer(speaker: str, text: str) -> None:
    logger.info("%s: %s", speaker, text)


class VoiceClient:
    def __init__(
        self,
        transport: ProxyTransportPort,
        capture: AudioCapturePort,
        playback: PlaybackController,
        render: Renderer | None = None,
        language: str = "en",
    ) -> None:
        self._transport = transport
        self._capture = capture
        self._playback = playback
        self._render = render or _log_renderer
        self._language = language

        self._active = False
        self._speaking = False
        self._tasks: list[asyncio.Task] = []
        self._disconnected = asyncio.Event()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def disconnected(self) -> asyncio.Event:
        return self._disconnected

    def _set_speaking(self, on: bool) -> None:
        if on != self._speaking:
            logger.debug("Model %s", "speaking" if on else "silent")
        self._speaking = on

    async def start(self, language: str | None = None) -> None:
        if self._active:
            return
        await self._transport.connect()
        self._active = True
        self._disconnected.clear()

        await self._playback.start()
        await self._transport.send(encode_session_start(language or self._language))
        await self._capture.start()

        self._tasks = [
            asyncio.create_task(self._capture_loop()),
            asyncio.create_task(self._receive_loop()),
        ]
        logger.info("Session started (language=%s)", language or self._language)

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self._set_speaking(False)

        await self._capture.stop()
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        await self._playback.close()
        await self._transport.close()
        self._disconnected.set()
        logger.info("Session stopped")

    async def interrupt(self) -> None:
        if not self._transport.is_open:
            return
        await self._transport.send(encode_interrupt())
        await self._playback.stop()
        self._set_speaking(False)
        logger.info("Barge-in: interrupt sent")

    async def handle_message(self, raw: str | bytes) -> None:
        message = decode_message(raw)
        for frame in parse_downstream_frames(message, sample_rate=self._playback.sample_rate):
            if isinstance(frame, Transcript):
                if frame.is_partial:
                    logger.debug("Partial transcript: %s", frame.text)
                else:
                    self._render("you", frame.text)
            elif isinstance(frame, ResponseText):
                self._render("model", frame.text)
            elif isinstance(frame, ResponseAudio):
                await self._playback.play_chunk(frame.data)
                self._set_speaking(True)
            elif isinstance(frame, ResponseEnd):
                self._set_speaking(False)
                self._playback.end_response()
            elif isinstance(frame, ErrorFrame):
                self._render("error", f"Error: {frame.message}")
            elif isinstance(frame, ControlEvent):
                logger.debug("Control event: %s", frame.event)

    async def _capture_loop(self) -> None:
        async for chunk in self._capture.read_chunks():
            await self._transport.send(encode_audio_input(chunk, self._capture.mime_type))

    async def _receive_loop(self) -> None:
        async for message in self._transport.messages():
            await self.handle_message(message)
        logger.info("Proxy connection closed")
        await self.stop()
