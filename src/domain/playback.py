import asyncio
import logging

from domain.frames import RESPONSE_SAMPLE_RATE_HZ
from ports.audio import AudioSinkPort

logger = logging.getLogger(__name__)


class PlaybackController:
    """Plays response audio chunks in arrival order through an audio sink.

    ``stop`` discards everything not yet played and may be called at any time.
    ``end_response`` only resets the assembled audio of the current response;
    chunks already queued keep playing.
    """

    def __init__(self, sink: AudioSinkPort, sample_rate: int = RESPONSE_SAMPLE_RATE_HZ) -> None:
        self._sink = sink
        self._sample_rate = sample_rate
        self._queue: asyncio.Queue[bytes | None] | None = None
        self._play_task: asyncio.Task | None = None
        self._response_chunks: list[bytes] = []

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def is_running(self) -> bool:
        return self._play_task is not None and not self._play_task.done()

    @property
    def pending_chunks(self) -> int:
        return self._queue.qsize() if self._queue else 0

    @property
    def response_audio(self) -> bytes:
        return b"".join(self._response_chunks)

    async def start(self) -> None:
        if self.is_running:
            return
        self._sink.open(self._sample_rate)
        self._queue = asyncio.Queue()
        self._play_task = asyncio.create_task(self._playback_loop(self._queue))

    async def play_chunk(self, chunk: bytes) -> None:
        if self._queue is None:
            logger.debug("Playback not started, chunk dropped")
            return
        self._response_chunks.append(chunk)
        self._queue.put_nowait(chunk)

    def end_response(self) -> None:
        self._response_chunks.clear()

    async def stop(self) -> None:
        self._response_chunks.clear()
        discarded = self._drain_queue()
        if self.is_running:
            self._sink.abort()
        if discarded:
            logger.info("Playback stopped, %d chunks discarded", discarded)

    async def close(self) -> None:
        await self.stop()
        if self._queue is not None and self._play_task is not None:
            self._queue.put_nowait(None)
            await self._play_task
        self._queue = None
        self._play_task = None
        self._sink.close()

    def _drain_queue(self) -> int:
        if self._queue is None:
            return 0
        discarded = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            discarded += 1
        return discarded

    async def _playback_loop(self, queue: asyncio.Queue[bytes | None]) -> None:
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            await asyncio.to_thread(self._sink.write, chunk)
