import asyncio
import logging
import os
from collections.abc import AsyncIterator

import janus
import numpy as np
import sounddevice as sd

logger = logging.getLogger(__name__)


class SounddeviceCapture:
    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 16000,
        chunk_duration_ms: int = 200,
    ) -> None:
        self._device = device or None
        self._sample_rate = sample_rate
        self._chunk_duration_ms = chunk_duration_ms
        self._chunk_size = int(sample_rate * chunk_duration_ms / 1000)
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[bytes] | None = None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={self._sample_rate}"

    async def start(self) -> None:
        if self._stream is not None:
            return
        self._queue = janus.Queue(maxsize=50)
        queue = self._queue

        def audio_callback(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            pcm_bytes = (indata[:, 0] * 32767).astype(np.int16).tobytes()
            try:
                queue.sync_q.put_nowait(pcm_bytes)
            except janus.SyncQueueFull:
                logger.debug("Capture queue full, chunk dropped")

        device = self._resolve_device()
        self._stream = sd.InputStream(
            device=device,
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self._chunk_size,
            callback=audio_callback,
        )
        self._stream.start()
        logger.info(
            "Audio capture started (device=%s, rate=%d, chunk=%dms)",
            device, self._sample_rate, self._chunk_duration_ms,
        )

    async def stop(self) -> None:
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None
            logger.info("Audio capture stopped")
        if self._queue:
            self._queue.close()
            await self._queue.wait_closed()
            self._queue = None

    async def read_chunks(self) -> AsyncIterator[bytes]:
        queue = self._queue
        if not queue:
            return
        while True:
            try:
                chunk = await asyncio.wait_for(queue.async_q.get(), timeout=1.0)
            except asyncio.TimeoutError:
                if self._queue is not queue:
                    break
                continue
            except janus.AsyncQueueShutDown:
                break
            yield chunk

    def _resolve_device(self) -> str | int | None:
        if self._device is None:
            return None
        if isinstance(self._device, int):
            return self._device
        try:
            return int(self._device)
        except ValueError:
            pass
        for i, dev in enumerate(sd.query_devices()):
            if self._device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                logger.info("Resolved device '%s' -> %d (%s)", self._device, i, dev["name"])
                return i
        os.environ["PIPEWIRE_NODE"] = self._device
        logger.info("Device '%s' not in PortAudio, set PIPEWIRE_NODE for PipeWire routing", self._device)
        return None


class SounddeviceSink:
    def __init__(self, device: str | int | None = None) -> None:
        self._device = device or None
        self._stream: sd.OutputStream | None = None

    def open(self, sample_rate: int) -> None:
        if self._stream is not None:
            return
        self._stream = sd.OutputStream(
            device=self._device,
            samplerate=sample_rate,
            channels=1,
            dtype="int16",
        )
        self._stream.start()

    def write(self, pcm: bytes) -> None:
        stream = self._stream
        if stream is None:
            return
        # PCM s16le chunks may arrive with an odd trailing byte
        usable = len(pcm) - len(pcm) % 2
        audio_array = np.frombuffer(pcm[:usable], dtype=np.int16)
        try:
            stream.write(audio_array.reshape(-1, 1))
        except sd.PortAudioError:
            logger.warning("Playback write error")

    def abort(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.abort()
            self._stream.start()
        except sd.PortAudioError:
            logger.warning("Playback abort error")

    def close(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            stream.abort()
            stream.close()
        except sd.PortAudioError:
            logger.debug("Ignoring error while closing playback stream", exc_info=True)
