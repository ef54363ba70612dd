from typing import AsyncIterator, Protocol


class AudioCapturePort(Protocol):
    @property
    def sample_rate(self) -> int: ...
    @property
    def mime_type(self) -> str: ...
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    def read_chunks(self) -> AsyncIterator[bytes]: ...


class AudioSinkPort(Protocol):
    def open(self, sample_rate: int) -> None: ...
    def write(self, pcm: bytes) -> None: ...
    def abort(self) -> None: ...
    def close(self) -> None: ...
