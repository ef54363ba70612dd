from enum import Enum, auto
from typing import Any, AsyncIterator, Protocol

from domain.events import UpstreamDisconnected, UpstreamFailed, UpstreamMessageReceived

UpstreamEvent = UpstreamMessageReceived | UpstreamFailed | UpstreamDisconnected


class UpstreamState(Enum):
    UNCONNECTED = auto()
    CONNECTING = auto()
    OPEN = auto()
    CLOSED = auto()


class UpstreamPort(Protocol):
    @property
    def state(self) -> UpstreamState: ...
    async def connect(self) -> None: ...
    async def send(self, frame: dict[str, Any] | str | bytes) -> None: ...
    def events(self) -> AsyncIterator[UpstreamEvent]: ...
    async def close(self) -> None: ...
