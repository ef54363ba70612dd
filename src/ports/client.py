from typing import AsyncIterator, Protocol

from domain.events import ClientDisconnected, ClientMessageReceived

ClientEvent = ClientMessageReceived | ClientDisconnected


class ClientConnectionPort(Protocol):
    @property
    def peer(self) -> str: ...
    def events(self) -> AsyncIterator[ClientEvent]: ...
    async def send(self, message: str | bytes) -> None: ...
    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class ProxyTransportPort(Protocol):
    async def connect(self) -> None: ...
    async def send(self, message: str) -> None: ...
    def messages(self) -> AsyncIterator[str | bytes]: ...
    async def close(self) -> None: ...
    @property
    def is_open(self) -> bool: ...
