from dataclasses import dataclass, field
from time import time


@dataclass(frozen=True)
class SessionEvent:
    timestamp: float = field(default_factory=time)


@dataclass(frozen=True)
class ClientMessageReceived(SessionEvent):
    data: str | bytes = ""


@dataclass(frozen=True)
class ClientDisconnected(SessionEvent):
    code: int | None = None
    reason: str = ""


@dataclass(frozen=True)
class UpstreamMessageReceived(SessionEvent):
    data: str | bytes = ""


@dataclass(frozen=True)
class UpstreamFailed(SessionEvent):
    message: str = ""


@dataclass(frozen=True)
class UpstreamDisconnected(SessionEvent):
    code: int | None = None
    reason: str = ""
