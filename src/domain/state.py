from enum import Enum, auto

from domain.errors import LiveProxyError


class SessionState(Enum):
    IDLE = auto()
    CONNECTING = auto()
    LISTENING = auto()
    SPEAKING = auto()
    CLOSED = auto()


VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CONNECTING: {SessionState.LISTENING, SessionState.CLOSED},
    SessionState.LISTENING: {SessionState.SPEAKING, SessionState.CLOSED},
    SessionState.SPEAKING: {SessionState.LISTENING, SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class InvalidTransitionError(LiveProxyError):
    pass


def validate_transition(current: SessionState, target: SessionState) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")
