import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable

from domain.errors import UpstreamSetupError
from domain.events import (
    ClientDisconnected,
    ClientMessageReceived,
    SessionEvent,
    UpstreamDisconnected,
    UpstreamFailed,
    UpstreamMessageReceived,
)
from domain.frames import (
    Interrupt,
    RawAudio,
    ResponseAudio,
    ResponseEnd,
    ResponseText,
    SessionStart,
    decode_message,
    encode_error,
    parse_client_frame,
    parse_downstream_frames,
)
from domain.state import SessionState, validate_transition
from ports.client import ClientConnectionPort
from ports.upstream import UpstreamPort

logger = logging.getLogger(__name__)

UPSTREAM_CLOSED_MESSAGE = "Upstream connection closed"
CLOSE_CODE_NORMAL = 1000
CLOSE_CODE_INTERNAL_ERROR = 1011


class SessionProxy:
    """Bridges one client connection to one upstream live session.

    Both connections feed a single event queue; ``run`` consumes it on one task,
    so every state change happens in arrival order without locking.
    """

    def __init__(
        self,
        client: ClientConnectionPort,
        upstream_factory: Callable[[], UpstreamPort],
        session_id: str | None = None,
    ) -> None:
        self._client = client
        self._upstream_factory = upstream_factory
        self._session_id = session_id or uuid.uuid4().hex[:8]

        self._upstream: UpstreamPort | None = None
        self._state = SessionState.IDLE
        self._speaking = False
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._client_task: asyncio.Task | None = None
        self._upstream_task: asyncio.Task | None = None
        self._upstream_failed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def upstream(self) -> UpstreamPort | None:
        return self._upstream

    def _transition_to(self, target: SessionState) -> None:
        validate_transition(self._state, target)
        logger.info("State: %s -> %s (session %s)", self._state.name, target.name, self._session_id)
        self._state = target

    async def run(self) -> None:
        logger.info("Session %s opened by %s", self._session_id, self._client.peer)
        self._client_task = asyncio.create_task(self._pump(self._client.events()))
        try:
            while self._state != SessionState.CLOSED:
                event = await self._events.get()
                await self.handle_event(event)
        except asyncio.CancelledError:
            logger.info("Session %s cancelled", self._session_id)
        finally:
            await self.close()

    async def _pump(self, source: AsyncIterator[SessionEvent]) -> None:
        async for event in source:
            await self._events.put(event)

    async def handle_event(self, event: SessionEvent) -> None:
        if self._state == SessionState.CLOSED:
            return

        if isinstance(event, ClientMessageReceived):
            await self._handle_client_message(event.data)
        elif isinstance(event, ClientDisconnected):
            logger.info(
                "Client disconnected (session %s, code=%s)", self._session_id, event.code
            )
            await self.close()
        elif isinstance(event, UpstreamMessageReceived):
            await self._handle_upstream_message(event.data)
        elif isinstance(event, UpstreamFailed):
            logger.error("Upstream error (session %s): %s", self._session_id, event.message)
            self._upstream_failed = True
            await self._client.send(encode_error(event.message))
        elif isinstance(event, UpstreamDisconnected):
            logger.warning(
                "Upstream closed (session %s, code=%s, reason=%s)",
                self._session_id, event.code, event.reason,
            )
            # a preceding failure has already told the client why
            if not self._upstream_failed:
                detail = f"{UPSTREAM_CLOSED_MESSAGE} (code {event.code})" if event.code else UPSTREAM_CLOSED_MESSAGE
                await self._client.send(encode_error(detail))
            await self.close(code=CLOSE_CODE_INTERNAL_ERROR, reason=UPSTREAM_CLOSED_MESSAGE)

    async def _handle_client_message(self, data: str | bytes) -> None:
        message = decode_message(data)
        if isinstance(message, RawAudio):
            await self._forward_upstream(message.data)
            return

        frame = parse_client_frame(message)
        if isinstance(frame, SessionStart):
            await self._start_upstream(frame)
            if self._state == SessionState.CLOSED:
                return
        elif isinstance(frame, Interrupt):
            self._interrupt()

        await self._forward_upstream(message.raw)

    async def _start_upstream(self, frame: SessionStart) -> None:
        if self._upstream is not None:
            logger.debug("Session %s already started, forwarding start frame", self._session_id)
            return

        self._transition_to(SessionState.CONNECTING)
        self._upstream = self._upstream_factory()
        try:
            await self._upstream.connect()
        except UpstreamSetupError as exc:
            if self._state == SessionState.CLOSED:
                logger.debug("Session %s closed during upstream setup: %s", self._session_id, exc)
                return
            logger.error("Session %s setup failed: %s", self._session_id, exc)
            await self._client.send(encode_error(str(exc)))
            await self.close(code=CLOSE_CODE_INTERNAL_ERROR, reason="upstream setup failed")
            return
        if self._state == SessionState.CLOSED:
            logger.debug("Session %s closed during upstream setup", self._session_id)
            return

        logger.info(
            "Upstream ready (session %s, language=%s)", self._session_id, frame.language
        )
        self._transition_to(SessionState.LISTENING)
        self._upstream_task = asyncio.create_task(self._pump(self._upstream.events()))

    def _interrupt(self) -> None:
        logger.info("Interrupt (session %s, speaking=%s)", self._session_id, self._speaking)
        self._speaking = False
        if self._state == SessionState.SPEAKING:
            self._transition_to(SessionState.LISTENING)

    async def _forward_upstream(self, data: str | bytes) -> None:
        if self._upstream is None:
            logger.debug("No upstream yet, dropping client frame (session %s)", self._session_id)
            return
        await self._upstream.send(data)

    async def _handle_upstream_message(self, data: str | bytes) -> None:
        for frame in parse_downstream_frames(decode_message(data)):
            if isinstance(frame, (ResponseAudio, ResponseText)):
                self._mark_speaking()
            elif isinstance(frame, ResponseEnd):
                self._mark_listening()
        await self._client.send(data)

    def _mark_speaking(self) -> None:
        if self._state == SessionState.LISTENING:
            self._transition_to(SessionState.SPEAKING)
        if self._state == SessionState.SPEAKING:
            self._speaking = True

    def _mark_listening(self) -> None:
        self._speaking = False
        if self._state == SessionState.SPEAKING:
            self._transition_to(SessionState.LISTENING)

    async def close(self, code: int = CLOSE_CODE_NORMAL, reason: str = "") -> None:
        if self._state == SessionState.CLOSED:
            return

        self._transition_to(SessionState.CLOSED)
        self._speaking = False
        # wakes run() if it is parked on an empty queue
        self._events.put_nowait(SessionEvent())

        if self._upstream is not None:
            await self._upstream.close()

        current = asyncio.current_task()
        pending = [
            task for task in (self._upstream_task, self._client_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        await self._client.close(code=code, reason=reason)
        logger.info("Session %s closed", self._session_id)
