"""
Per-query stream session state machine

    idle -> connecting -> streaming -> complete | failed | cancelled

A session is written to only by its transport's frame callbacks (plus an
explicit `cancel`), so it needs no locking: everything runs on the event
loop. Frames arriving once a terminal state is reached are dropped.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

import structlog
from pydantic import ValidationError

from comptax_chat.models.chat import Source, new_local_id
from comptax_chat.models.stream import (
    EVENT_MODELS,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    ProgressEvent,
    StartEvent,
)
from comptax_chat.services.errors import (
    ComptaxError,
    ServerReportedError,
    TransportError,
    TransportMidStreamError,
    TransportOpenError,
)
from comptax_chat.services.transport import StreamHandle
from comptax_chat.utils.metrics import (
    track_first_chunk,
    track_frame,
    track_malformed_frame,
    track_stream_finished,
    track_stream_started,
)

logger = structlog.get_logger()


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({StreamState.COMPLETE, StreamState.FAILED, StreamState.CANCELLED})


class SessionListener:
    """Lifecycle callbacks of a session; override what you need"""

    def on_session_start(self, session: "StreamSession") -> None:
        pass

    def on_progress(self, session: "StreamSession") -> None:
        pass

    def on_chunk(self, session: "StreamSession", text: str) -> None:
        pass

    def on_complete(self, session: "StreamSession") -> None:
        pass

    def on_failure(self, session: "StreamSession") -> None:
        pass

    def on_cancel(self, session: "StreamSession") -> None:
        pass


class StreamSession:
    """State of one in-flight query"""

    def __init__(
        self,
        conversation_id: str,
        user_message_id: Optional[str] = None,
        query: Optional[str] = None,
        listeners: Optional[Iterable[SessionListener]] = None,
        placeholder_message_id: Optional[str] = None,
    ):
        self.id = str(uuid4())
        self.conversation_id = conversation_id
        self.user_message_id = user_message_id
        self.placeholder_message_id = placeholder_message_id or new_local_id()
        self.query = query
        self.state = StreamState.IDLE

        self.text = ""
        self.completion = 0.0
        self.status: Optional[str] = None

        self.server_query_id: Optional[str] = None
        self.server_conversation_id: Optional[str] = None
        self.server_user_message_id: Optional[str] = None
        self.server_message_id: Optional[str] = None
        self.result: Optional[CompleteEvent] = None
        self.error: Optional[ComptaxError] = None

        self._listeners: List[SessionListener] = list(listeners or [])
        self._handle: Optional[StreamHandle] = None
        self._finished = asyncio.Event()
        self._started_at: Optional[float] = None
        self._first_chunk_seen = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self.state in (StreamState.CONNECTING, StreamState.STREAMING)

    @property
    def sources(self) -> Optional[List[Source]]:
        return self.result.to_sources() if self.result else None

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        """Enter `connecting`; the placeholder message is created here"""
        if self.state != StreamState.IDLE:
            raise RuntimeError(f"Session {self.id} already started ({self.state.value})")
        self._started_at = time.monotonic()
        self._transition(StreamState.CONNECTING)
        track_stream_started()
        self._notify("on_session_start")

    def attach(self, handle: StreamHandle) -> None:
        """Bind the transport whose frames feed this session"""
        self._handle = handle
        if self.is_terminal:
            handle.cancel()

    def handle_frame(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Apply one decoded frame"""
        if not self.is_active:
            logger.warning(
                "Ignoring frame outside of an active session",
                session_id=self.id,
                event_type=event_type,
                state=self.state.value
            )
            return

        model = EVENT_MODELS.get(event_type)
        if model is None:
            logger.info("Ignoring unknown event", session_id=self.id, event_type=event_type)
            return

        try:
            event = model.model_validate(payload)
        except ValidationError as e:
            track_malformed_frame()
            logger.warning(
                "Skipping frame with invalid payload",
                session_id=self.id,
                event_type=event_type,
                error=str(e)
            )
            return

        track_frame(event_type)

        if self.state == StreamState.CONNECTING and event_type != "start":
            logger.warning("Frame received before start", session_id=self.id, event_type=event_type)
            self._transition(StreamState.STREAMING)

        if isinstance(event, StartEvent):
            self._on_start(event)
        elif isinstance(event, ProgressEvent):
            self._update_completion(event.completion)
            self.status = event.status or self.status
            self._notify("on_progress")
        elif isinstance(event, ChunkEvent):
            self._on_chunk(event)
        elif isinstance(event, CompleteEvent):
            self._on_complete(event)
        elif isinstance(event, ErrorEvent):
            self._fail(ServerReportedError(event.error, query_id=event.id))

    def handle_transport_error(self, error: TransportError) -> None:
        if self.is_terminal:
            return
        self._fail(error)

    def handle_transport_end(self) -> None:
        """The server closed the stream; without a `complete` frame that is a failure"""
        if self.is_terminal:
            return
        if self.state == StreamState.STREAMING:
            error: TransportError = TransportMidStreamError("Stream ended before completion")
        else:
            error = TransportOpenError("Stream closed before any frame")
        self._fail(error)

    def cancel(self) -> bool:
        """
        User cancellation. Idempotent: returns False when the session had
        already ended, including a previous cancel.
        """
        if self.is_terminal:
            return False
        self._transition(StreamState.CANCELLED)
        self._release_transport()
        logger.info("Stream cancelled", session_id=self.id, chars_received=len(self.text))
        try:
            self._notify("on_cancel")
        finally:
            self._finish()
        return True

    async def wait(self) -> StreamState:
        """Wait for a terminal state"""
        await self._finished.wait()
        return self.state

    def _on_start(self, event: StartEvent) -> None:
        self.server_query_id = event.id
        self.server_conversation_id = event.conversation_id or self.server_conversation_id
        self.server_user_message_id = event.user_message_id or self.server_user_message_id
        if self.state == StreamState.CONNECTING:
            self._transition(StreamState.STREAMING)
        logger.info(
            "Stream started",
            session_id=self.id,
            query_id=event.id,
            server_conversation_id=event.conversation_id
        )

    def _on_chunk(self, event: ChunkEvent) -> None:
        if not self._first_chunk_seen and self._started_at is not None:
            self._first_chunk_seen = True
            track_first_chunk(time.monotonic() - self._started_at)
        self.text += event.text
        if event.completion is not None:
            self._update_completion(event.completion)
        self._notify("on_chunk", event.text)

    def _on_complete(self, event: CompleteEvent) -> None:
        # the server's answer is authoritative; chunks were only a live preview
        self.result = event
        self.text = event.answer
        self.completion = 1.0
        self.server_query_id = event.id or self.server_query_id
        self.server_conversation_id = event.conversation_id or self.server_conversation_id
        self.server_user_message_id = event.user_message_id or self.server_user_message_id
        self.server_message_id = event.ia_message_id
        self._transition(StreamState.COMPLETE)
        self._release_transport()
        try:
            self._notify("on_complete")
        finally:
            self._finish()

    def _fail(self, error: ComptaxError) -> None:
        self.error = error
        self._transition(StreamState.FAILED)
        self._release_transport()
        logger.warning(
            "Stream failed",
            session_id=self.id,
            error=str(error),
            error_type=type(error).__name__,
            chars_received=len(self.text)
        )
        try:
            self._notify("on_failure")
        finally:
            self._finish()

    def _update_completion(self, value: float) -> None:
        value = min(max(value, 0.0), 1.0)
        if value < self.completion:
            logger.debug("Completion went backwards", session_id=self.id, previous=self.completion, value=value)
            return
        self.completion = value

    def _transition(self, new_state: StreamState) -> None:
        logger.debug(
            "Stream state transition",
            session_id=self.id,
            from_state=self.state.value,
            to_state=new_state.value
        )
        self.state = new_state

    def _release_transport(self) -> None:
        if self._handle is not None:
            self._handle.cancel()

    def _notify(self, method: str, *args) -> None:
        # a failing listener is logged and skipped
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(self, *args)
            except Exception:
                logger.exception(
                    "Session listener failed",
                    session_id=self.id,
                    listener=type(listener).__name__,
                    callback=method
                )

    def _finish(self) -> None:
        if self._started_at is not None:
            track_stream_finished(self.state.value, time.monotonic() - self._started_at, self.id)
        self._finished.set()
