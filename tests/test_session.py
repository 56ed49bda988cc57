"""Tests for the stream session state machine."""

import asyncio
from unittest.mock import MagicMock

import pytest

from comptax_chat.services.errors import (
    ServerReportedError,
    TransportMidStreamError,
    TransportOpenError,
)
from comptax_chat.services.session import SessionListener, StreamSession, StreamState


@pytest.fixture
def session(recorder):
    session = StreamSession("conv-1", user_message_id="msg-1", query="test", listeners=[recorder])
    session.start()
    return session


def test_start_enters_connecting(recorder):
    session = StreamSession("conv-1", listeners=[recorder])
    assert session.state == StreamState.IDLE

    session.start()

    assert session.state == StreamState.CONNECTING
    assert recorder.names() == ["start"]
    with pytest.raises(RuntimeError):
        session.start()


def test_start_frame_enters_streaming(session, start_payload):
    session.handle_frame("start", dict(start_payload, conversation_id="srv-conv-1"))

    assert session.state == StreamState.STREAMING
    assert session.server_query_id == "q-123"
    assert session.server_conversation_id == "srv-conv-1"


def test_chunks_are_appended(session, start_payload, recorder):
    session.handle_frame("start", start_payload)
    session.handle_frame("chunk", {"text": "Le ", "completion": 0.2})
    session.handle_frame("chunk", {"text": "mode dégressif ", "completion": 0.4})

    assert session.text == "Le mode dégressif "
    assert session.completion == 0.4
    assert recorder.names() == ["start", "chunk", "chunk"]


def test_completion_never_decreases(session, start_payload):
    session.handle_frame("start", start_payload)
    session.handle_frame("progress", {"status": "generating", "completion": 0.6})
    session.handle_frame("chunk", {"text": "a", "completion": 0.3})
    session.handle_frame("progress", {"status": "generating", "completion": 1.7})

    assert session.completion == 1.0
    assert session.status == "generating"


def test_complete_replaces_streamed_text(session, start_payload, complete_payload, recorder):
    """Test that the final answer is authoritative over the chunk concatenation."""
    session.handle_frame("start", start_payload)
    session.handle_frame("chunk", {"text": "Le ", "completion": 0.2})
    session.handle_frame("chunk", {"text": "mode", "completion": 0.3})
    session.handle_frame("complete", complete_payload)

    assert session.state == StreamState.COMPLETE
    assert session.text == complete_payload["answer"]
    assert session.completion == 1.0
    assert session.server_message_id == "srv-msg-2"
    assert session.server_user_message_id == "srv-msg-1"
    assert len(session.sources) == 1
    assert session.sources[0].title == "Amortissements"
    assert session.sources[0].relevance_score == 0.87
    assert recorder.names()[-1] == "complete"


def test_frames_after_terminal_state_are_ignored(session, start_payload, complete_payload, recorder):
    session.handle_frame("start", start_payload)
    session.handle_frame("complete", complete_payload)
    session.handle_frame("chunk", {"text": "late", "completion": 0.9})
    session.handle_frame("error", {"error": "late"})

    assert session.state == StreamState.COMPLETE
    assert session.text == complete_payload["answer"]
    assert recorder.names().count("complete") == 1
    assert "failure" not in recorder.names()


def test_chunk_before_start_promotes_to_streaming(session):
    session.handle_frame("chunk", {"text": "a", "completion": 0.1})

    assert session.state == StreamState.STREAMING
    assert session.text == "a"


def test_error_frame_fails_session_and_keeps_text(session, start_payload, recorder):
    session.handle_frame("start", start_payload)
    session.handle_frame("chunk", {"text": "Le mode ", "completion": 0.2})
    session.handle_frame("error", {"error": "LLM unavailable", "id": "q-123"})

    assert session.state == StreamState.FAILED
    assert isinstance(session.error, ServerReportedError)
    assert str(session.error) == "LLM unavailable"
    assert session.error.query_id == "q-123"
    assert session.text == "Le mode "
    assert recorder.names()[-1] == "failure"


def test_invalid_payload_is_skipped(session, start_payload):
    session.handle_frame("start", start_payload)
    session.handle_frame("complete", {"answer": None})

    assert session.state == StreamState.STREAMING


def test_unknown_event_is_ignored(session):
    session.handle_frame("heartbeat", {"ts": 1})

    assert session.state == StreamState.CONNECTING


def test_transport_end_without_complete_fails(session, start_payload):
    session.handle_frame("start", start_payload)
    session.handle_transport_end()

    assert session.state == StreamState.FAILED
    assert isinstance(session.error, TransportMidStreamError)


def test_transport_end_before_any_frame_fails(session):
    session.handle_transport_end()

    assert session.state == StreamState.FAILED
    assert isinstance(session.error, TransportOpenError)


def test_transport_error_after_cancel_is_ignored(session):
    session.cancel()
    session.handle_transport_error(TransportOpenError("late"))

    assert session.state == StreamState.CANCELLED
    assert session.error is None


def test_cancel_is_idempotent(session, start_payload, recorder):
    session.handle_frame("start", start_payload)
    session.handle_frame("chunk", {"text": "partiel", "completion": 0.2})

    assert session.cancel() is True
    assert session.cancel() is False

    assert session.state == StreamState.CANCELLED
    assert session.text == "partiel"
    assert recorder.names().count("cancel") == 1


def test_cancel_after_complete_is_a_noop(session, complete_payload):
    session.handle_frame("complete", complete_payload)

    assert session.cancel() is False
    assert session.state == StreamState.COMPLETE


def test_terminal_state_releases_transport(session, complete_payload):
    handle = MagicMock()
    session.attach(handle)

    session.handle_frame("complete", complete_payload)

    handle.cancel.assert_called_once()


def test_attach_after_terminal_state_cancels_handle(session):
    session.cancel()
    handle = MagicMock()

    session.attach(handle)

    handle.cancel.assert_called_once()


async def test_wait_returns_terminal_state(session, complete_payload):
    session.handle_frame("complete", complete_payload)

    assert await session.wait() == StreamState.COMPLETE


class FailingListener(SessionListener):
    def on_chunk(self, session, text):
        raise RuntimeError("display crashed")

    def on_complete(self, session):
        raise RuntimeError("display crashed")


async def test_failing_listener_does_not_block_session(recorder, start_payload, complete_payload):
    """Test that a listener raising is logged while later listeners and waiters still run."""
    session = StreamSession("conv-1", listeners=[FailingListener(), recorder])
    session.start()

    session.handle_frame("start", start_payload)
    session.handle_frame("chunk", {"text": "Le ", "completion": 0.2})
    session.handle_frame("complete", complete_payload)

    assert session.state == StreamState.COMPLETE
    assert recorder.names() == ["start", "chunk", "complete"]
    assert await asyncio.wait_for(session.wait(), timeout=2) == StreamState.COMPLETE
