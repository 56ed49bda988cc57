"""Pytest fixtures for comptax-chat tests."""

import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

# Set test environment
os.environ["COMPTAX_API_URL"] = "http://comptax.test"
os.environ["COMPTAX_STORAGE_BACKEND"] = "memory"
os.environ["COMPTAX_LOG_LEVEL"] = "WARNING"
os.environ.pop("COMPTAX_API_TOKEN", None)

from comptax_chat.services.config import Settings
from comptax_chat.services.conversations import ConversationManager, ConversationStore
from comptax_chat.services.session import SessionListener
from comptax_chat.services.transport import StreamTransport
from comptax_chat.utils.logging import setup_logging


def sse(event: Optional[str], payload: Any) -> str:
    """Render one SSE frame"""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    lines = [f"event: {event}"] if event else []
    lines.append(f"data: {data}")
    return "\n".join(lines) + "\n\n"


def stream_response(frames: List[str], fail_with: Optional[Exception] = None,
                    block: Optional[asyncio.Event] = None) -> httpx.Response:
    """An event-stream response that yields one network chunk per frame"""

    async def body():
        for frame in frames:
            yield frame.encode("utf-8")
            await asyncio.sleep(0)
        if block is not None:
            await block.wait()
        if fail_with is not None:
            raise fail_with

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


class RecordingListener(SessionListener):
    """Collects lifecycle callbacks in order"""

    def __init__(self, log: Optional[list] = None):
        self.calls: list = [] if log is None else log

    def on_session_start(self, session):
        self.calls.append(("start", session.id, session.state))

    def on_progress(self, session):
        self.calls.append(("progress", session.id, session.completion))

    def on_chunk(self, session, text):
        self.calls.append(("chunk", session.id, text))

    def on_complete(self, session):
        self.calls.append(("complete", session.id, session.text))

    def on_failure(self, session):
        self.calls.append(("failure", session.id, session.error))

    def on_cancel(self, session):
        self.calls.append(("cancel", session.id, session.text))

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Route structlog through the test log level once per run."""
    setup_logging(os.environ["COMPTAX_LOG_LEVEL"])


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, API_URL="http://comptax.test/")


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def manager(settings, store):
    return ConversationManager(settings, store=store)


@pytest.fixture
def recorder():
    return RecordingListener()


@pytest.fixture
def make_transport(settings) -> Callable[..., StreamTransport]:
    """Build a StreamTransport backed by an httpx MockTransport handler."""

    def factory(handler, strategy=None) -> StreamTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return StreamTransport(settings, strategy=strategy, client=client)

    return factory


@pytest.fixture
def start_payload() -> Dict[str, Any]:
    return {
        "id": "q-123",
        "query": "Comment fonctionne l'amortissement dégressif ?",
        "timestamp": 1700000000.0,
    }


@pytest.fixture
def complete_payload() -> Dict[str, Any]:
    return {
        "id": "q-123",
        "query": "Comment fonctionne l'amortissement dégressif ?",
        "answer": "Le mode dégressif consiste à appliquer un taux constant...",
        "sources": [
            {
                "document_id": "doc-042",
                "metadata": {"title": "Amortissements", "partie": 2, "chapitre": 4},
                "relevance_score": 0.87,
                "preview": "L'amortissement dégressif...",
            }
        ],
        "performance": {"total_time_seconds": 2.4},
        "timestamp": 1700000002.4,
        "conversation_id": "srv-conv-1",
        "user_message_id": "srv-msg-1",
        "ia_message_id": "srv-msg-2",
    }
