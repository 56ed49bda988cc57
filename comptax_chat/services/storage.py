"""
Local persistence sinks for conversations

The sink is the client-side cache of conversations: unbounded, one JSON
document holding the list. When the user is signed in only conversations
not yet synced with the server are kept locally.
"""
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from comptax_chat.models.chat import Conversation
from comptax_chat.services.config import Settings

logger = structlog.get_logger()


class ConversationSink(ABC):
    """Save/load/delete contract shared by every backend"""

    @abstractmethod
    async def _read(self) -> List[Dict[str, Any]]:
        """Return the stored documents, [] when nothing is stored"""

    @abstractmethod
    async def _write(self, documents: List[Dict[str, Any]]) -> None:
        """Replace the stored documents"""

    @abstractmethod
    async def clear(self) -> None:
        """Remove everything"""

    async def load_all(self) -> List[Conversation]:
        conversations = []
        for document in await self._read():
            try:
                conversations.append(Conversation.model_validate(document))
            except ValidationError as e:
                logger.error("Skipping unreadable stored conversation", error=str(e))
        return conversations

    async def save_all(self, conversations: List[Conversation], authenticated: bool = False) -> None:
        if authenticated:
            conversations = [c for c in conversations if not c.synced]
        if not conversations:
            await self.clear()
            return
        await self._write([c.model_dump(mode="json") for c in conversations])

    async def save(self, conversation: Conversation, authenticated: bool = False) -> None:
        """Insert or replace one conversation"""
        conversations = await self.load_all()
        for i, stored in enumerate(conversations):
            if stored.id == conversation.id:
                conversations[i] = conversation
                break
        else:
            conversations.append(conversation)
        await self.save_all(conversations, authenticated=authenticated)

    async def delete(self, conversation_id: str) -> None:
        documents = await self._read()
        remaining = [d for d in documents if d.get("id") != conversation_id]
        if len(remaining) == len(documents):
            return
        if remaining:
            await self._write(remaining)
        else:
            await self.clear()

    async def close(self) -> None:
        pass


class MemoryConversationSink(ConversationSink):
    """Process-local sink"""

    def __init__(self):
        self._documents: List[Dict[str, Any]] = []

    async def _read(self) -> List[Dict[str, Any]]:
        return [dict(d) for d in self._documents]

    async def _write(self, documents: List[Dict[str, Any]]) -> None:
        self._documents = list(documents)

    async def clear(self) -> None:
        self._documents = []


class FileConversationSink(ConversationSink):
    """JSON file keyed like the browser storage entry"""

    def __init__(self, path: Path, key: str = "comptax_conversations"):
        self.path = Path(path).expanduser()
        self.key = key

    async def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read conversations file", path=str(self.path), error=str(e))
            return []
        documents = data.get(self.key, []) if isinstance(data, dict) else []
        return documents if isinstance(documents, list) else []

    async def _write(self, documents: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({self.key: documents}, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    async def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class RedisConversationSink(ConversationSink):
    """One JSON value under a Redis key"""

    def __init__(self, url: str, key: str = "comptax_conversations",
                 client: Optional[aioredis.Redis] = None):
        self.url = url
        self.key = key
        self.redis_client = client

    async def _client(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(self.url, encoding="utf-8", decode_responses=True)
            logger.info("Redis connection established")
        return self.redis_client

    async def _read(self) -> List[Dict[str, Any]]:
        client = await self._client()
        data = await client.get(self.key)
        if not data:
            return []
        try:
            documents = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error("Stored conversations are not valid JSON", key=self.key, error=str(e))
            return []
        return documents if isinstance(documents, list) else []

    async def _write(self, documents: List[Dict[str, Any]]) -> None:
        client = await self._client()
        await client.set(self.key, json.dumps(documents, ensure_ascii=False))

    async def clear(self) -> None:
        client = await self._client()
        await client.delete(self.key)

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            logger.info("Redis connection closed")


def create_sink(settings: Settings) -> ConversationSink:
    """Build the sink selected by STORAGE_BACKEND"""
    if settings.STORAGE_BACKEND == "file":
        return FileConversationSink(settings.STORAGE_PATH, settings.STORAGE_KEY)
    if settings.STORAGE_BACKEND == "redis":
        return RedisConversationSink(settings.REDIS_URL, settings.STORAGE_KEY)
    return MemoryConversationSink()
