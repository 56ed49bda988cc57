"""
Data models for conversations and messages
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, PrivateAttr

Role = Literal["user", "assistant", "system"]


def new_local_id() -> str:
    """Generate a local identifier"""
    return str(uuid4())


class Feedback(BaseModel):
    """User feedback on an assistant message"""
    rating: int
    comment: Optional[str] = None


class SourceMetadata(BaseModel):
    """Structural position of a source inside the OHADA corpus"""
    title: Optional[str] = None
    partie: Optional[int] = None
    chapitre: Optional[int] = None
    document_type: Optional[str] = None


class Source(BaseModel):
    """Retrieved document attached to a finalized assistant message"""
    model_config = {"frozen": True}

    document_id: str
    title: str = "Document sans titre"
    metadata: SourceMetadata = Field(default_factory=SourceMetadata)
    relevance_score: float = 0.0
    preview: str = ""


class Message(BaseModel):
    """Chat message; `id` is local and never changes, `server_id` arrives on sync"""
    id: str = Field(default_factory=new_local_id)
    server_id: Optional[str] = None
    content: str = ""
    role: Role
    timestamp: datetime = Field(default_factory=datetime.now)
    sources: Optional[List[Source]] = None
    feedback: Optional[Feedback] = None


class Conversation(BaseModel):
    """
    Ordered message list with an id index.

    Messages are only ever located by id; positions are looked up from the
    id when an insertion needs one.
    """
    id: str = Field(default_factory=new_local_id)
    server_id: Optional[str] = None
    title: str = "Nouvelle conversation"
    title_renamed: bool = False
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    synced: bool = False

    _index: Dict[str, Message] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context) -> None:
        self._index = {message.id: message for message in self.messages}

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._index.get(message_id)

    def has_user_message(self) -> bool:
        return any(message.role == "user" for message in self.messages)

    def append_message(self, message: Message) -> Message:
        self.messages.append(message)
        self._index[message.id] = message
        self.touch()
        return message

    def insert_message_after(self, anchor_id: Optional[str], message: Message) -> Message:
        """Insert right after the message with `anchor_id`, or append when it is gone"""
        anchor = self._index.get(anchor_id) if anchor_id else None
        if anchor is None:
            return self.append_message(message)
        position = next(i for i, m in enumerate(self.messages) if m.id == anchor_id)
        self.messages.insert(position + 1, message)
        self._index[message.id] = message
        self.touch()
        return message

    def remove_message(self, message_id: str) -> Optional[Message]:
        message = self._index.pop(message_id, None)
        if message is not None:
            self.messages = [m for m in self.messages if m.id != message_id]
        return message

    def touch(self) -> None:
        self.updated_at = datetime.now()


class RetrievalOptions(BaseModel):
    """Retrieval parameters forwarded to the stream endpoint"""
    n_results: int = Field(default=5, ge=1, le=50)
    include_sources: bool = True
    partie: Optional[int] = None
    chapitre: Optional[int] = None


class Query(BaseModel):
    """A submitted question, alive until its stream session ends"""
    text: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None
    options: RetrievalOptions = Field(default_factory=RetrievalOptions)
    token: Optional[str] = None
