"""
Data models for the conversation and query REST API
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from comptax_chat.models.chat import Feedback
from comptax_chat.models.stream import ApiSource, CompleteEvent, Performance


class ServerMessageMetadata(BaseModel):
    performance: Optional[Dict[str, float]] = None
    sources: Optional[List[ApiSource]] = None
    feedback: Optional[Feedback] = None


class ServerMessage(BaseModel):
    """Message as stored by the server"""
    message_id: str
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    is_user: bool = False
    content: str = ""
    created_at: Optional[datetime] = None
    metadata: Optional[ServerMessageMetadata] = None


class ServerConversation(BaseModel):
    """Conversation as stored by the server"""
    conversation_id: str
    title: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    message_count: Optional[int] = None
    first_message: Optional[str] = None
    messages: Optional[List[ServerMessage]] = None


class MessageIds(BaseModel):
    """Server ids assigned when a message is posted"""
    conversation_id: Optional[str] = None
    user_message_id: Optional[str] = None
    ia_message_id: Optional[str] = None


class QueryRequest(BaseModel):
    """Body of a non-streaming query"""
    query: str = Field(..., min_length=1)
    partie: Optional[int] = None
    chapitre: Optional[int] = None
    n_results: int = 5
    include_sources: bool = True
    stream: bool = False


class QueryResponse(CompleteEvent):
    """Result of a non-streaming query; same shape as a `complete` frame"""
    pass


class ApiInfo(BaseModel):
    status: str
    service: str
    version: str
    endpoints: Dict[str, str] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    query: str
    answer: str
    timestamp: float
    metadata: Optional[Dict[str, Performance]] = None


class HistoryResponse(BaseModel):
    history: List[HistoryEntry] = Field(default_factory=list)
    count: int = 0


class QueryStatus(BaseModel):
    status: str  # processing, complete or error
    completion: float = 0.0
    error: Optional[str] = None
