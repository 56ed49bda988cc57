"""
Wire models for the /stream Server-Sent-Events protocol
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from comptax_chat.models.chat import Source, SourceMetadata


class SSEFrame(BaseModel):
    """One decoded `event:`/`data:` block; `type` is None until inferred"""
    type: Optional[str] = None
    data: str


class StartEvent(BaseModel):
    """Session opened by the server"""
    id: str
    query: Optional[str] = None
    timestamp: Optional[float] = None
    conversation_id: Optional[str] = None
    user_message_id: Optional[str] = None


class ProgressEvent(BaseModel):
    """Phase update, no text"""
    status: Optional[str] = None  # retrieving, analyzing or generating
    completion: float = 0.0


class ChunkEvent(BaseModel):
    """Incremental answer text"""
    text: str = ""
    completion: Optional[float] = None


class ApiSource(BaseModel):
    """Source as sent by the server"""
    document_id: str = ""
    metadata: Optional[SourceMetadata] = None
    relevance_score: float = 0.0
    preview: Optional[str] = None

    def to_source(self) -> Source:
        metadata = self.metadata or SourceMetadata()
        return Source(
            document_id=self.document_id,
            title=metadata.title or "Document sans titre",
            metadata=metadata,
            relevance_score=self.relevance_score,
            preview=self.preview or "",
        )


class Performance(BaseModel):
    """Server-side timings, all in seconds"""
    reformulation_time_seconds: Optional[float] = None
    search_time_seconds: Optional[float] = None
    context_time_seconds: Optional[float] = None
    generation_time_seconds: Optional[float] = None
    total_time_seconds: Optional[float] = None


class CompleteEvent(BaseModel):
    """Final authoritative result of a query"""
    id: Optional[str] = None
    query: Optional[str] = None
    answer: str
    sources: Optional[List[ApiSource]] = None
    performance: Performance = Field(default_factory=Performance)
    timestamp: Optional[float] = None
    conversation_id: Optional[str] = None
    user_message_id: Optional[str] = None
    ia_message_id: Optional[str] = None

    def to_sources(self) -> Optional[List[Source]]:
        if self.sources is None:
            return None
        return [source.to_source() for source in self.sources]


class ErrorEvent(BaseModel):
    """Failure reported by the server"""
    error: str = "Unknown error"
    id: Optional[str] = None
    query: Optional[str] = None
    timestamp: Optional[float] = None


EVENT_MODELS = {
    "start": StartEvent,
    "progress": ProgressEvent,
    "chunk": ChunkEvent,
    "complete": CompleteEvent,
    "error": ErrorEvent,
}
