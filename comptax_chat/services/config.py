"""
Configuration settings for the ComptaX chat client
"""
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_prefix="COMPTAX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Backend
    API_URL: str = Field(default="http://localhost:8080")
    STREAM_PATH: str = Field(default="/stream")
    API_TOKEN: Optional[str] = Field(default=None)

    # Retrieval defaults
    DEFAULT_N_RESULTS: int = Field(default=5, ge=1, le=50)
    INCLUDE_SOURCES: bool = Field(default=True)

    # Transport
    TRANSPORT_STRATEGY: Literal["auto", "header", "query_token"] = Field(default="auto")
    ALLOW_CUSTOM_HEADERS: bool = Field(default=True)
    QUERY_TOKEN_PARAM: str = Field(default="token")
    CONNECT_TIMEOUT: float = Field(default=10.0)
    STREAM_TIMEOUT: float = Field(default=120.0)  # max silence between two reads
    REQUEST_TIMEOUT: float = Field(default=15.0)

    # Conversations
    TITLE_MAX_LENGTH: int = Field(default=30, ge=1)
    TITLE_WORD_OVERFLOW: int = Field(default=20, ge=0)
    DEFAULT_CONVERSATION_TITLE: str = Field(default="Nouvelle conversation")
    GREETING_MESSAGE: str = Field(
        default="Bonjour ! Comment puis-je vous aider avec la comptabilité OHADA aujourd'hui ?"
    )
    COMPLETION_GRACE_PERIOD: float = Field(default=0.0, ge=0.0)

    # Degraded-answer texts
    INTERRUPTED_BY_USER: str = Field(default="(interrupted by user)")
    INTERRUPTED_BY_ERROR: str = Field(default="(interrupted by error)")
    APOLOGY_MESSAGE: str = Field(
        default="Sorry, an error occurred while generating the answer. Please try again."
    )

    # Local persistence
    STORAGE_BACKEND: Literal["memory", "file", "redis"] = Field(default="memory")
    STORAGE_PATH: Path = Field(default=Path.home() / ".comptax" / "conversations.json")
    STORAGE_KEY: str = Field(default="comptax_conversations")
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=False)

    @field_validator("API_URL")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Join paths without doubled slashes"""
        return v.rstrip("/")

    @field_validator("STREAM_PATH")
    @classmethod
    def ensure_leading_slash(cls, v):
        return v if v.startswith("/") else f"/{v}"

    def get_stream_url(self) -> str:
        """Get the stream endpoint URL"""
        return f"{self.API_URL}{self.STREAM_PATH}"

    def resolve_transport_strategy(self) -> str:
        """Pick the transport once, from the environment's header capability"""
        if self.TRANSPORT_STRATEGY != "auto":
            return self.TRANSPORT_STRATEGY
        return "header" if self.ALLOW_CUSTOM_HEADERS else "query_token"
