"""
REST client for the OHADA assistant API
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from comptax_chat.models.api import (
    ApiInfo,
    HistoryResponse,
    MessageIds,
    QueryRequest,
    QueryResponse,
    QueryStatus,
    ServerConversation,
)
from comptax_chat.models.chat import Conversation, Message, RetrievalOptions
from comptax_chat.services.auth import TokenProvider
from comptax_chat.services.config import Settings
from comptax_chat.services.errors import ApiError

logger = structlog.get_logger()

DEFAULT_ERROR_MESSAGE = "An unexpected error occurred. Please try again."
STATUS_ERROR_MESSAGES = {
    400: "Invalid data. Please check your information.",
    401: "Invalid credentials or session expired.",
}


def api_error_from_response(response: httpx.Response) -> ApiError:
    """Pick the most helpful message out of an error response"""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for field in ("detail", "message"):
            if isinstance(body.get(field), str) and body[field]:
                return ApiError(body[field], status_code=response.status_code)

    message = STATUS_ERROR_MESSAGES.get(response.status_code, DEFAULT_ERROR_MESSAGE)
    return ApiError(message, status_code=response.status_code)


def convert_server_conversation(server: ServerConversation) -> Conversation:
    """Map a server conversation to a local one with fresh local ids"""
    messages = []
    for server_message in server.messages or []:
        metadata = server_message.metadata
        sources = None
        if metadata and metadata.sources is not None:
            sources = [source.to_source() for source in metadata.sources]
        messages.append(Message(
            server_id=server_message.message_id,
            content=server_message.content,
            role="user" if server_message.is_user else "assistant",
            timestamp=server_message.created_at or datetime.now(),
            sources=sources,
            feedback=metadata.feedback if metadata else None,
        ))

    return Conversation(
        server_id=server.conversation_id,
        title=server.title or "Nouvelle conversation",
        messages=messages,
        created_at=server.created_at or datetime.now(),
        updated_at=server.updated_at or datetime.now(),
        synced=True,
    )


class OhadaApiClient:
    """Conversation CRUD, feedback and non-streaming queries"""

    def __init__(
        self,
        settings: Settings,
        token_provider: Optional[TokenProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.token_provider = token_provider or TokenProvider()
        self.http_client = client or httpx.AsyncClient(
            base_url=settings.API_URL,
            timeout=settings.REQUEST_TIMEOUT
        )

    def _headers(self, auth: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if auth:
            token = self.token_provider.get_token()
            if not token:
                raise ApiError("No authentication token available", status_code=401)
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        auth: bool = True,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await self.http_client.request(
                method,
                path,
                headers=self._headers(auth),
                json=json,
                params=params
            )
        except httpx.HTTPError as e:
            logger.error("API request failed", method=method, path=path, error=str(e))
            raise ApiError(DEFAULT_ERROR_MESSAGE) from e

        if response.is_error:
            error = api_error_from_response(response)
            logger.error(
                "API request rejected",
                method=method,
                path=path,
                status=response.status_code,
                error=str(error)
            )
            raise error

        if not response.content:
            return None
        return response.json()

    def _parse(self, model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error("Unexpected API response", model=model.__name__, error=str(e))
            raise ApiError(DEFAULT_ERROR_MESSAGE) from e

    async def fetch_conversations(self) -> List[Conversation]:
        data = await self._request("GET", "/conversations")
        return [
            convert_server_conversation(self._parse(ServerConversation, item))
            for item in data or []
        ]

    async def fetch_conversation(self, server_id: str) -> Conversation:
        data = await self._request("GET", f"/conversations/{server_id}")
        return convert_server_conversation(self._parse(ServerConversation, data))

    async def create_conversation(self, title: str) -> str:
        """
        Create a conversation on the server

        Returns:
            The server-assigned conversation id
        """
        data = await self._request("POST", "/conversations", json={"title": title})
        if not isinstance(data, dict) or not data.get("conversation_id"):
            raise ApiError(DEFAULT_ERROR_MESSAGE)
        return data["conversation_id"]

    async def update_conversation_title(self, server_id: str, title: str) -> None:
        await self._request("PUT", f"/conversations/{server_id}", json={"title": title})

    async def delete_conversation(self, server_id: str) -> None:
        await self._request("DELETE", f"/conversations/{server_id}")

    async def add_message(self, server_id: str, content: str) -> MessageIds:
        data = await self._request(
            "POST",
            f"/conversations/{server_id}/messages",
            json={"content": content}
        )
        return self._parse(MessageIds, data)

    async def create_conversation_with_message(self, content: str, title: str) -> MessageIds:
        data = await self._request(
            "POST",
            "/conversations/messages",
            json={
                "content": content,
                "conversation_id": None,
                "conversation_title": title
            }
        )
        return self._parse(MessageIds, data)

    async def add_feedback(self, message_server_id: str, rating: int, comment: Optional[str] = None) -> None:
        await self._request(
            "POST",
            f"/conversations/messages/{message_server_id}/feedback",
            json={"rating": rating, "comment": comment}
        )

    async def query(self, text: str, options: Optional[RetrievalOptions] = None) -> QueryResponse:
        """Ask a question without streaming"""
        options = options or RetrievalOptions(
            n_results=self.settings.DEFAULT_N_RESULTS,
            include_sources=self.settings.INCLUDE_SOURCES
        )
        body = QueryRequest(query=text, **options.model_dump())
        auth = self.token_provider.get_token() is not None
        data = await self._request("POST", "/query", auth=auth, json=body.model_dump())
        return self._parse(QueryResponse, data)

    async def get_api_info(self) -> ApiInfo:
        data = await self._request("GET", "/", auth=False)
        return self._parse(ApiInfo, data)

    async def get_history(self, limit: int = 10) -> HistoryResponse:
        auth = self.token_provider.get_token() is not None
        data = await self._request("GET", "/history", auth=auth, params={"limit": limit})
        return self._parse(HistoryResponse, data)

    async def get_query_status(self, query_id: str) -> QueryStatus:
        data = await self._request("GET", f"/status/{query_id}", auth=False)
        return self._parse(QueryStatus, data)

    async def close(self):
        """Clean up resources"""
        await self.http_client.aclose()
