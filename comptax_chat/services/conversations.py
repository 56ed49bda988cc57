"""
Conversation store and local-first conversation management
"""
from typing import Dict, List, Optional

import structlog

from comptax_chat.models.chat import Conversation, Feedback, Message, Role
from comptax_chat.services.api_client import OhadaApiClient
from comptax_chat.services.auth import TokenProvider
from comptax_chat.services.config import Settings
from comptax_chat.services.errors import ApiError
from comptax_chat.services.storage import ConversationSink, MemoryConversationSink

logger = structlog.get_logger()


def derive_title(text: str, max_length: int = 30, word_overflow: int = 20) -> str:
    """
    Build a conversation title from the first user message

    The text is cut near `max_length`, finishing the word in progress (up to
    `word_overflow` extra characters), and an ellipsis marks the cut.
    """
    text = " ".join(text.split())
    if len(text) <= max_length:
        return text

    if text[max_length - 1] == " " or text[max_length] == " ":
        cut = max_length
    else:
        next_space = text.find(" ", max_length, max_length + word_overflow + 1)
        if next_space != -1:
            cut = next_space
        else:
            last_space = text.rfind(" ", 0, max_length)
            cut = last_space if last_space > 0 else max_length
    title = text[:cut].rstrip(" ,;:.!?")
    if not title:
        title = text[:max_length]
    return f"{title}..."


class ConversationStore:
    """
    In-memory conversations keyed by local id

    Display order is kept separately from the map so that reordering or
    renaming never changes how a conversation or message is found.
    """

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._order: List[str] = []
        self.current_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    @property
    def current(self) -> Optional[Conversation]:
        if self.current_id is None:
            return None
        return self._conversations.get(self.current_id)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def find_by_server_id(self, server_id: str) -> Optional[Conversation]:
        return next(
            (c for c in self._conversations.values() if c.server_id == server_id),
            None
        )

    def list(self) -> List[Conversation]:
        return [self._conversations[cid] for cid in self._order]

    def add(self, conversation: Conversation, front: bool = True) -> Conversation:
        if conversation.id not in self._conversations:
            if front:
                self._order.insert(0, conversation.id)
            else:
                self._order.append(conversation.id)
        self._conversations[conversation.id] = conversation
        return conversation

    def remove(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.pop(conversation_id, None)
        if conversation is not None:
            self._order.remove(conversation_id)
            if self.current_id == conversation_id:
                self.current_id = self._order[0] if self._order else None
        return conversation

    def replace_all(self, conversations: List[Conversation]) -> None:
        self._conversations = {c.id: c for c in conversations}
        self._order = [c.id for c in conversations]
        if self.current_id not in self._conversations:
            self.current_id = self._order[0] if self._order else None

    def select(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            self.current_id = conversation_id
        return conversation


class ConversationManager:
    """
    Local-first conversation management

    Every change is applied to the store first; the server copy is updated
    afterwards when a credential is available. Remote failures are logged
    and never roll local state back.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[ConversationStore] = None,
        sink: Optional[ConversationSink] = None,
        api: Optional[OhadaApiClient] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else ConversationStore()
        self.sink = sink if sink is not None else MemoryConversationSink()
        self.api = api
        self.token_provider = token_provider or TokenProvider()

    @property
    def authenticated(self) -> bool:
        return self.token_provider.get_token() is not None

    @property
    def can_sync(self) -> bool:
        return self.api is not None and self.authenticated

    def new_local_conversation(self, title: Optional[str] = None, greeting: bool = True) -> Conversation:
        """Create a conversation object without registering it"""
        conversation = Conversation(title=title or self.settings.DEFAULT_CONVERSATION_TITLE)
        if greeting:
            conversation.append_message(Message(content=self.settings.GREETING_MESSAGE, role="assistant"))
        return conversation

    async def load(self) -> List[Conversation]:
        """
        Populate the store: from the server when signed in, else from the
        local sink, else a single greeting conversation
        """
        conversations: List[Conversation] = []
        if self.can_sync:
            try:
                conversations = await self.api.fetch_conversations()
            except ApiError as e:
                logger.error("Failed to fetch conversations from server", error=str(e))

        if not conversations:
            conversations = await self.sink.load_all()
        if not conversations:
            conversations = [self.new_local_conversation()]

        self.store.replace_all(conversations)
        logger.info("Conversations loaded", count=len(conversations))
        return conversations

    async def create_conversation(
        self,
        title: Optional[str] = None,
        sync: bool = True,
        greeting: bool = True,
    ) -> Conversation:
        """Create, register and select a new conversation"""
        conversation = self.new_local_conversation(title, greeting=greeting)
        self.store.add(conversation)
        self.store.select(conversation.id)

        if sync and self.can_sync:
            try:
                conversation.server_id = await self.api.create_conversation(conversation.title)
                conversation.synced = True
            except ApiError as e:
                logger.error("Failed to create conversation on server", error=str(e))
        return conversation

    async def select(self, conversation_id: str) -> Optional[Conversation]:
        """Select a conversation and refresh it from the server when possible"""
        conversation = self.store.select(conversation_id)
        if conversation is not None and conversation.server_id and self.can_sync:
            conversation = await self.sync_conversation(conversation_id) or conversation
        return conversation

    async def sync_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Replace a conversation with the server copy, keeping its local id"""
        conversation = self.store.get(conversation_id)
        if conversation is None or not conversation.server_id or not self.can_sync:
            return None
        try:
            fresh = await self.api.fetch_conversation(conversation.server_id)
        except ApiError as e:
            logger.error("Failed to sync conversation", conversation_id=conversation_id, error=str(e))
            return None
        fresh.id = conversation.id
        self.store.add(fresh)
        return fresh

    async def refresh(self) -> List[Conversation]:
        """Reload the list from the server, keeping the selection by server id"""
        if not self.can_sync:
            return self.store.list()
        current = self.store.current
        try:
            conversations = await self.api.fetch_conversations()
        except ApiError as e:
            logger.error("Failed to refresh conversations", error=str(e))
            return self.store.list()

        # server-side copies do not have our local ids yet
        for fresh in conversations:
            local = self.store.find_by_server_id(fresh.server_id) if fresh.server_id else None
            if local is not None:
                fresh.id = local.id
        self.store.replace_all(conversations)
        if current is not None and current.server_id:
            match = self.store.find_by_server_id(current.server_id)
            if match is not None:
                self.store.select(match.id)
        return conversations

    async def rename(self, conversation_id: str, title: str) -> Optional[Conversation]:
        conversation = self.store.get(conversation_id)
        if conversation is None:
            return None
        conversation.title = title
        conversation.title_renamed = True
        conversation.touch()

        if conversation.server_id and self.can_sync:
            try:
                await self.api.update_conversation_title(conversation.server_id, title)
            except ApiError as e:
                logger.error("Failed to rename conversation on server", conversation_id=conversation_id, error=str(e))
        return conversation

    async def delete(self, conversation_id: str) -> bool:
        conversation = self.store.remove(conversation_id)
        if conversation is None:
            return False
        await self.sink.delete(conversation_id)

        if conversation.server_id and self.can_sync:
            try:
                await self.api.delete_conversation(conversation.server_id)
            except ApiError as e:
                logger.error("Failed to delete conversation on server", conversation_id=conversation_id, error=str(e))
        return True

    async def add_message(
        self,
        conversation_id: str,
        content: str,
        role: Role = "user",
        force: bool = False,
    ) -> Optional[Message]:
        """
        Append a message outside of a stream and push it to the server

        Unless `force` is set, a message identical to the current last one
        (same role and content) is not added twice.
        """
        conversation = self.store.get(conversation_id)
        if conversation is None:
            return None

        last = conversation.last_message
        if not force and last is not None and last.role == role and last.content == content:
            logger.info("Duplicate message skipped", conversation_id=conversation_id)
            return last

        first_user_message = role == "user" and not conversation.has_user_message()
        message = conversation.append_message(Message(content=content, role=role))
        if first_user_message and not conversation.title_renamed:
            conversation.title = derive_title(
                content, self.settings.TITLE_MAX_LENGTH, self.settings.TITLE_WORD_OVERFLOW
            )

        if not self.can_sync:
            return message
        try:
            if conversation.server_id:
                ids = await self.api.add_message(conversation.server_id, content)
                if first_user_message and not conversation.title_renamed:
                    await self.api.update_conversation_title(conversation.server_id, conversation.title)
            else:
                ids = await self.api.create_conversation_with_message(content, conversation.title)
                conversation.server_id = ids.conversation_id
                conversation.synced = True
            message.server_id = ids.user_message_id if role == "user" else ids.ia_message_id
        except ApiError as e:
            logger.error("Failed to sync message with server", conversation_id=conversation_id, error=str(e))
        return message

    async def add_feedback(
        self,
        conversation_id: str,
        message_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> Optional[Message]:
        conversation = self.store.get(conversation_id)
        message = conversation.get_message(message_id) if conversation else None
        if message is None:
            return None
        message.feedback = Feedback(rating=rating, comment=comment)

        if message.server_id and self.can_sync:
            try:
                await self.api.add_feedback(message.server_id, rating, comment)
            except ApiError as e:
                logger.error("Failed to send feedback", message_id=message_id, error=str(e))
        return message

    async def persist(self) -> None:
        """Write conversations to the local sink"""
        await self.sink.save_all(self.store.list(), authenticated=self.authenticated)
