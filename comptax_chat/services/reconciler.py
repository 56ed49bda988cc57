"""
Merges stream session output into conversation transcripts
"""
from typing import List, Optional, Set

import structlog

from comptax_chat.models.chat import Conversation, Message, Source
from comptax_chat.services.config import Settings
from comptax_chat.services.conversations import ConversationStore, derive_title
from comptax_chat.services.session import SessionListener, StreamSession

logger = structlog.get_logger()


def sort_sources_for_display(sources: Optional[List[Source]]) -> List[Source]:
    """Most relevant first; stored order is left untouched"""
    return sorted(sources or [], key=lambda source: source.relevance_score, reverse=True)


class ConversationReconciler(SessionListener):
    """
    Keeps a conversation's assistant placeholder in step with its session

    Every update finds its target by local id, so a rename, reorder or
    deletion happening while a stream is in flight cannot redirect it.
    """

    def __init__(self, store: ConversationStore, settings: Settings):
        self.store = store
        self.settings = settings
        self._handed_over: Set[str] = set()

    def add_user_message(self, conversation_id: str, text: str) -> Message:
        """
        Insert the question that starts a query

        Retried submissions are folded: when the conversation's last message
        is already this user text it is reused instead of duplicated. Only
        the last message is checked, so asking the same question again later
        in the conversation still works.
        """
        conversation = self._conversation(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation {conversation_id}")

        last = conversation.last_message
        if last is not None and last.role == "user" and last.content == text:
            logger.info("Duplicate user message skipped", conversation_id=conversation_id)
            return last

        first_user_message = not conversation.has_user_message()
        message = conversation.append_message(Message(content=text, role="user"))
        if first_user_message and not conversation.title_renamed:
            conversation.title = derive_title(
                text, self.settings.TITLE_MAX_LENGTH, self.settings.TITLE_WORD_OVERFLOW
            )
        return message

    def find_retried_message(
        self,
        conversation_id: str,
        text: str,
        live_session: Optional[StreamSession] = None,
    ) -> Optional[Message]:
        """
        Return the user message a resubmission of `text` would duplicate

        The still-empty placeholder of a live session does not count as the
        last message, so a double submit is recognised while the first stream
        is connecting.
        """
        conversation = self._conversation(conversation_id)
        if conversation is None:
            return None

        messages = conversation.messages
        if live_session is not None and messages:
            last = messages[-1]
            if last.id == live_session.placeholder_message_id and not last.content:
                messages = messages[:-1]
        if messages and messages[-1].role == "user" and messages[-1].content == text:
            return messages[-1]
        return None

    def hand_over_placeholder(self, session: StreamSession) -> None:
        """Leave the placeholder of `session` untouched when it ends; a new session takes it over"""
        self._handed_over.add(session.id)

    def on_session_start(self, session: StreamSession) -> None:
        conversation = self._conversation(session.conversation_id)
        if conversation is None:
            return
        existing = conversation.get_message(session.placeholder_message_id)
        if existing is not None:
            existing.content = ""
            existing.sources = None
            return
        placeholder = Message(id=session.placeholder_message_id, content="", role="assistant")
        conversation.insert_message_after(session.user_message_id, placeholder)

    def on_chunk(self, session: StreamSession, text: str) -> None:
        message = self._placeholder(session)
        if message is not None:
            message.content = session.text

    def on_complete(self, session: StreamSession) -> None:
        conversation = self._conversation(session.conversation_id)
        message = self._placeholder(session)
        if conversation is None or message is None:
            return

        message.content = session.text
        message.sources = session.sources
        if session.server_message_id:
            message.server_id = session.server_message_id

        if session.server_user_message_id and session.user_message_id:
            user_message = conversation.get_message(session.user_message_id)
            if user_message is not None and user_message.server_id is None:
                user_message.server_id = session.server_user_message_id

        if session.server_conversation_id and not conversation.server_id:
            conversation.server_id = session.server_conversation_id
        if conversation.server_id:
            conversation.synced = True
        conversation.touch()

    def on_failure(self, session: StreamSession) -> None:
        self._close_degraded(session, self.settings.INTERRUPTED_BY_ERROR, self.settings.APOLOGY_MESSAGE)

    def on_cancel(self, session: StreamSession) -> None:
        self._close_degraded(session, self.settings.INTERRUPTED_BY_USER)

    def _close_degraded(self, session: StreamSession, annotation: str, fallback: str = "") -> None:
        if session.id in self._handed_over:
            self._handed_over.discard(session.id)
            return
        # a partial answer is kept rather than removed
        message = self._placeholder(session)
        if message is None:
            return
        body = session.text.rstrip() or fallback
        message.content = f"{body} {annotation}" if body else annotation

    def _conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self.store.get(conversation_id)
        if conversation is None:
            logger.warning("Conversation no longer exists", conversation_id=conversation_id)
        return conversation

    def _placeholder(self, session: StreamSession) -> Optional[Message]:
        conversation = self._conversation(session.conversation_id)
        if conversation is None:
            return None
        message = conversation.get_message(session.placeholder_message_id)
        if message is None:
            logger.warning(
                "Placeholder message not found",
                session_id=session.id,
                conversation_id=session.conversation_id,
                message_id=session.placeholder_message_id
            )
        return message
