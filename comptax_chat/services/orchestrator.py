"""
Query orchestration: the entry point that turns a question into a stream session
"""
import asyncio
from typing import Dict, Iterable, List, Optional

import httpx
import structlog

from comptax_chat.models.chat import Conversation, RetrievalOptions
from comptax_chat.services.auth import TokenProvider
from comptax_chat.services.config import Settings
from comptax_chat.services.conversations import ConversationManager, derive_title
from comptax_chat.services.errors import ComptaxError
from comptax_chat.services.reconciler import ConversationReconciler
from comptax_chat.services.session import SessionListener, StreamSession, StreamState
from comptax_chat.services.transport import StreamHandle, StreamTransport

logger = structlog.get_logger()


class SessionHandle:
    """What a caller holds on to after `submit`"""

    def __init__(self, session: StreamSession, task: asyncio.Task):
        self.session = session
        self._task = task

    def cancel(self) -> None:
        """Cancel the query; safe to call any number of times"""
        self.session.cancel()

    async def wait(self) -> StreamState:
        """Wait until the session has ended and its conversation is persisted"""
        return await asyncio.shield(self._task)


class QueryOrchestrator(SessionListener):
    """
    Wires transport, session and reconciler together for each query

    At most one live session exists per conversation: submitting again
    cancels the previous session first, so two streams never write into the
    same transcript.
    """

    def __init__(
        self,
        settings: Settings,
        manager: ConversationManager,
        transport: Optional[StreamTransport] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        self.settings = settings
        self.manager = manager
        self.store = manager.store
        self.transport = transport if transport is not None else StreamTransport(settings)
        self.token_provider = token_provider or manager.token_provider
        self.reconciler = ConversationReconciler(self.store, settings)
        self.last_error: Optional[ComptaxError] = None
        self._sessions: Dict[str, StreamSession] = {}
        self._tasks: List[asyncio.Task] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def active_session(self, conversation_id: str) -> Optional[StreamSession]:
        session = self._sessions.get(conversation_id)
        return session if session is not None and not session.is_terminal else None

    async def submit(
        self,
        text: str,
        conversation_id: Optional[str] = None,
        options: Optional[RetrievalOptions] = None,
        listeners: Optional[Iterable[SessionListener]] = None,
    ) -> SessionHandle:
        """
        Send a question and start streaming its answer

        Args:
            text: The question
            conversation_id: Target conversation; defaults to the current
                one, and a new one is created when there is none
            options: Retrieval options; settings defaults when omitted
            listeners: Extra lifecycle listeners, called after the transcript
                has been updated

        Returns:
            A handle to cancel or await the session
        """
        text = text.strip()
        if not text:
            raise ValueError("Query text must not be empty")

        conversation = await self._resolve_conversation(text, conversation_id)

        previous = self.active_session(conversation.id)
        retried = self.reconciler.find_retried_message(conversation.id, text, previous)
        placeholder_id = None
        if previous is not None:
            logger.info(
                "Cancelling previous session for conversation",
                conversation_id=conversation.id,
                session_id=previous.id,
                retry=retried is not None
            )
            if retried is not None:
                # the retry reuses the question and its placeholder
                self.reconciler.hand_over_placeholder(previous)
                placeholder_id = previous.placeholder_message_id
            previous.cancel()

        if retried is not None:
            logger.info("Duplicate user message skipped", conversation_id=conversation.id)
            user_message = retried
        else:
            user_message = self.reconciler.add_user_message(conversation.id, text)
        options = options or RetrievalOptions(
            n_results=self.settings.DEFAULT_N_RESULTS,
            include_sources=self.settings.INCLUDE_SOURCES
        )
        token = self.token_provider.get_token()

        session = StreamSession(
            conversation_id=conversation.id,
            user_message_id=user_message.id,
            query=text,
            listeners=[self.reconciler, self, *(listeners or [])],
            placeholder_message_id=placeholder_id,
        )
        self._sessions[conversation.id] = session
        self.last_error = None

        logger.info(
            "Submitting query",
            session_id=session.id,
            conversation_id=conversation.id,
            query_length=len(text),
            authenticated=token is not None
        )
        session.start()
        handle = self.transport.open(
            self.build_stream_url(text, options, conversation),
            self.build_headers(token),
            on_frame=session.handle_frame,
            on_transport_error=session.handle_transport_error,
            on_transport_end=session.handle_transport_end,
        )
        session.attach(handle)

        task = asyncio.get_running_loop().create_task(self._supervise(session, handle))
        self._tasks.append(task)
        task.add_done_callback(self._forget_task)
        return SessionHandle(session, task)

    def cancel(self, conversation_id: Optional[str] = None) -> bool:
        """Cancel the live session of a conversation (current one by default)"""
        conversation_id = conversation_id or self.store.current_id
        session = self.active_session(conversation_id) if conversation_id else None
        return session.cancel() if session is not None else False

    def build_stream_url(self, text: str, options: RetrievalOptions, conversation: Conversation) -> str:
        params = {
            "query": text,
            "include_sources": "true" if options.include_sources else "false",
            "n_results": str(options.n_results),
        }
        if options.partie is not None:
            params["partie"] = str(options.partie)
        if options.chapitre is not None:
            params["chapitre"] = str(options.chapitre)
        if conversation.server_id:
            params["save_to_conversation"] = conversation.server_id
        else:
            params["create_conversation"] = "true"
        return str(httpx.URL(self.settings.get_stream_url(), params=params))

    def build_headers(self, token: Optional[str]) -> Dict[str, str]:
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def on_complete(self, session: StreamSession) -> None:
        self._release(session)

    def on_failure(self, session: StreamSession) -> None:
        self.last_error = session.error
        self._release(session)

    def on_cancel(self, session: StreamSession) -> None:
        self._release(session)

    async def aclose(self) -> None:
        """Cancel every live session, as a user cancel would, and close the transport"""
        for session in list(self._sessions.values()):
            session.cancel()
        if self._tasks:
            await asyncio.wait(list(self._tasks))
        await self.transport.close()

    async def _resolve_conversation(self, text: str, conversation_id: Optional[str]) -> Conversation:
        if conversation_id is not None:
            conversation = self.store.get(conversation_id)
            if conversation is None:
                raise ValueError(f"Unknown conversation {conversation_id}")
            return conversation

        if self.store.current is not None:
            return self.store.current

        title = derive_title(text, self.settings.TITLE_MAX_LENGTH, self.settings.TITLE_WORD_OVERFLOW)
        conversation = await self.manager.create_conversation(title, sync=False, greeting=False)
        logger.info("Conversation created for query", conversation_id=conversation.id, title=title)
        return conversation

    async def _supervise(self, session: StreamSession, handle: StreamHandle) -> StreamState:
        state = await session.wait()
        await handle.wait()
        if state == StreamState.COMPLETE and self.settings.COMPLETION_GRACE_PERIOD:
            await asyncio.sleep(self.settings.COMPLETION_GRACE_PERIOD)
        try:
            await self.manager.persist()
        except Exception as e:
            logger.error("Failed to persist conversations", session_id=session.id, error=str(e))
        return state

    def _release(self, session: StreamSession) -> None:
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
