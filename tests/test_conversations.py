"""Tests for conversation titles, the store and the conversation manager."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from comptax_chat.models.api import MessageIds
from comptax_chat.models.chat import Conversation
from comptax_chat.services.auth import StaticTokenProvider
from comptax_chat.services.conversations import ConversationManager, ConversationStore, derive_title
from comptax_chat.services.errors import ApiError
from comptax_chat.services.storage import MemoryConversationSink


@pytest.mark.parametrize("text,expected", [
    ("Comment fonctionne l'amortissement dégressif ?", "Comment fonctionne l'amortissement..."),
    ("Qu'est-ce qu'une provision ?", "Qu'est-ce qu'une provision ?"),
    ("   Bilan   et   compte de résultat   ", "Bilan et compte de résultat"),
    ("Quelles sont les obligations comptables des entreprises ?",
     "Quelles sont les obligations comptables..."),
])
def test_derive_title(text, expected):
    assert derive_title(text) == expected


def test_derive_title_without_spaces():
    assert derive_title("x" * 80) == "x" * 30 + "..."


def test_store_keeps_display_order():
    store = ConversationStore()
    first = store.add(Conversation(title="Premier"))
    second = store.add(Conversation(title="Second"))
    store.add(Conversation(title="Dernier"), front=False)

    assert [c.title for c in store.list()] == ["Second", "Premier", "Dernier"]
    assert store.get(first.id) is first

    store.select(second.id)
    store.remove(second.id)

    assert second.id not in store
    assert store.current_id == first.id
    assert len(store) == 2


def test_store_find_by_server_id():
    store = ConversationStore()
    conversation = store.add(Conversation(server_id="srv-1"))

    assert store.find_by_server_id("srv-1") is conversation
    assert store.find_by_server_id("srv-2") is None


@pytest.fixture
def api():
    api = MagicMock()
    api.fetch_conversations = AsyncMock(return_value=[])
    api.create_conversation = AsyncMock(return_value="srv-new")
    api.update_conversation_title = AsyncMock()
    api.delete_conversation = AsyncMock()
    api.add_message = AsyncMock(return_value=MessageIds(user_message_id="srv-msg-9"))
    api.create_conversation_with_message = AsyncMock(
        return_value=MessageIds(conversation_id="srv-new", user_message_id="srv-msg-1")
    )
    api.add_feedback = AsyncMock()
    return api


@pytest.fixture
def signed_in(settings, store, api):
    return ConversationManager(settings, store=store, api=api, token_provider=StaticTokenProvider("secret"))


async def test_load_anonymous_creates_greeting(manager, settings):
    conversations = await manager.load()

    assert len(conversations) == 1
    assert conversations[0].messages[0].role == "assistant"
    assert conversations[0].messages[0].content == settings.GREETING_MESSAGE
    assert manager.store.current_id == conversations[0].id


async def test_load_from_local_sink(settings, store):
    sink = MemoryConversationSink()
    saved = Conversation(title="Sauvegardée")
    await sink.save_all([saved])
    manager = ConversationManager(settings, store=store, sink=sink)

    await manager.load()

    assert [c.id for c in store.list()] == [saved.id]


async def test_load_from_server(signed_in, api):
    remote = Conversation(title="Distante", server_id="srv-1", synced=True)
    api.fetch_conversations.return_value = [remote]

    await signed_in.load()

    assert signed_in.store.list() == [remote]


async def test_load_falls_back_when_server_fails(signed_in, api):
    api.fetch_conversations.side_effect = ApiError("down")

    conversations = await signed_in.load()

    assert len(conversations) == 1
    assert conversations[0].server_id is None


async def test_create_conversation_syncs(signed_in, api):
    conversation = await signed_in.create_conversation("Fiscalité")

    assert conversation.server_id == "srv-new"
    assert conversation.synced is True
    assert signed_in.store.current_id == conversation.id
    api.create_conversation.assert_awaited_once_with("Fiscalité")


async def test_create_conversation_kept_when_server_fails(signed_in, api):
    api.create_conversation.side_effect = ApiError("down")

    conversation = await signed_in.create_conversation("Fiscalité")

    assert conversation.id in signed_in.store
    assert conversation.server_id is None


async def test_rename(signed_in, api):
    conversation = await signed_in.create_conversation("Ancien titre")

    await signed_in.rename(conversation.id, "Nouveau titre")

    assert conversation.title == "Nouveau titre"
    assert conversation.title_renamed is True
    api.update_conversation_title.assert_awaited_once_with("srv-new", "Nouveau titre")


async def test_delete(signed_in, api):
    conversation = await signed_in.create_conversation("À supprimer")

    assert await signed_in.delete(conversation.id) is True
    assert await signed_in.delete(conversation.id) is False
    assert conversation.id not in signed_in.store
    api.delete_conversation.assert_awaited_once_with("srv-new")


async def test_add_message_creates_server_conversation(signed_in, api, store):
    conversation = signed_in.new_local_conversation()
    store.add(conversation)

    message = await signed_in.add_message(conversation.id, "Comment fonctionne l'amortissement dégressif ?")

    assert conversation.title == "Comment fonctionne l'amortissement..."
    assert conversation.server_id == "srv-new"
    assert message.server_id == "srv-msg-1"
    api.create_conversation_with_message.assert_awaited_once_with(
        "Comment fonctionne l'amortissement dégressif ?", "Comment fonctionne l'amortissement..."
    )


async def test_add_message_skips_duplicate(manager):
    conversation = await manager.create_conversation()

    first = await manager.add_message(conversation.id, "Question")
    second = await manager.add_message(conversation.id, "Question")
    forced = await manager.add_message(conversation.id, "Question", force=True)

    assert first is second
    assert forced is not first
    assert [m.content for m in conversation.messages].count("Question") == 2


async def test_add_message_kept_when_server_fails(signed_in, api):
    conversation = await signed_in.create_conversation("Fiscalité")
    api.add_message.side_effect = ApiError("down")

    message = await signed_in.add_message(conversation.id, "Question")

    assert conversation.last_message is message
    assert message.server_id is None


async def test_add_feedback(signed_in, api):
    conversation = await signed_in.create_conversation("Fiscalité")
    message = await signed_in.add_message(conversation.id, "Réponse", role="assistant")
    message.server_id = "srv-msg-2"

    await signed_in.add_feedback(conversation.id, message.id, 5, "Très clair")

    assert message.feedback.rating == 5
    api.add_feedback.assert_awaited_once_with("srv-msg-2", 5, "Très clair")


async def test_refresh_keeps_local_ids_and_selection(signed_in, api):
    conversation = await signed_in.create_conversation("Fiscalité")
    other = Conversation(title="Autre", server_id="srv-other", synced=True)
    fresh = Conversation(title="Fiscalité (serveur)", server_id="srv-new", synced=True)
    api.fetch_conversations.return_value = [other, fresh]

    await signed_in.refresh()

    assert fresh.id == conversation.id
    assert signed_in.store.current_id == conversation.id
    assert signed_in.store.current.title == "Fiscalité (serveur)"


async def test_persist_keeps_only_unsynced_when_signed_in(signed_in, api):
    await signed_in.create_conversation("Synchronisée")
    api.create_conversation.side_effect = ApiError("down")
    local = await signed_in.create_conversation("Locale")

    await signed_in.persist()

    assert [c.id for c in await signed_in.sink.load_all()] == [local.id]


def test_manager_uses_the_given_empty_store(settings):
    store = ConversationStore()
    sink = MemoryConversationSink()

    manager = ConversationManager(settings, store=store, sink=sink)

    assert manager.store is store
    assert manager.sink is sink


async def test_created_conversation_visible_in_given_store(settings):
    store = ConversationStore()
    manager = ConversationManager(settings, store=store)

    conversation = await manager.create_conversation("Fiscalité")

    assert store.current is conversation
