"""Tests for the SQL conversation store — scoping, eviction, compare-and-swap."""

import uuid

import pytest

from chatrelay.core.errors import PersistenceError
from chatrelay.models.conversation import DEFAULT_TITLE, Conversation
from chatrelay.models.message import ChatMessage, MessageRole
from chatrelay.services.conversations import SqlConversationStore, generate_title


def _owner() -> str:
    return f"owner-{uuid.uuid4().hex[:10]}"


def _user(text: str) -> ChatMessage:
    return ChatMessage(role=MessageRole.USER, content=text)


def _assistant(text: str) -> ChatMessage:
    return ChatMessage(role=MessageRole.ASSISTANT, content=text)


class TestGenerateTitle:
    def test_short_message_used_verbatim(self):
        assert generate_title("Explain quantum computing") == "Explain quantum computing"

    def test_long_message_truncated_to_six_words(self):
        title = generate_title("one two three four five six seven eight")
        assert title == "one two three four five six..."

    def test_blank_message_gets_default(self):
        assert generate_title("") == DEFAULT_TITLE
        assert generate_title("   ") == DEFAULT_TITLE
        assert generate_title(None) == DEFAULT_TITLE


async def test_create_and_get(session):
    store = SqlConversationStore(session, _owner(), max_chats=7)
    created = await store.create_new("chat-1", "Hello there assistant")
    assert created.title == "Hello there assistant"
    assert created.messages == []
    assert created.token_count == 0

    loaded = await store.get("chat-1")
    assert loaded is not None
    assert loaded.id == "chat-1"
    assert await store.get("chat-missing") is None


async def test_conversations_scoped_by_owner(session):
    alice = SqlConversationStore(session, _owner(), max_chats=7)
    bob = SqlConversationStore(session, _owner(), max_chats=7)
    await alice.create_new("shared-id", "alice's chat")

    assert await bob.get("shared-id") is None
    assert await bob.delete("shared-id") is False
    assert await bob.list_recent() == []

    # Same client id, different owner: a separate conversation
    bobs = await bob.create_new("shared-id", "bob's chat")
    assert bobs.owner_id == bob.owner_id
    assert (await alice.get("shared-id")).title == "alice's chat"


async def test_append_recomputes_token_count_and_bumps_updated_at(session):
    store = SqlConversationStore(session, _owner(), max_chats=7)
    conversation = await store.create_new("chat-a", "hi")
    before = conversation.updated_at

    await store.append_and_persist(
        conversation, _user("hello world"), _assistant("hello world"), title="Greeting"
    )

    loaded = await store.get("chat-a")
    assert [m["role"] for m in loaded.messages] == ["user", "assistant"]
    assert loaded.token_count == 6
    assert loaded.title == "Greeting"
    assert loaded.updated_at > before


async def test_stale_write_rejected(session):
    store = SqlConversationStore(session, _owner(), max_chats=7)
    conversation = await store.create_new("chat-race", "race")
    stale = Conversation(
        id=conversation.id,
        owner_id=conversation.owner_id,
        title=conversation.title,
        messages=list(conversation.messages),
        token_count=conversation.token_count,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )

    await store.append_and_persist(conversation, _user("first"), _assistant("one"))
    with pytest.raises(PersistenceError):
        await store.append_and_persist(stale, _user("second"), _assistant("two"))

    loaded = await store.get("chat-race")
    assert [m["content"] for m in loaded.messages] == ["first", "one"]


async def test_oldest_conversation_evicted_at_cap(session):
    store = SqlConversationStore(session, _owner(), max_chats=3)
    c1 = await store.create_new("c1", "one")
    await store.create_new("c2", "two")
    await store.create_new("c3", "three")
    # Touch c1 so c2 becomes the least recently updated
    await store.append_and_persist(c1, _user("still here"))

    await store.create_new("c4", "four")

    ids = {c.id for c in await store.list_recent()}
    assert ids == {"c1", "c3", "c4"}


async def test_list_recent_orders_by_update(session):
    store = SqlConversationStore(session, _owner(), max_chats=7)
    first = await store.create_new("first", "a")
    await store.create_new("second", "b")
    await store.append_and_persist(first, _user("bump"))

    recent = await store.list_recent()
    assert [c.id for c in recent] == ["first", "second"]
    assert [c.id for c in await store.list_recent(limit=1)] == ["first"]


async def test_delete(session):
    store = SqlConversationStore(session, _owner(), max_chats=7)
    await store.create_new("gone", "bye")
    assert await store.delete("gone") is True
    assert await store.get("gone") is None
    assert await store.delete("gone") is False


async def test_drop_trailing_assistant(session):
    store = SqlConversationStore(session, _owner(), max_chats=7)
    conversation = await store.create_new("regen", "q")
    await store.append_and_persist(conversation, _user("question"), _assistant("answer"))

    trimmed = await store.drop_trailing_assistant("regen")
    assert [m["role"] for m in trimmed.messages] == ["user"]

    # Already ends with the user turn: unchanged
    again = await store.drop_trailing_assistant("regen")
    assert [m["role"] for m in again.messages] == ["user"]
    assert await store.drop_trailing_assistant("missing") is None
