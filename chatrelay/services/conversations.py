"""Conversation store — durable chat history for authenticated users.

Every query is scoped by owner, so one user can never load another's chat.
Writes recompute ``token_count`` from the full message list and are guarded
by the previously read ``updated_at`` (compare-and-swap): a write racing
another turn on the same chat fails instead of silently overwriting it.
"""

import logging
from collections.abc import Sequence
from typing import Protocol

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import select

from chatrelay.core.errors import PersistenceError
from chatrelay.core.tokens import estimate_messages
from chatrelay.models.base import next_timestamp
from chatrelay.models.conversation import DEFAULT_TITLE, Conversation
from chatrelay.models.message import ChatMessage, MessageRole, dump_messages, parse_messages

logger = logging.getLogger(__name__)

TITLE_MAX_WORDS = 6


class ConversationStore(Protocol):
    """Interface shared by the SQL store and the volatile guest store."""

    async def get(self, conversation_id: str) -> Conversation | None: ...

    async def create_new(
        self, conversation_id: str, first_message_text: str | None
    ) -> Conversation: ...

    async def append_and_persist(
        self,
        conversation: Conversation,
        *messages: ChatMessage,
        title: str | None = None,
    ) -> Conversation: ...

    async def list_recent(self, limit: int = 50) -> list[Conversation]: ...

    async def delete(self, conversation_id: str) -> bool: ...

    async def drop_trailing_assistant(self, conversation_id: str) -> Conversation | None: ...

    def with_session(self, session: AsyncSession) -> "ConversationStore":
        """The same store, writing through ``session``."""
        ...


def generate_title(first_message: str | None, max_words: int = TITLE_MAX_WORDS) -> str:
    """First ``max_words`` words of the opening message, '...' when truncated."""
    if not first_message or not first_message.strip():
        return DEFAULT_TITLE
    words = first_message.split()
    title = " ".join(words[:max_words])
    if len(words) > max_words:
        return title + "..."
    return title


def rebuild(messages: Sequence[ChatMessage]) -> tuple[list[dict], int]:
    """Serialized messages plus their recomputed token count."""
    return dump_messages(messages), estimate_messages(messages)


def without_trailing_assistant(messages: list[ChatMessage]) -> list[ChatMessage] | None:
    if not messages or messages[-1].role != MessageRole.ASSISTANT:
        return None
    return messages[:-1]


class SqlConversationStore:
    def __init__(self, session: AsyncSession, owner_id: str, max_chats: int) -> None:
        self.session = session
        self.owner_id = owner_id
        self.max_chats = max_chats

    def with_session(self, session: AsyncSession) -> "SqlConversationStore":
        return SqlConversationStore(session, self.owner_id, self.max_chats)

    async def get(self, conversation_id: str) -> Conversation | None:
        stmt = (
            select(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.owner_id == self.owner_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_new(
        self, conversation_id: str, first_message_text: str | None
    ) -> Conversation:
        conversation = Conversation(
            id=conversation_id,
            owner_id=self.owner_id,
            title=generate_title(first_message_text),
            messages=[],
            token_count=0,
        )
        try:
            await self._evict_oldest()
            self.session.add(conversation)
            await self.session.commit()
        except IntegrityError:
            # Same chat id created by a concurrent first turn
            await self.session.rollback()
            existing = await self.get(conversation_id)
            if existing is not None:
                return existing
            raise PersistenceError("Failed to create conversation", chat_id=conversation_id)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError(
                "Failed to create conversation", chat_id=conversation_id
            ) from exc
        return conversation

    async def _evict_oldest(self) -> None:
        """Make room for one more chat by deleting the least recently updated."""
        stmt = (
            select(Conversation.id)
            .where(Conversation.owner_id == self.owner_id)
            .order_by(Conversation.updated_at.desc())  # type: ignore[union-attr]
        )
        result = await self.session.execute(stmt)
        ids = list(result.scalars().all())
        if len(ids) < self.max_chats:
            return

        stale = ids[self.max_chats - 1:]
        await self.session.execute(
            delete(Conversation).where(
                Conversation.owner_id == self.owner_id,
                Conversation.id.in_(stale),  # type: ignore[attr-defined]
            )
        )
        logger.info("Evicted %d old conversations for %s", len(stale), self.owner_id)

    async def append_and_persist(
        self,
        conversation: Conversation,
        *messages: ChatMessage,
        title: str | None = None,
    ) -> Conversation:
        updated = [*parse_messages(conversation.messages), *messages]
        return await self._write(conversation, updated, title)

    async def _write(
        self,
        conversation: Conversation,
        messages: list[ChatMessage],
        title: str | None,
    ) -> Conversation:
        stored, token_count = rebuild(messages)
        values: dict = {
            "messages": stored,
            "token_count": token_count,
            "updated_at": next_timestamp(conversation.updated_at),
        }
        if title is not None:
            values["title"] = title

        stmt = (
            update(Conversation)
            .where(
                Conversation.id == conversation.id,
                Conversation.owner_id == self.owner_id,
                Conversation.updated_at == conversation.updated_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                await self.session.rollback()
                raise PersistenceError(
                    "Conversation was modified concurrently", chat_id=conversation.id
                )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError(
                "Failed to persist conversation", chat_id=conversation.id
            ) from exc

        for key, value in values.items():
            set_committed_value(conversation, key, value)
        return conversation

    async def list_recent(self, limit: int = 50) -> list[Conversation]:
        stmt = (
            select(Conversation)
            .where(Conversation.owner_id == self.owner_id)
            .order_by(Conversation.updated_at.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, conversation_id: str) -> bool:
        stmt = delete(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.owner_id == self.owner_id,
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError(
                "Failed to delete conversation", chat_id=conversation_id
            ) from exc
        return result.rowcount > 0

    async def drop_trailing_assistant(self, conversation_id: str) -> Conversation | None:
        conversation = await self.get(conversation_id)
        if conversation is None:
            return None
        trimmed = without_trailing_assistant(parse_messages(conversation.messages))
        if trimmed is None:
            return conversation
        return await self._write(conversation, trimmed, None)
