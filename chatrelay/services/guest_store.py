"""Volatile conversation store for guest sessions.

``GuestConversationCache`` is process scoped: the app lifespan creates it at
start-up and clears it on shutdown, so guest history never survives a
restart. Eviction policy:
  - sessions idle longer than ``session_ttl`` seconds are dropped
  - at most ``max_sessions`` sessions are kept (least recently used dropped)
  - each session keeps at most ``max_chats`` conversations (least recently
    updated dropped)

``GuestConversationStore`` exposes the same interface as the SQL store, scoped
to one session id. Stored conversations are copied on read and replaced on
write, so two turns racing on the same chat are detected via ``updated_at``.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.config import Settings
from chatrelay.core.errors import PersistenceError
from chatrelay.models.base import next_timestamp, utcnow
from chatrelay.models.conversation import Conversation
from chatrelay.models.message import ChatMessage, parse_messages
from chatrelay.services.conversations import generate_title, rebuild, without_trailing_assistant

logger = logging.getLogger(__name__)


@dataclass
class _GuestSession:
    last_seen: float
    chats: dict[str, Conversation] = field(default_factory=dict)


class GuestConversationCache:
    def __init__(
        self,
        max_sessions: int = 10_000,
        session_ttl: float = 86_400.0,
        max_chats: int = 7,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_sessions = max_sessions
        self.session_ttl = session_ttl
        self.max_chats = max_chats
        self._clock = clock
        self._sessions: OrderedDict[str, _GuestSession] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> GuestConversationCache:
        return cls(
            max_sessions=settings.guest_max_sessions,
            session_ttl=settings.guest_session_ttl,
            max_chats=settings.guest_max_chats,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def chats(self, session_id: str) -> dict[str, Conversation]:
        """Return (creating if needed) the chat map of a session and mark it used."""
        now = self._clock()
        self.purge_expired(now)

        session = self._sessions.get(session_id)
        if session is None:
            session = _GuestSession(last_seen=now)
            self._sessions[session_id] = session
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("Evicted guest session %s (session cap)", evicted)
        else:
            session.last_seen = now
            self._sessions.move_to_end(session_id)
        return session.chats

    def purge_expired(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            sid for sid, s in self._sessions.items()
            if now - s.last_seen > self.session_ttl
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Purged %d idle guest sessions", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._sessions.clear()


def _clone(conversation: Conversation) -> Conversation:
    return Conversation(
        id=conversation.id,
        owner_id=conversation.owner_id,
        title=conversation.title,
        messages=list(conversation.messages),
        token_count=conversation.token_count,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


class GuestConversationStore:
    def __init__(self, cache: GuestConversationCache, session_id: str) -> None:
        self.cache = cache
        self.owner_id = session_id

    def with_session(self, session: AsyncSession) -> GuestConversationStore:
        # Guest history never touches the database
        return self

    async def get(self, conversation_id: str) -> Conversation | None:
        stored = self.cache.chats(self.owner_id).get(conversation_id)
        return _clone(stored) if stored is not None else None

    async def create_new(
        self, conversation_id: str, first_message_text: str | None
    ) -> Conversation:
        chats = self.cache.chats(self.owner_id)
        existing = chats.get(conversation_id)
        if existing is not None:
            return _clone(existing)

        self._make_room(chats)
        now = utcnow()
        conversation = Conversation(
            id=conversation_id,
            owner_id=self.owner_id,
            title=generate_title(first_message_text),
            messages=[],
            token_count=0,
            created_at=now,
            updated_at=now,
        )
        chats[conversation_id] = conversation
        return _clone(conversation)

    async def append_and_persist(
        self,
        conversation: Conversation,
        *messages: ChatMessage,
        title: str | None = None,
    ) -> Conversation:
        updated = [*parse_messages(conversation.messages), *messages]
        return self._write(conversation, updated, title)

    def _write(
        self,
        conversation: Conversation,
        messages: list[ChatMessage],
        title: str | None,
    ) -> Conversation:
        chats = self.cache.chats(self.owner_id)
        current = chats.get(conversation.id)
        if current is not None and current.updated_at != conversation.updated_at:
            raise PersistenceError(
                "Conversation was modified concurrently", chat_id=conversation.id
            )

        stored, token_count = rebuild(messages)
        conversation.messages = stored
        conversation.token_count = token_count
        conversation.updated_at = next_timestamp(conversation.updated_at)
        if title is not None:
            conversation.title = title
        if current is None:
            # Evicted or deleted meanwhile; re-inserted under the chat cap
            self._make_room(chats)
        chats[conversation.id] = _clone(conversation)
        return conversation

    def _make_room(self, chats: dict[str, Conversation]) -> None:
        while len(chats) >= self.cache.max_chats:
            oldest = min(chats.values(), key=lambda c: c.updated_at)
            del chats[oldest.id]
            logger.info("Evicted guest conversation %s for %s", oldest.id, self.owner_id)

    async def list_recent(self, limit: int = 50) -> list[Conversation]:
        chats = self.cache.chats(self.owner_id).values()
        ordered = sorted(chats, key=lambda c: c.updated_at, reverse=True)
        return [_clone(c) for c in ordered[:limit]]

    async def delete(self, conversation_id: str) -> bool:
        return self.cache.chats(self.owner_id).pop(conversation_id, None) is not None

    async def drop_trailing_assistant(self, conversation_id: str) -> Conversation | None:
        conversation = await self.get(conversation_id)
        if conversation is None:
            return None
        trimmed = without_trailing_assistant(parse_messages(conversation.messages))
        if trimmed is None:
            return conversation
        return self._write(conversation, trimmed, None)
