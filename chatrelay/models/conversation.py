"""Conversation model — an ordered message list owned by one identity."""

from datetime import datetime

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel

from chatrelay.models.base import TimestampMixin

DEFAULT_TITLE = "New Chat"


class Conversation(TimestampMixin, SQLModel, table=True):
    __tablename__ = "conversations"

    # Client-supplied chat id, scoped by owner so ids never collide across users
    id: str = Field(primary_key=True, max_length=128)
    owner_id: str = Field(primary_key=True, max_length=128, index=True)

    title: str = Field(default=DEFAULT_TITLE, max_length=500)
    # JSON array of ChatMessage dumps, append-only under normal flow
    messages: list[dict] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    # Cached estimate over `messages`, recomputed on every write
    token_count: int = Field(default=0)


# ── Pydantic schemas ─────────────────────────────────────────

class ConversationSummary(SQLModel):
    id: str
    title: str
    token_count: int
    is_near_limit: bool = False
    created_at: datetime
    updated_at: datetime


class ConversationRead(ConversationSummary):
    messages: list[dict]
