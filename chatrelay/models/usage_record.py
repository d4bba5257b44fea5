"""UsageRecord model — append-only audit row, one per completed exchange."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from chatrelay.models.base import utcnow


class UsageRecord(SQLModel, table=True):
    __tablename__ = "usage_records"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(max_length=128, nullable=False, index=True)
    chat_id: str = Field(max_length=128, nullable=False, index=True)

    model: str = Field(max_length=100, nullable=False)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    credits_used: int = Field(default=0)
    cost_usd: float = Field(default=0.0)

    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)


# ── Pydantic schemas ─────────────────────────────────────────

class UsageRecordRead(SQLModel):
    id: uuid.UUID
    chat_id: str
    model: str
    input_tokens: int
    output_tokens: int
    credits_used: int
    cost_usd: float
    created_at: datetime
