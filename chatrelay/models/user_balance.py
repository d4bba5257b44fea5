"""UserBalance model — credit balance and plan tier of an authenticated user."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from chatrelay.models.base import TimestampMixin


class UserBalance(TimestampMixin, SQLModel, table=True):
    __tablename__ = "user_balances"

    user_id: str = Field(primary_key=True, max_length=128)
    subscription_tier: str = Field(default="free", max_length=50)

    # Only decreases through a debit tied to a completed exchange; floor 0
    credit_balance: int = Field(default=0, nullable=False)
    total_credits_consumed: int = Field(default=0, nullable=False)
    total_tokens_used: int = Field(default=0, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class BalanceRead(SQLModel):
    user_id: str
    subscription_tier: str
    credit_balance: int
    total_credits_consumed: int
    total_tokens_used: int
    updated_at: datetime
