"""Balance ledger — credit balances and the usage audit trail.

Debits are a single row-level UPDATE computed in SQL, never a read followed
by a write, so concurrent exchanges for one user cannot lose updates. The
balance is clamped at zero.
"""

import logging

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from chatrelay.core.errors import PersistenceError
from chatrelay.core.pricing import Tier, get_plan
from chatrelay.models.base import utcnow
from chatrelay.models.usage_record import UsageRecord
from chatrelay.models.user_balance import UserBalance

logger = logging.getLogger(__name__)


class BalanceLedger:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def with_session(self, session: AsyncSession) -> "BalanceLedger":
        return BalanceLedger(session)

    async def get(self, user_id: str) -> UserBalance | None:
        stmt = (
            select(UserBalance)
            .where(UserBalance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_provisioned(self, user_id: str, tier: Tier) -> UserBalance:
        """Return the user's balance, creating it at the tier default on first sight."""
        if tier == Tier.GUEST:
            raise ValueError("Guests have no balance")

        balance = await self.get(user_id)
        if balance is not None:
            return balance

        balance = UserBalance(
            user_id=user_id,
            subscription_tier=tier.value,
            credit_balance=get_plan(tier).credits,
        )
        try:
            self.session.add(balance)
            await self.session.commit()
        except IntegrityError:
            # Provisioned concurrently by another request
            await self.session.rollback()
            existing = await self.get(user_id)
            if existing is None:
                raise PersistenceError("Failed to provision balance", user_id=user_id)
            return existing
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Failed to provision balance", user_id=user_id) from exc

        logger.info("Provisioned %s balance for %s", tier.value, user_id)
        return balance

    async def has_sufficient(self, user_id: str, required_credits: int) -> bool:
        """Read-only pre-flight check; a zero or negative balance never suffices."""
        stmt = select(UserBalance.credit_balance).where(UserBalance.user_id == user_id)
        balance = (await self.session.execute(stmt)).scalar_one_or_none()
        if balance is None or balance <= 0:
            return False
        return balance >= required_credits

    async def debit(self, user_id: str, credits_used: int, tokens_used: int) -> int:
        """Charge a completed exchange. Returns the new balance."""
        if credits_used < 0 or tokens_used < 0:
            raise ValueError("Debit amounts must be non-negative")

        stmt = (
            update(UserBalance)
            .where(UserBalance.user_id == user_id)
            .values(
                credit_balance=case(
                    (UserBalance.credit_balance > credits_used,
                     UserBalance.credit_balance - credits_used),
                    else_=0,
                ),
                total_credits_consumed=UserBalance.total_credits_consumed + credits_used,
                total_tokens_used=UserBalance.total_tokens_used + tokens_used,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                await self.session.rollback()
                raise PersistenceError("No balance to debit", user_id=user_id)
            new_balance = (
                await self.session.execute(
                    select(UserBalance.credit_balance).where(UserBalance.user_id == user_id)
                )
            ).scalar_one()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Failed to debit balance", user_id=user_id) from exc
        return new_balance

    async def record_usage(self, record: UsageRecord) -> UsageRecord:
        try:
            self.session.add(record)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError(
                "Failed to record usage", user_id=record.user_id, chat_id=record.chat_id
            ) from exc
        return record

    async def recent_usage(self, user_id: str, limit: int = 50) -> list[UsageRecord]:
        stmt = (
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id)
            .order_by(UsageRecord.created_at.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def apply_subscription(self, user_id: str, tier: Tier) -> UserBalance:
        """Switch a user's plan and top the balance up to the plan allocation."""
        if tier == Tier.GUEST:
            raise ValueError("Guest is not a subscription tier")

        await self.ensure_provisioned(user_id, tier)
        credits = get_plan(tier).credits
        stmt = (
            update(UserBalance)
            .where(UserBalance.user_id == user_id)
            .values(
                subscription_tier=tier.value,
                credit_balance=case(
                    (UserBalance.credit_balance < credits, credits),
                    else_=UserBalance.credit_balance,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Failed to apply subscription", user_id=user_id) from exc

        logger.info("Applied %s subscription for %s", tier.value, user_id)
        balance = await self.get(user_id)
        if balance is None:
            raise PersistenceError("Balance disappeared after update", user_id=user_id)
        return balance
