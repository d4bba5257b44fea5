"""Billing callback — applies the plan tier produced by the payment flow.

The payment service signs the raw JSON body with HMAC-SHA256 using the
shared ``BILLING_WEBHOOK_SECRET`` and sends the hex digest in
``X-Billing-Signature``.
"""

from typing import Annotated

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from chatrelay.api.deps import Session
from chatrelay.core.config import get_settings
from chatrelay.core.errors import IdentityError, ValidationError
from chatrelay.core.pricing import Tier
from chatrelay.core.security import verify_signature
from chatrelay.models.user_balance import BalanceRead
from chatrelay.services.ledger import BalanceLedger

router = APIRouter(prefix="/billing", tags=["billing"])


class SubscriptionUpdate(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    tier: Tier


@router.post("/subscription", response_model=BalanceRead)
async def apply_subscription(
    request: Request,
    session: Session,
    x_billing_signature: Annotated[str | None, Header()] = None,
) -> BalanceRead:
    raw = await request.body()
    if not verify_signature(raw, x_billing_signature or "", get_settings().billing_webhook_secret):
        raise IdentityError("Invalid billing signature")

    try:
        body = SubscriptionUpdate.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed subscription update") from exc
    if body.tier == Tier.GUEST:
        raise ValidationError("Guest is not a subscription tier")

    balance = await BalanceLedger(session).apply_subscription(body.user_id, body.tier)
    return BalanceRead.model_validate(balance)
