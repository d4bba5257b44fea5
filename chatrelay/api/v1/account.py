"""Account endpoints — guest sessions, model catalog, balance and usage."""

from fastapi import APIRouter, Query
from pydantic import BaseModel

from chatrelay.api.deps import CurrentIdentity, Ledger
from chatrelay.core.access import can_use, minimum_tier_for
from chatrelay.core.errors import AuthorizationError
from chatrelay.core.pricing import MODEL_CATALOG
from chatrelay.core.security import generate_guest_session_id
from chatrelay.models.usage_record import UsageRecordRead

router = APIRouter(tags=["account"])


# ── Schemas ──────────────────────────────────────────────────

class SessionResponse(BaseModel):
    session_id: str


class ModelEntry(BaseModel):
    id: str
    display_name: str
    category: str
    credit_multiplier: int
    supports_images: bool
    is_free: bool
    available: bool
    required_tier: str | None = None


class MeResponse(BaseModel):
    is_guest: bool
    tier: str
    credit_balance: int = 0
    total_credits_consumed: int = 0
    total_tokens_used: int = 0


# ── Routes ───────────────────────────────────────────────────

@router.get("/session", response_model=SessionResponse)
async def new_guest_session() -> SessionResponse:
    """Issue a guest session id for the ``X-Session-Id`` header."""
    return SessionResponse(session_id=generate_guest_session_id())


@router.get("/models", response_model=list[ModelEntry])
async def list_models(identity: CurrentIdentity) -> list[ModelEntry]:
    """The server-side catalog, annotated for the caller's tier."""
    entries = []
    for model in MODEL_CATALOG.values():
        required = minimum_tier_for(model.model_id)
        entries.append(ModelEntry(
            id=model.model_id,
            display_name=model.display_name,
            category=model.category.value,
            credit_multiplier=model.credit_multiplier,
            supports_images=model.supports_images,
            is_free=model.is_free,
            available=can_use(identity.tier, model.model_id),
            required_tier=required.value if required else None,
        ))
    return entries


@router.get("/me", response_model=MeResponse)
async def get_me(identity: CurrentIdentity, ledger: Ledger) -> MeResponse:
    if ledger is None:
        return MeResponse(is_guest=True, tier=identity.tier.value)

    balance = await ledger.get(identity.owner_id)
    if balance is None:
        return MeResponse(is_guest=False, tier=identity.tier.value)
    return MeResponse(
        is_guest=False,
        tier=balance.subscription_tier,
        credit_balance=balance.credit_balance,
        total_credits_consumed=balance.total_credits_consumed,
        total_tokens_used=balance.total_tokens_used,
    )


@router.get("/usage", response_model=list[UsageRecordRead])
async def list_usage(
    identity: CurrentIdentity,
    ledger: Ledger,
    limit: int = Query(default=50, ge=1, le=200),
) -> list[UsageRecordRead]:
    """Most recent usage records of the authenticated caller."""
    if ledger is None:
        raise AuthorizationError("Usage history requires an account", action="login")
    records = await ledger.recent_usage(identity.owner_id, limit=limit)
    return [UsageRecordRead.model_validate(r) for r in records]
