"""Model access policy — which tiers may call which models.

Entitlements nest: guest = free < starter < pro = business. Unknown models
are always denied.
"""

from chatrelay.core.pricing import MODEL_CATALOG, PLAN_CONFIGS, Tier, parse_tier

# Paid tiers in ascending order, used to name the cheapest upgrade path
UPGRADE_PATH: tuple[Tier, ...] = (Tier.FREE, Tier.STARTER, Tier.PRO, Tier.BUSINESS)


def can_use(tier: Tier | str, model_id: str) -> bool:
    model = MODEL_CATALOG.get(model_id)
    if model is None:
        return False

    plan = PLAN_CONFIGS[parse_tier(tier)]
    if plan.all_models:
        return True
    if model_id in plan.excluded_models:
        return False
    return model.category in plan.categories


def minimum_tier_for(model_id: str) -> Tier | None:
    """Lowest tier that unlocks ``model_id``, or None for unknown models."""
    for tier in UPGRADE_PATH:
        if can_use(tier, model_id):
            return tier
    return None


def available_models(tier: Tier | str) -> list[str]:
    return [model_id for model_id in MODEL_CATALOG if can_use(tier, model_id)]
