"""Centralized model catalog, plan configuration and credit pricing.

Single source of truth for which models exist, what they cost in credits
(a per-model multiplier over 1K tokens) and what each plan tier includes.
Exposed via GET /v1/models; the frontend copy of this table is only a cache.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import StrEnum

logger = logging.getLogger(__name__)


class Tier(StrEnum):
    GUEST = "guest"
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"


class ModelCategory(StrEnum):
    FREE = "free"
    BUDGET = "budget"
    MID = "mid"
    PREMIUM = "premium"


@dataclass(frozen=True)
class ModelInfo:
    model_id: str
    display_name: str
    category: ModelCategory
    credit_multiplier: int
    supports_images: bool
    # Provider cost in USD per 1M tokens, used for the audit estimate only
    input_cost_per_1m: float = 0.0
    output_cost_per_1m: float = 0.0

    @property
    def is_free(self) -> bool:
        return self.category == ModelCategory.FREE


@dataclass(frozen=True)
class PlanConfig:
    tier: Tier
    name: str
    credits: int
    max_chats: int
    categories: frozenset[ModelCategory] = field(default_factory=frozenset)
    all_models: bool = False
    excluded_models: frozenset[str] = field(default_factory=frozenset)


def _m(model_id, name, category, multiplier, images, in_cost=0.0, out_cost=0.0) -> ModelInfo:
    return ModelInfo(model_id, name, category, multiplier, images, in_cost, out_cost)


_FREE, _BUDGET, _MID, _PREMIUM = (
    ModelCategory.FREE, ModelCategory.BUDGET, ModelCategory.MID, ModelCategory.PREMIUM,
)

MODEL_CATALOG: dict[str, ModelInfo] = {m.model_id: m for m in (
    # Free models
    _m("openai/gpt-oss-20b:free",          "GPT OSS 20B",             _FREE,    1,  True),
    _m("moonshotai/kimi-k2:free",          "Kimi K2",                 _FREE,    1,  False),
    _m("meta-llama/llama-4-maverick:free", "Llama 4 Maverick (Free)", _FREE,    1,  False),
    _m("deepseek/deepseek-r1-0528:free",   "DeepSeek R1",             _FREE,    1,  False),
    # Budget models
    _m("openai/gpt-4o-mini",               "GPT-4o Mini",             _BUDGET,  2,  True,  0.15, 0.60),
    _m("meta-llama/llama-4-maverick",      "Llama 4 Maverick",        _BUDGET,  2,  False, 0.15, 0.60),
    _m("qwen/qwen3-coder",                 "Qwen3 Coder",             _BUDGET,  3,  True,  0.20, 0.80),
    _m("z-ai/glm-4.5",                     "GLM 4.5",                 _BUDGET,  3,  False, 0.20, 0.80),
    _m("openai/gpt-5-mini",                "GPT-5 Mini",              _BUDGET,  4,  True,  0.25, 2.00),
    _m("google/gemini-2.5-flash",          "Gemini 2.5 Flash",        _BUDGET,  4,  True,  0.30, 2.50),
    _m("x-ai/grok-3-mini",                 "Grok 3 Mini",             _BUDGET,  3,  False, 0.30, 0.50),
    _m("mistralai/mistral-medium",         "Mistral Medium",          _BUDGET,  4,  False, 0.40, 2.00),
    # Mid-tier models
    _m("anthropic/claude-3.5-haiku",       "Claude 3.5 Haiku",        _MID,     8,  True,  0.80, 4.00),
    # Premium models
    _m("openai/gpt-5",                     "GPT-5",                   _PREMIUM, 12, True,  1.25, 10.00),
    _m("anthropic/claude-sonnet-4",        "Claude Sonnet 4",         _PREMIUM, 20, True,  3.00, 15.00),
    _m("x-ai/grok-4",                      "Grok 4",                  _PREMIUM, 20, True,  3.00, 15.00),
)}

# Unknown models are charged, never free
DEFAULT_CREDIT_MULTIPLIER = 1
# Conservative (input, output) USD per 1M tokens for models missing from the catalog
DEFAULT_USD_PER_1M: tuple[float, float] = (1.00, 3.00)

PLAN_CONFIGS: dict[Tier, PlanConfig] = {
    Tier.GUEST: PlanConfig(
        Tier.GUEST, "Guest", credits=0, max_chats=7,
        categories=frozenset({_FREE}),
    ),
    Tier.FREE: PlanConfig(
        Tier.FREE, "Free", credits=1000, max_chats=7,
        categories=frozenset({_FREE}),
    ),
    Tier.STARTER: PlanConfig(
        Tier.STARTER, "Starter", credits=10_000, max_chats=30,
        categories=frozenset({_FREE, _BUDGET}),
        excluded_models=frozenset({
            "anthropic/claude-sonnet-4",
            "x-ai/grok-4",
            "openai/gpt-5",
            "anthropic/claude-3.5-haiku",
        }),
    ),
    Tier.PRO: PlanConfig(Tier.PRO, "Pro", credits=30_000, max_chats=30, all_models=True),
    Tier.BUSINESS: PlanConfig(
        Tier.BUSINESS, "Business", credits=80_000, max_chats=30, all_models=True,
    ),
}


def parse_tier(value: str | None) -> Tier:
    """Map a stored / claimed tier string to a Tier; unknown values become FREE."""
    try:
        return Tier(value) if value else Tier.FREE
    except ValueError:
        logger.warning("Unknown subscription tier %r, treating as free", value)
        return Tier.FREE


def get_model(model_id: str) -> ModelInfo | None:
    return MODEL_CATALOG.get(model_id)


def get_plan(tier: Tier | str) -> PlanConfig:
    return PLAN_CONFIGS[parse_tier(tier)]


def cost_in_credits(total_tokens: int, model_id: str) -> int:
    """Credits for an exchange: ceil(tokens / 1000 * multiplier).

    Free-category models always cost 0. Unknown models fall back to
    DEFAULT_CREDIT_MULTIPLIER.
    """
    tokens = max(total_tokens, 0)
    model = MODEL_CATALOG.get(model_id)
    if model is None:
        logger.warning("Model %s not in catalog, using default multiplier", model_id)
        multiplier = DEFAULT_CREDIT_MULTIPLIER
    elif model.is_free:
        return 0
    else:
        multiplier = model.credit_multiplier
    return math.ceil(tokens * multiplier / 1000)


def cost_usd(input_tokens: int, output_tokens: int, model_id: str) -> float:
    """Estimated provider cost in USD (audit only)."""
    model = MODEL_CATALOG.get(model_id)
    if model is None:
        input_rate, output_rate = DEFAULT_USD_PER_1M
    else:
        input_rate, output_rate = model.input_cost_per_1m, model.output_cost_per_1m
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000
