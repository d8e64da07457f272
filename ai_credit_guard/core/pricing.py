"""
Pricing calculations and rate management.

Maps (operation, mode, model tier, plan) to integer credit prices and
estimates the USD cost of generation calls for the audit ledger.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Tuple

from .errors import PricingError

DEFAULT_PLAN_ID = "default"
DEFAULT_RATE_KEY = "default"

OPERATIONS = ("chat", "image")
CHAT_MODES = ("mentor", "researcher", "coach", "visionary")
MODEL_TIERS = ("stable", "deep_dive", "standard", "high_quality")

# Cheapest chat path, used when a user is over the soft budget cap
FALLBACK_MODE = "mentor"
FALLBACK_TIER = "stable"

HIGH_QUALITY_IMAGE_FLOOR_USD = Decimal("0.08")

_USD_QUANTUM = Decimal("0.000001")
_ONE_MILLION = Decimal("1000000")

PriceKey = Tuple[str, str, str]


@dataclass(frozen=True)
class ModelRates:
    """USD rates per million tokens for a text or speech model."""
    input_per_million: Decimal
    output_per_million: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Plan-priced credit table plus USD rate cards.

    ``plans`` maps a plan id to ``(operation, mode, tier) -> credits``. The
    ``default`` plan backs every other plan for combinations it does not
    override. Rate cards must carry a ``default`` entry used for unknown
    models.
    """
    plans: Dict[str, Dict[PriceKey, Decimal]]
    text_rates: Dict[str, ModelRates]
    image_flat_usd: Dict[str, Decimal] = field(default_factory=dict)

    def __post_init__(self):
        if DEFAULT_PLAN_ID not in self.plans:
            raise ValueError(f"pricing must define the '{DEFAULT_PLAN_ID}' plan")
        if DEFAULT_RATE_KEY not in self.text_rates:
            raise ValueError("text_rates must define a 'default' rate")

    def get_credit_price(self, operation: str, mode: str, model_tier: str, plan_id: str) -> Decimal:
        """Get the raw credit price for a combination.

        Raises:
            PricingError: If neither the plan nor the default plan prices it
        """
        key = (operation, mode, model_tier)
        plan = self.plans.get(plan_id, {})
        if key in plan:
            return plan[key]
        default_plan = self.plans[DEFAULT_PLAN_ID]
        if key in default_plan:
            return default_plan[key]
        raise PricingError(
            f"No price for operation={operation} mode={mode} tier={model_tier} plan={plan_id}"
        )

    def get_text_rates(self, model: str) -> ModelRates:
        return self.text_rates.get(model, self.text_rates[DEFAULT_RATE_KEY])

    def get_image_flat(self, model: str) -> Decimal:
        if model in self.image_flat_usd:
            return self.image_flat_usd[model]
        return self.image_flat_usd.get(DEFAULT_RATE_KEY, Decimal("0.05"))


def _chat_prices(mentor, researcher, coach, visionary, deep_dive) -> Dict[PriceKey, Decimal]:
    return {
        ("chat", "mentor", "stable"): Decimal(mentor),
        ("chat", "researcher", "stable"): Decimal(researcher),
        ("chat", "researcher", "deep_dive"): Decimal(deep_dive),
        ("chat", "coach", "stable"): Decimal(coach),
        ("chat", "visionary", "stable"): Decimal(visionary),
    }


PRICING_TABLE = PricingTable(
    plans={
        DEFAULT_PLAN_ID: {
            **_chat_prices("1", "2", "1", "1", "5"),
            ("image", "visionary", "standard"): Decimal("5"),
            ("image", "visionary", "high_quality"): Decimal("8"),
        },
    },
    text_rates={
        "gpt-4.1-mini": ModelRates(Decimal("0.40"), Decimal("1.60")),
        "gpt-4.1": ModelRates(Decimal("2.00"), Decimal("8.00")),
        "gpt-4o-mini-tts": ModelRates(Decimal("0.60"), Decimal("12.00")),
        DEFAULT_RATE_KEY: ModelRates(Decimal("0.50"), Decimal("2.50")),
    },
    image_flat_usd={
        "gpt-image-1-mini": Decimal("0.04"),
        "gpt-image-1": Decimal("0.08"),
        DEFAULT_RATE_KEY: Decimal("0.05"),
    },
)


def price_credits(
    operation: str,
    mode: str,
    model_tier: str,
    plan_id: str = DEFAULT_PLAN_ID,
    table: PricingTable = PRICING_TABLE,
) -> int:
    """Credits charged for one operation.

    Fractional prices are rounded half-up; negative prices clamp to zero.

    Args:
        operation: ``chat`` or ``image``
        mode: Chat mode (``visionary`` for images)
        model_tier: Model tier identifier
        plan_id: Plan whose price list applies
        table: Pricing table to read from

    Returns:
        Non-negative integer credit price

    Raises:
        PricingError: If the combination is not priced
    """
    raw = table.get_credit_price(operation, mode, model_tier, plan_id)
    rounded = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, rounded)


def estimate_text_usd(
    model: str,
    tokens_in: int,
    tokens_out: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Estimate USD cost of a text or speech call from token counts.

    Unknown models fall back to the default rate. Rounded to 6 decimals.
    """
    rates = table.get_text_rates(model)
    input_cost = (Decimal(max(0, tokens_in)) / _ONE_MILLION) * rates.input_per_million
    output_cost = (Decimal(max(0, tokens_out)) / _ONE_MILLION) * rates.output_per_million
    total = (input_cost + output_cost).quantize(_USD_QUANTUM, rounding=ROUND_HALF_UP)
    return float(total)


def estimate_image_usd(model: str, model_tier: str, table: PricingTable = PRICING_TABLE) -> float:
    """Flat USD cost of one generated image; high quality never costs less than $0.08."""
    cost = table.get_image_flat(model)
    if model_tier == "high_quality":
        cost = max(cost, HIGH_QUALITY_IMAGE_FLOOR_USD)
    return float(cost.quantize(_USD_QUANTUM, rounding=ROUND_HALF_UP))
