"""Ranking weight engine.

Two deterministic strategies produce a RankingWeights vector from intent
signals:

- rules (primary): balanced integer baseline summing to 100, additive
  rule deltas, clamp to [min_weight, max_weight], renormalise to exactly
  100. Post-conditions are asserted and a violation raises.
- profile (fallback preset): one of a fixed set of named vectors
  summing to 1.0.

Both depend only on structured signals, never on query text or language.
"""

import itertools
import logging
import math
from typing import Any

from pydantic import BaseModel, ConfigDict

from dining_search.core.config import RankingConfig
from dining_search.core.errors import WeightInvariantError
from dining_search.core.schemas import IntentSignals, RankingWeights, Route

logger = logging.getLogger(__name__)

WEIGHT_KEYS: tuple[str, ...] = ("rating", "reviews", "distance", "open_boost", "cuisine_match")

RULES_TOTAL = 100
PROFILE_TOTAL = 1.0
PROFILE_TOLERANCE = 0.001

BASE_WEIGHTS: dict[str, int] = {
    "rating": 30,
    "reviews": 20,
    "distance": 25,
    "open_boost": 15,
    "cuisine_match": 10,
}

# Each rule is zero-sum, so the unclamped vector always totals 100.
RULE_DELTAS: dict[str, dict[str, int]] = {
    "RULE_A_DISTANCE": {"distance": 10, "rating": -5, "reviews": -5},
    "RULE_B_OPEN_NOW": {"open_boost": 10, "rating": -5, "reviews": -5},
    "RULE_C_BUDGET": {"reviews": 5, "distance": 5, "rating": -5, "open_boost": -5},
    "RULE_D_QUALITY": {"rating": 10, "reviews": 5, "distance": -10, "open_boost": -5},
    "RULE_E_CUISINE": {"cuisine_match": 10, "distance": -5, "rating": -5},
}

PROFILE_WEIGHTS: dict[str, RankingWeights] = {
    "BALANCED": RankingWeights(rating=0.30, reviews=0.25, distance=0.25, open_boost=0.10, cuisine_match=0.10),
    "CUISINE": RankingWeights(rating=0.25, reviews=0.15, distance=0.20, open_boost=0.10, cuisine_match=0.30),
    "QUALITY": RankingWeights(rating=0.45, reviews=0.35, distance=0.10, open_boost=0.05, cuisine_match=0.05),
    "NEARBY": RankingWeights(rating=0.15, reviews=0.10, distance=0.60, open_boost=0.10, cuisine_match=0.05),
    "NO_LOCATION": RankingWeights(rating=0.45, reviews=0.35, distance=0.00, open_boost=0.10, cuisine_match=0.10),
}


class WeightContext(BaseModel):
    """Structured signals the weight strategies read."""

    model_config = ConfigDict(frozen=True)

    route: Route = Route.TEXTSEARCH
    has_user_location: bool = False
    distance_intent: bool = False
    open_now_requested: bool = False
    price_intent: str | None = None
    quality_intent: bool = False
    occasion: str | None = None
    cuisine_key: str | None = None

    @classmethod
    def from_intent(cls, intent: IntentSignals, has_user_location: bool) -> "WeightContext":
        return cls(
            route=intent.route,
            has_user_location=has_user_location,
            distance_intent=intent.distance_intent,
            open_now_requested=intent.open_now_requested,
            price_intent=intent.price_intent,
            quality_intent=intent.quality_intent,
            occasion=intent.occasion,
            cuisine_key=intent.cuisine_key,
        )


class ClampHit(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    hit_min: bool
    hit_max: bool


class WeightResolution(BaseModel):
    """Resolved weights plus the metadata the publisher surfaces."""

    model_config = ConfigDict(frozen=True)

    strategy: str
    profile: str
    weights: RankingWeights
    total: float
    reason_codes: tuple[str, ...] = ()
    clamp_hits: tuple[ClampHit, ...] = ()
    inputs_snapshot: dict[str, Any]


# ---------------------------------------------------------------------------
# Rule-delta engine
# ---------------------------------------------------------------------------


def _triggered_rules(ctx: WeightContext) -> list[str]:
    rules: list[str] = []
    if ctx.distance_intent or ctx.route is Route.NEARBY or ctx.has_user_location:
        rules.append("RULE_A_DISTANCE")
    if ctx.open_now_requested:
        rules.append("RULE_B_OPEN_NOW")
    if ctx.price_intent == "CHEAP":
        rules.append("RULE_C_BUDGET")
    if ctx.quality_intent or ctx.occasion == "romantic":
        rules.append("RULE_D_QUALITY")
    if ctx.cuisine_key:
        rules.append("RULE_E_CUISINE")
    return rules


def clamp_weights(weights: dict[str, int], min_weight: int, max_weight: int) -> tuple[dict[str, int], list[ClampHit]]:
    """Clamp each component into [min_weight, max_weight], recording which hit a bound."""
    clamped: dict[str, int] = {}
    hits: list[ClampHit] = []
    for key in WEIGHT_KEYS:
        value = weights[key]
        if value < min_weight:
            clamped[key] = min_weight
            hits.append(ClampHit(key=key, hit_min=True, hit_max=False))
        elif value > max_weight:
            clamped[key] = max_weight
            hits.append(ClampHit(key=key, hit_min=False, hit_max=True))
        else:
            clamped[key] = value
    return clamped, hits


def normalize_to_total(weights: dict[str, float], total: int = RULES_TOTAL) -> dict[str, int]:
    """Scale proportionally to ``total`` and round to integers.

    Rounding is half-up; any remainder goes to the currently largest
    component (first in key order on ties).
    """
    current = sum(weights[k] for k in WEIGHT_KEYS)
    if current <= 0:
        msg = f"cannot normalise weights with non-positive sum {current}"
        raise WeightInvariantError(msg, {"weights": dict(weights)})

    if current == total and all(float(weights[k]).is_integer() for k in WEIGHT_KEYS):
        return {k: int(weights[k]) for k in WEIGHT_KEYS}

    scale = total / current
    rounded = {k: math.floor(weights[k] * scale + 0.5) for k in WEIGHT_KEYS}
    diff = total - sum(rounded.values())
    if diff:
        largest = max(WEIGHT_KEYS, key=lambda k: rounded[k])
        rounded[largest] += diff
    return rounded


def apply_rules(
    rules: list[str] | tuple[str, ...],
    min_weight: int,
    max_weight: int,
) -> tuple[dict[str, int], list[ClampHit]]:
    """Add each rule's deltas to the baseline, clamp, and renormalise to 100."""
    weights = dict(BASE_WEIGHTS)
    for rule in rules:
        for key, delta in RULE_DELTAS[rule].items():
            weights[key] += delta
    clamped, hits = clamp_weights(weights, min_weight, max_weight)
    return normalize_to_total({k: float(v) for k, v in clamped.items()}, RULES_TOTAL), hits


def unreachable_rule_combinations(min_weight: int, max_weight: int) -> list[tuple[str, ...]]:
    """Rule combinations whose renormalised vector leaves [min_weight, max_weight].

    Every subset of RULE_DELTAS can be triggered by some intent, so bounds
    are usable only when this returns an empty list.
    """
    failing: list[tuple[str, ...]] = []
    for size in range(len(RULE_DELTAS) + 1):
        for rules in itertools.combinations(RULE_DELTAS, size):
            weights, _ = apply_rules(rules, min_weight, max_weight)
            if any(not min_weight <= weights[k] <= max_weight for k in WEIGHT_KEYS):
                failing.append(rules)
    return failing


def _assert_rule_postconditions(weights: dict[str, int], config: RankingConfig) -> None:
    total = sum(weights.values())
    if total != RULES_TOTAL:
        msg = f"Normalisation failed: sum={total}, expected {RULES_TOTAL}"
        logger.error("Weight invariant violated: %s (weights=%s)", msg, weights)
        raise WeightInvariantError(msg, {"weights": weights, "sum": total})
    for key in WEIGHT_KEYS:
        value = weights[key]
        if value < config.min_weight or value > config.max_weight:
            msg = f"Weight out of bounds: {key}={value}, expected [{config.min_weight}, {config.max_weight}]"
            logger.error("Weight invariant violated: %s (weights=%s)", msg, weights)
            raise WeightInvariantError(msg, {"weights": weights, "key": key, "value": value})


def resolve_rule_weights(ctx: WeightContext, config: RankingConfig) -> WeightResolution:
    """Compute weights with the rule-delta engine.

    Raises:
        WeightInvariantError: If the result does not sum to 100 or a
            component leaves the clamp range.
    """
    rules = _triggered_rules(ctx)
    reason_codes = ["BASE_BALANCED", *rules]
    normalized, hits = apply_rules(rules, config.min_weight, config.max_weight)
    _assert_rule_postconditions(normalized, config)

    logger.debug("Rule weights %s from %s", normalized, reason_codes)
    return WeightResolution(
        strategy="rules",
        profile="HYBRID",
        weights=RankingWeights(**normalized),
        total=RULES_TOTAL,
        reason_codes=tuple(reason_codes),
        clamp_hits=tuple(hits),
        inputs_snapshot=ctx.model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# Profile table
# ---------------------------------------------------------------------------


def select_profile(ctx: WeightContext) -> str:
    """Pick a preset: no location, then proximity, quality, cuisine, default."""
    if not ctx.has_user_location:
        return "NO_LOCATION"
    if ctx.route is Route.NEARBY or ctx.distance_intent:
        return "NEARBY"
    if ctx.quality_intent or ctx.occasion == "romantic":
        return "QUALITY"
    if ctx.cuisine_key:
        return "CUISINE"
    return "BALANCED"


def resolve_profile_weights(ctx: WeightContext) -> WeightResolution:
    profile = select_profile(ctx)
    weights = PROFILE_WEIGHTS[profile]
    validate_profile_weights(weights)
    logger.debug("Profile %s selected", profile)
    return WeightResolution(
        strategy="profile",
        profile=profile,
        weights=weights,
        total=PROFILE_TOTAL,
        reason_codes=(f"PROFILE_{profile}",),
        inputs_snapshot=ctx.model_dump(mode="json"),
    )


def validate_profile_weights(weights: RankingWeights) -> None:
    """Raise WeightInvariantError unless weights sum to 1.0 with every component in [0, 1]."""
    total = weights.total()
    if abs(total - PROFILE_TOTAL) > PROFILE_TOLERANCE:
        msg = f"Weights must sum to 1.0 (got {total:.4f})"
        raise WeightInvariantError(msg, {"weights": weights.model_dump(), "sum": total})
    for key in WEIGHT_KEYS:
        value = getattr(weights, key)
        if value < 0 or value > 1:
            msg = f"Weight must be in [0, 1] (got {key}={value})"
            raise WeightInvariantError(msg, {"weights": weights.model_dump(), "key": key})


def validate_all_profiles() -> None:
    for name, weights in PROFILE_WEIGHTS.items():
        try:
            validate_profile_weights(weights)
        except WeightInvariantError as e:
            msg = f"Profile {name} has invalid weights: {e}"
            raise WeightInvariantError(msg, e.details) from e


def resolve_weights(ctx: WeightContext, config: RankingConfig) -> WeightResolution:
    """Run the configured strategy."""
    if config.strategy == "profile":
        return resolve_profile_weights(ctx)
    return resolve_rule_weights(ctx, config)


# Fail fast on a broken preset table.
validate_all_profiles()
