"""Ranking invariant enforcer: a missing signal means a zero weight.

  1. no cuisine key, or no per-result cuisine scores → cuisine_match = 0
  2. no user location                                → distance = 0
  3. no explicit open-now request                    → open_boost = 0

Applied after either weight strategy, regardless of what it produced.
"""

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict

from dining_search.core.schemas import RankingWeights
from dining_search.pipeline.weights import WEIGHT_KEYS, normalize_to_total

logger = logging.getLogger(__name__)

Rule = Literal["NO_CUISINE_INTENT", "NO_CUISINE_SCORES", "NO_USER_LOCATION", "NO_OPEN_NOW_REQUESTED"]


class RankingContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_user_location: bool
    cuisine_key: str | None = None
    open_now_requested: bool | None = None
    has_cuisine_scores: bool = False


class InvariantViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: Rule
    component: Literal["cuisine_match", "distance", "open_boost"]
    original_weight: float
    enforced_weight: float = 0.0
    message: str


class EnforcementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    enforced_weights: RankingWeights
    violations: tuple[InvariantViolation, ...] = ()
    applied_rules: tuple[str, ...] = ()
    renormalized: bool = False


def enforce_invariants(
    weights: RankingWeights,
    context: RankingContext,
    renormalize: bool = False,
) -> EnforcementResult:
    """Zero every component whose supporting signal is absent.

    With ``renormalize`` the surviving components are scaled back to the
    original total; integer vectors stay integer and sum exactly.
    """
    updates: dict[str, float] = {}
    violations: list[InvariantViolation] = []

    if (not context.cuisine_key or not context.has_cuisine_scores) and weights.cuisine_match > 0:
        no_intent = not context.cuisine_key
        violations.append(InvariantViolation(
            rule="NO_CUISINE_INTENT" if no_intent else "NO_CUISINE_SCORES",
            component="cuisine_match",
            original_weight=weights.cuisine_match,
            message=(
                "No cuisine intent specified - cuisine matching disabled"
                if no_intent
                else "No cuisine scores available in results - cuisine matching disabled"
            ),
        ))
        updates["cuisine_match"] = 0.0

    if not context.has_user_location and weights.distance > 0:
        violations.append(InvariantViolation(
            rule="NO_USER_LOCATION",
            component="distance",
            original_weight=weights.distance,
            message="No user location available - distance scoring disabled",
        ))
        updates["distance"] = 0.0

    if not context.open_now_requested and weights.open_boost > 0:
        violations.append(InvariantViolation(
            rule="NO_OPEN_NOW_REQUESTED",
            component="open_boost",
            original_weight=weights.open_boost,
            message="No open-now filter requested - open boost disabled",
        ))
        updates["open_boost"] = 0.0

    enforced = weights.model_copy(update=updates)
    renormalized = False
    if renormalize and violations and enforced.total() > 0:
        enforced = _renormalize(enforced, weights.total())
        renormalized = True

    result = EnforcementResult(
        enforced_weights=enforced,
        violations=tuple(violations),
        applied_rules=tuple(f"{v.rule} ({v.component})" for v in violations),
        renormalized=renormalized,
    )
    if violations:
        logger.debug("Ranking invariants: %s", summarize(result))
    return result


def _renormalize(weights: RankingWeights, target: float) -> RankingWeights:
    values = {k: getattr(weights, k) for k in WEIGHT_KEYS}
    if all(float(v).is_integer() for v in values.values()) and float(target).is_integer():
        # Zeros stay zero: scaling 0 rounds back to 0.
        return RankingWeights(**normalize_to_total(values, int(target)))
    current = sum(values.values())
    return RankingWeights(**{k: v * target / current for k, v in values.items()})


def check_invariants(weights: RankingWeights, context: RankingContext) -> tuple[InvariantViolation, ...]:
    """Return the violations enforcement would apply, without using the result."""
    return enforce_invariants(weights, context).violations


def validate(weights: RankingWeights, context: RankingContext) -> bool:
    return not check_invariants(weights, context)


def summarize(result: EnforcementResult) -> str:
    if not result.violations:
        return "All invariants satisfied - no enforcement needed"
    parts = [f"{v.component}: {v.original_weight} -> {v.enforced_weight} ({v.rule})" for v in result.violations]
    return f"Applied {len(result.violations)} invariant(s): {', '.join(parts)}"
