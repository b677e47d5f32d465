"""Ranking signals surfaced to the publisher for UX transparency."""

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict

from dining_search.core.config import SignalsConfig
from dining_search.core.schemas import PlaceCandidate, RankingWeights

DominantFactor = Literal["RATING", "REVIEWS", "DISTANCE", "OPEN", "NONE"]

_FACTOR_BY_KEY: dict[str, DominantFactor] = {
    "rating": "RATING",
    "reviews": "REVIEWS",
    "distance": "DISTANCE",
    "open_boost": "OPEN",
}


class OpenUnknownStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    unknown_count: int = 0
    known_open_count: int = 0
    known_closed_count: int = 0


class SignalTriggers(BaseModel):
    model_config = ConfigDict(frozen=True)

    low_results: bool
    relax_used: bool
    many_open_unknown: bool
    dominated_by_one_factor: bool


class SignalFacts(BaseModel):
    model_config = ConfigDict(frozen=True)

    shown_now: int
    total_pool: int
    has_user_location: bool


class RankingSignals(BaseModel):
    model_config = ConfigDict(frozen=True)

    profile: str
    dominant_factor: DominantFactor
    triggers: SignalTriggers
    facts: SignalFacts


def open_unknown_stats(candidates: list[PlaceCandidate]) -> OpenUnknownStats:
    return OpenUnknownStats(
        unknown_count=sum(1 for c in candidates if c.open_now is None),
        known_open_count=sum(1 for c in candidates if c.open_now is True),
        known_closed_count=sum(1 for c in candidates if c.open_now is False),
    )


def dominant_factor(weights: RankingWeights, threshold: float) -> DominantFactor:
    """The heaviest of rating/reviews/distance/open, if it reaches ``threshold`` on the 1.0 scale."""
    fractions = weights if math.isclose(weights.total(), 1.0) else weights.as_fraction()
    key = max(_FACTOR_BY_KEY, key=lambda k: getattr(fractions, k))
    if getattr(fractions, key) >= threshold:
        return _FACTOR_BY_KEY[key]
    return "NONE"


def build_ranking_signals(
    *,
    profile: str,
    weights: RankingWeights,
    has_user_location: bool,
    results_before_filters: int,
    results_after_filters: int,
    relax_used: bool,
    open_stats: OpenUnknownStats,
    config: SignalsConfig,
) -> RankingSignals:
    factor = dominant_factor(weights, config.dominant_weight_threshold)
    unknown_ratio = (
        open_stats.unknown_count / results_after_filters if results_after_filters > 0 else 0.0
    )
    return RankingSignals(
        profile=profile,
        dominant_factor=factor,
        triggers=SignalTriggers(
            low_results=results_after_filters <= config.low_results_threshold,
            relax_used=relax_used,
            many_open_unknown=unknown_ratio >= config.many_open_unknown_ratio,
            dominated_by_one_factor=factor != "NONE",
        ),
        facts=SignalFacts(
            shown_now=results_after_filters,
            total_pool=results_before_filters,
            has_user_location=has_user_location,
        ),
    )
