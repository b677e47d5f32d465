"""Deterministic multi-factor result ranker.

Score = w.rating * rating/5
      + w.reviews * clamp(log10(reviews + 1) / 5, 0, 1)
      + w.distance * 1 / (1 + km)            (only with weight > 0 and a user location)
      + w.open_boost * {open: 1, unknown: 0.5, closed: 0}
      + w.cuisine_match * cuisine_score      (0.5 when missing)

Exact score ties fall back to raw rating desc, review count desc, then
provider order asc, so provider order survives whenever no weighted
factor separates two candidates.
"""

import math

from pydantic import BaseModel, ConfigDict

from dining_search.core.geo import haversine_km
from dining_search.core.schemas import LatLng, PlaceCandidate, RankingWeights

UNKNOWN_OPEN_SCORE = 0.5
MISSING_CUISINE_SCORE = 0.5


class ScoreComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    rating_score: float
    reviews_score: float
    distance_score: float
    open_boost_score: float
    cuisine_match_score: float


class ScoreBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    place_id: str
    rating: float | None
    user_rating_count: int | None
    distance_meters: int | None
    open_now: bool | None
    cuisine_score: float | None
    weights: RankingWeights
    components: ScoreComponents
    total_score: float


def rank_results(
    candidates: list[PlaceCandidate],
    weights: RankingWeights,
    user_location: LatLng | None = None,
) -> list[PlaceCandidate]:
    """Return a new list ordered by composite score (highest first).

    The input list is not modified and returned items carry no ranking
    metadata.
    """
    scored = [
        (compute_score(c, weights, user_location), index, c)
        for index, c in enumerate(candidates)
    ]
    scored.sort(key=lambda item: (
        -item[0],
        -(item[2].rating or 0.0),
        -(item[2].user_ratings_total or 0),
        item[1],
    ))
    return [c for _, _, c in scored]


def _components(
    c: PlaceCandidate,
    weights: RankingWeights,
    user_location: LatLng | None,
) -> tuple[dict[str, float], float | None]:
    rating_norm = _clamp((c.rating or 0.0) / 5, 0.0, 1.0)
    reviews_norm = _clamp(math.log10((c.user_ratings_total or 0) + 1) / 5, 0.0, 1.0)

    distance_norm = 0.0
    distance_km: float | None = None
    if weights.distance > 0 and user_location is not None and c.location is not None:
        distance_km = haversine_km(user_location, c.location)
        distance_norm = 1 / (1 + distance_km)

    if c.open_now is True:
        open_norm = 1.0
    elif c.open_now is False:
        open_norm = 0.0
    else:
        open_norm = UNKNOWN_OPEN_SCORE

    cuisine_norm = c.cuisine_score if c.cuisine_score is not None else MISSING_CUISINE_SCORE

    components = {
        "rating_score": weights.rating * rating_norm,
        "reviews_score": weights.reviews * reviews_norm,
        "distance_score": weights.distance * distance_norm,
        "open_boost_score": weights.open_boost * open_norm,
        "cuisine_match_score": weights.cuisine_match * cuisine_norm,
    }
    return components, distance_km


def compute_score(
    c: PlaceCandidate,
    weights: RankingWeights,
    user_location: LatLng | None = None,
) -> float:
    components, _ = _components(c, weights, user_location)
    return (
        components["rating_score"]
        + components["reviews_score"]
        + components["distance_score"]
        + components["open_boost_score"]
        + components["cuisine_match_score"]
    )


def score_breakdown(
    c: PlaceCandidate,
    weights: RankingWeights,
    user_location: LatLng | None = None,
) -> ScoreBreakdown:
    """Per-component scores for logging, rounded to 3 decimals."""
    components, distance_km = _components(c, weights, user_location)
    return ScoreBreakdown(
        place_id=c.place_id,
        rating=c.rating,
        user_rating_count=c.user_ratings_total,
        distance_meters=round(distance_km * 1000) if distance_km is not None else None,
        open_now=c.open_now,
        cuisine_score=c.cuisine_score,
        weights=weights,
        components=ScoreComponents(**{k: round(v, 3) for k, v in components.items()}),
        total_score=round(compute_score(c, weights, user_location), 3),
    )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
