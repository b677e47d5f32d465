"""Core data models for the dining search decision core.

All models are frozen: engines derive new instances with ``model_copy``
instead of mutating their inputs.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

HHMM_PATTERN = r"^\d\d:\d\d$"

MinRatingBucket = Literal["R35", "R40", "R45"]
OpenState = Literal["OPEN_NOW", "CLOSED_NOW"]
PriceIntent = Literal["CHEAP", "MID", "EXPENSIVE"]

MIN_RATING_BY_BUCKET: dict[str, float] = {"R35": 3.5, "R40": 4.0, "R45": 4.5}


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE_SUCCESS = "DONE_SUCCESS"
    DONE_FAILED = "DONE_FAILED"
    DONE_CLARIFY = "DONE_CLARIFY"
    DONE_STOPPED = "DONE_STOPPED"


class Route(str, Enum):
    TEXTSEARCH = "TEXTSEARCH"
    NEARBY = "NEARBY"
    LANDMARK = "LANDMARK"


class JobRecord(BaseModel):
    """A search job as persisted by the job store.

    Timestamps are epoch milliseconds. Only the job store mutates jobs;
    the decision engines read them.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    session_id: str
    status: JobStatus
    created_at: int
    updated_at: int
    idempotency_key: str | None = None
    result: dict[str, Any] | None = None


class LatLng(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class OpenAt(BaseModel):
    """Open at a specific day (0=Sunday) and time."""

    model_config = ConfigDict(frozen=True)

    day: int | None = Field(default=None, ge=0, le=6)
    time_hhmm: str = Field(pattern=HHMM_PATTERN)


class OpenBetween(BaseModel):
    """Open for the whole window between two times on a day."""

    model_config = ConfigDict(frozen=True)

    day: int | None = Field(default=None, ge=0, le=6)
    start_hhmm: str = Field(pattern=HHMM_PATTERN)
    end_hhmm: str = Field(pattern=HHMM_PATTERN)


class SearchContext(BaseModel):
    """Point-in-time snapshot of resolved search parameters.

    Hard fields (query, route, location anchor, radius) shape the provider
    request; soft fields are applied locally to fetched candidates.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    route: Route = Route.TEXTSEARCH

    # Location anchors
    user_location: LatLng | None = None
    city_text: str | None = None
    region_code: str | None = None
    radius_meters: int | None = Field(default=None, gt=0)

    # Soft filters
    open_now: bool | None = None
    open_at: OpenAt | None = None
    open_between: OpenBetween | None = None
    price_intent: PriceIntent | None = None
    price_level: int | None = Field(default=None, ge=1, le=4)
    min_rating_bucket: MinRatingBucket | None = None
    min_review_count_bucket: str | None = None
    is_kosher: bool | None = None
    is_gluten_free: bool | None = None
    dietary: tuple[str, ...] | None = None
    accessible: bool | None = None
    parking: bool | None = None


class PoolStats(BaseModel):
    """How many fetched candidates survive local filtering."""

    model_config = ConfigDict(frozen=True)

    total_candidates: int = Field(ge=0)
    after_soft_filters: int = Field(ge=0)
    requested_limit: int = Field(default=20, ge=0)


class FinalFilters(BaseModel):
    """The relaxable subset of the search filters."""

    model_config = ConfigDict(frozen=True)

    open_state: OpenState | None = None
    open_at: OpenAt | None = None
    open_between: OpenBetween | None = None
    is_kosher: bool | None = None
    is_gluten_free: bool | None = None
    min_rating_bucket: MinRatingBucket | None = None


class RankingWeights(BaseModel):
    """Weight vector consumed by the result ranker.

    Profile presets use the 1.0 scale, the rule engine the 100 scale.
    """

    model_config = ConfigDict(frozen=True)

    rating: float = Field(ge=0.0)
    reviews: float = Field(ge=0.0)
    distance: float = Field(ge=0.0)
    open_boost: float = Field(ge=0.0)
    cuisine_match: float = Field(default=0.0, ge=0.0)

    def total(self) -> float:
        return self.rating + self.reviews + self.distance + self.open_boost + self.cuisine_match

    def as_fraction(self) -> "RankingWeights":
        """Return the same weights rescaled to sum to 1.0 (zeros stay zeros)."""
        total = self.total()
        if total <= 0:
            return self
        return RankingWeights(
            rating=self.rating / total,
            reviews=self.reviews / total,
            distance=self.distance / total,
            open_boost=self.open_boost / total,
            cuisine_match=self.cuisine_match / total,
        )


class OpenPeriod(BaseModel):
    """A single opening window; close < open means it runs past midnight."""

    model_config = ConfigDict(frozen=True)

    day: int = Field(ge=0, le=6)
    open_hhmm: str = Field(pattern=HHMM_PATTERN)
    close_hhmm: str = Field(pattern=HHMM_PATTERN)


class PlaceCandidate(BaseModel):
    """A restaurant returned by the places provider.

    ``open_now`` is tri-state: True, False, or None for unknown.
    """

    model_config = ConfigDict(frozen=True)

    place_id: str
    name: str = ""
    rating: float | None = Field(default=None, ge=0.0, le=5.0)
    user_ratings_total: int | None = Field(default=None, ge=0)
    location: LatLng | None = None
    open_now: bool | None = None
    open_periods: tuple[OpenPeriod, ...] | None = None
    price_level: int | None = Field(default=None, ge=0, le=4)
    cuisine_score: float | None = Field(default=None, ge=0.0, le=1.0)
    is_kosher: bool | None = None
    is_gluten_free: bool | None = None


class IntentSignals(BaseModel):
    """Structured output of the classification/intent collaborator."""

    model_config = ConfigDict(frozen=True)

    route: Route = Route.TEXTSEARCH
    cuisine_key: str | None = None
    distance_intent: bool = False
    open_now_requested: bool = False
    price_intent: PriceIntent | None = None
    quality_intent: bool = False
    occasion: str | None = None
    language: str = "en"
    language_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    region: str = "IL"
    ui_language: str | None = None
