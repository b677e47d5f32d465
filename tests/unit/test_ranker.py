"""Tests for the result ranker: scoring, tie-breaks, stability, purity."""

import math

import pytest

from dining_search.core.schemas import LatLng, PlaceCandidate, RankingWeights
from dining_search.pipeline.ranker import compute_score, rank_results, score_breakdown

USER = LatLng(lat=32.0853, lng=34.7818)

RATING_ONLY = RankingWeights(rating=1.0, reviews=0.0, distance=0.0, open_boost=0.0)
DISTANCE_ONLY = RankingWeights(rating=0.0, reviews=0.0, distance=1.0, open_boost=0.0)
OPEN_ONLY = RankingWeights(rating=0.0, reviews=0.0, distance=0.0, open_boost=1.0)
ZERO = RankingWeights(rating=0.0, reviews=0.0, distance=0.0, open_boost=0.0)


def _c(pid: str, **kw: object) -> PlaceCandidate:
    return PlaceCandidate(place_id=pid, **kw)  # type: ignore[arg-type]


def _ids(candidates: list[PlaceCandidate]) -> list[str]:
    return [c.place_id for c in candidates]


def _north(meters: float) -> LatLng:
    return LatLng(lat=USER.lat + meters / 111_195, lng=USER.lng)


class TestComputeScore:
    def test_rating_normalized(self) -> None:
        assert compute_score(_c("a", rating=4.0), RATING_ONLY) == pytest.approx(0.8)

    def test_missing_rating_is_zero(self) -> None:
        assert compute_score(_c("a"), RATING_ONLY) == 0.0

    def test_reviews_log_scaled(self) -> None:
        w = RankingWeights(rating=0.0, reviews=1.0, distance=0.0, open_boost=0.0)
        assert compute_score(_c("a", user_ratings_total=999), w) == pytest.approx(math.log10(1000) / 5)

    def test_reviews_capped(self) -> None:
        w = RankingWeights(rating=0.0, reviews=1.0, distance=0.0, open_boost=0.0)
        assert compute_score(_c("a", user_ratings_total=10_000_000), w) == 1.0

    def test_distance_inverse(self) -> None:
        score = compute_score(_c("a", location=_north(1_000)), DISTANCE_ONLY, USER)
        assert score == pytest.approx(0.5, abs=0.01)

    def test_distance_needs_user_location(self) -> None:
        assert compute_score(_c("a", location=_north(1_000)), DISTANCE_ONLY, None) == 0.0

    @pytest.mark.parametrize(("open_now", "expected"), [(True, 1.0), (None, 0.5), (False, 0.0)])
    def test_open_state(self, open_now: bool | None, expected: float) -> None:
        assert compute_score(_c("a", open_now=open_now), OPEN_ONLY) == expected

    def test_cuisine_score(self) -> None:
        w = RankingWeights(rating=0.0, reviews=0.0, distance=0.0, open_boost=0.0, cuisine_match=1.0)
        assert compute_score(_c("a", cuisine_score=0.9), w) == pytest.approx(0.9)
        assert compute_score(_c("b"), w) == 0.5


class TestRankResults:
    def test_orders_by_score(self) -> None:
        pool = [_c("low", rating=3.0), _c("high", rating=4.9), _c("mid", rating=4.2)]
        assert _ids(rank_results(pool, RATING_ONLY)) == ["high", "mid", "low"]

    def test_closer_first(self) -> None:
        pool = [_c("far", location=_north(5_000)), _c("near", location=_north(300))]
        assert _ids(rank_results(pool, DISTANCE_ONLY, USER)) == ["near", "far"]

    def test_tie_broken_by_rating_then_reviews(self) -> None:
        # Zero weights make every score equal.
        pool = [
            _c("a", rating=4.0, user_ratings_total=10),
            _c("b", rating=4.5, user_ratings_total=5),
            _c("c", rating=4.0, user_ratings_total=50),
        ]
        assert _ids(rank_results(pool, ZERO)) == ["b", "c", "a"]

    def test_identical_scores_keep_provider_order(self) -> None:
        pool = [_c(str(i), rating=4.0, user_ratings_total=100, open_now=True) for i in range(10)]
        ranked = rank_results(pool, RankingWeights(rating=30, reviews=20, distance=0, open_boost=50))
        assert _ids(ranked) == [str(i) for i in range(10)]

    def test_distance_ignored_when_weight_zero(self) -> None:
        pool = [_c("far", location=_north(5_000)), _c("near", location=_north(100))]
        assert _ids(rank_results(pool, ZERO, USER)) == ["far", "near"]

    def test_returns_new_list_without_mutation(self) -> None:
        pool = [_c("a", rating=3.0), _c("b", rating=5.0)]
        snapshot = [c.model_dump() for c in pool]
        ranked = rank_results(pool, RATING_ONLY)
        assert ranked is not pool
        assert _ids(pool) == ["a", "b"]
        assert [c.model_dump() for c in pool] == snapshot
        assert ranked[0] is pool[1]

    def test_empty(self) -> None:
        assert rank_results([], RATING_ONLY) == []


class TestScoreBreakdown:
    def test_components(self) -> None:
        w = RankingWeights(rating=0.5, reviews=0.0, distance=0.5, open_boost=0.0)
        b = score_breakdown(_c("a", rating=5.0, location=_north(1_000), open_now=True), w, USER)
        assert b.place_id == "a"
        assert b.components.rating_score == 0.5
        assert b.components.distance_score == pytest.approx(0.25, abs=0.005)
        assert b.distance_meters is not None
        assert 990 <= b.distance_meters <= 1_010
        assert b.total_score == pytest.approx(0.75, abs=0.005)

    def test_no_distance_without_location(self) -> None:
        b = score_breakdown(_c("a", location=_north(1_000)), DISTANCE_ONLY)
        assert b.distance_meters is None
        assert b.components.distance_score == 0.0
