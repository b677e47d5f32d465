"""Soft filters applied locally to an already-fetched candidate pool.

Unknown opening state is kept (hours are disclosed, not guaranteed).
Dietary flags and the rating floor require a positive match.
"""

import logging

from dining_search.core.schemas import (
    MIN_RATING_BY_BUCKET,
    FinalFilters,
    OpenBetween,
    OpenPeriod,
    PlaceCandidate,
    PoolStats,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def apply_soft_filters(candidates: list[PlaceCandidate], filters: FinalFilters) -> list[PlaceCandidate]:
    """Return candidates passing every active filter, preserving provider order."""
    result = [c for c in candidates if _passes(c, filters)]
    removed = len(candidates) - len(result)
    if removed:
        logger.debug("Soft filters removed %d of %d candidates", removed, len(candidates))
    return result


def pool_stats(
    candidates: list[PlaceCandidate],
    filters: FinalFilters,
    requested_limit: int,
) -> PoolStats:
    return PoolStats(
        total_candidates=len(candidates),
        after_soft_filters=len(apply_soft_filters(candidates, filters)),
        requested_limit=requested_limit,
    )


def _passes(c: PlaceCandidate, filters: FinalFilters) -> bool:
    if filters.open_state == "OPEN_NOW" and c.open_now is False:
        return False
    if filters.open_state == "CLOSED_NOW" and c.open_now is True:
        return False

    if filters.open_at is not None and c.open_periods is not None:
        at = filters.open_at
        if not any(_open_at(p, at.day, at.time_hhmm) for p in c.open_periods):
            return False

    if filters.open_between is not None and c.open_periods is not None:
        if not any(_covers(p, filters.open_between) for p in c.open_periods):
            return False

    if filters.is_kosher is True and c.is_kosher is not True:
        return False
    if filters.is_gluten_free is True and c.is_gluten_free is not True:
        return False

    if filters.min_rating_bucket is not None:
        floor = MIN_RATING_BY_BUCKET[filters.min_rating_bucket]
        if c.rating is None or c.rating < floor:
            return False

    return True


def _open_at(period: OpenPeriod, day: int | None, hhmm: str) -> bool:
    if day is not None and period.day != day:
        return False
    if period.close_hhmm <= period.open_hhmm:
        # Runs past midnight.
        return hhmm >= period.open_hhmm or hhmm < period.close_hhmm
    return period.open_hhmm <= hhmm < period.close_hhmm


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _covers(period: OpenPeriod, window: OpenBetween) -> bool:
    """True when the whole window falls inside the period.

    Both are placed on a two-day minute timeline: a close or end at or
    before its start falls on the next day.
    """
    if window.day is not None and period.day != window.day:
        return False
    open_m, close_m = _minutes(period.open_hhmm), _minutes(period.close_hhmm)
    if close_m <= open_m:
        close_m += MINUTES_PER_DAY
    start, end = _minutes(window.start_hhmm), _minutes(window.end_hhmm)
    if end <= start:
        end += MINUTES_PER_DAY
    if start < open_m:
        # Window starts in the after-midnight part of the period.
        start += MINUTES_PER_DAY
        end += MINUTES_PER_DAY
    return open_m <= start and end <= close_m
