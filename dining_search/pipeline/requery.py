"""Requery engine: decide whether the places provider must be called again.

Rules (first match wins):
  1. no previous context            → requery  first_request
  2. query text changed             → requery  query_changed
  3. route changed                  → requery  route_changed
  4. location anchor changed        → requery  location_anchor_changed
  5. radius grew past threshold     → requery  radius_changed_significantly
  6. no cached pool                 → requery  no_candidate_pool
  7. pool exhausted after filtering → requery  pool_exhausted_after_filters
  8. only soft filters changed      → reuse    soft_filters_only
  9. nothing material changed       → reuse    no_changes_detected

Pure value comparisons on two snapshots; no store or network access.
"""

import logging

from pydantic import BaseModel, ConfigDict

from dining_search.core.config import RequeryConfig
from dining_search.core.geo import haversine_m
from dining_search.core.schemas import PoolStats, SearchContext

logger = logging.getLogger(__name__)

# Context fields that can be applied to an already-fetched pool.
SOFT_FILTER_FIELDS: tuple[str, ...] = (
    "open_now",
    "open_at",
    "open_between",
    "price_intent",
    "price_level",
    "min_rating_bucket",
    "min_review_count_bucket",
    "is_kosher",
    "is_gluten_free",
    "dietary",
    "accessible",
    "parking",
)


class Changeset(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: bool = False
    route: bool = False
    location: bool = False
    radius: bool = False
    soft_filters: tuple[str, ...] = ()


class RequeryDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    do_google: bool
    reason: str
    changeset: Changeset | None = None


def should_requery(
    prev: SearchContext | None,
    next_ctx: SearchContext,
    pool: PoolStats | None,
    config: RequeryConfig,
) -> RequeryDecision:
    """Decide whether a fresh provider lookup is needed for ``next_ctx``."""
    decision = _decide(prev, next_ctx, pool, config)
    logger.debug("Requery decision: do_google=%s reason=%s", decision.do_google, decision.reason)
    return decision


def _decide(
    prev: SearchContext | None,
    next_ctx: SearchContext,
    pool: PoolStats | None,
    config: RequeryConfig,
) -> RequeryDecision:
    if prev is None:
        return RequeryDecision(do_google=True, reason="first_request")

    if prev.query != next_ctx.query:
        return RequeryDecision(do_google=True, reason="query_changed", changeset=Changeset(query=True))

    if prev.route != next_ctx.route:
        return RequeryDecision(do_google=True, reason="route_changed", changeset=Changeset(route=True))

    if has_location_anchor_changed(prev, next_ctx, config):
        return RequeryDecision(
            do_google=True,
            reason="location_anchor_changed",
            changeset=Changeset(location=True),
        )

    if has_significant_radius_change(prev, next_ctx, config):
        return RequeryDecision(
            do_google=True,
            reason="radius_changed_significantly",
            changeset=Changeset(radius=True),
        )

    if pool is None or pool.total_candidates == 0:
        return RequeryDecision(do_google=True, reason="no_candidate_pool")

    if is_pool_exhausted(pool, config):
        return RequeryDecision(do_google=True, reason="pool_exhausted_after_filters")

    changed = detect_soft_filter_changes(prev, next_ctx)
    if changed:
        return RequeryDecision(
            do_google=False,
            reason="soft_filters_only",
            changeset=Changeset(soft_filters=tuple(changed)),
        )

    return RequeryDecision(do_google=False, reason="no_changes_detected")


def has_location_anchor_changed(prev: SearchContext, next_ctx: SearchContext, config: RequeryConfig) -> bool:
    prev_loc = prev.user_location
    next_loc = next_ctx.user_location

    if (prev_loc is None) != (next_loc is None):
        return True

    if prev_loc is not None and next_loc is not None:
        if haversine_m(prev_loc, next_loc) > config.location_change_threshold_m:
            return True

    return prev.city_text != next_ctx.city_text or prev.region_code != next_ctx.region_code


def has_significant_radius_change(prev: SearchContext, next_ctx: SearchContext, config: RequeryConfig) -> bool:
    """True when the radius grew by more than the configured percentage."""
    prev_radius = prev.radius_meters or config.default_radius_m
    next_radius = next_ctx.radius_meters or config.default_radius_m
    percent_increase = (next_radius - prev_radius) / prev_radius * 100
    return percent_increase > config.radius_increase_threshold_pct


def is_pool_exhausted(pool: PoolStats, config: RequeryConfig) -> bool:
    if pool.after_soft_filters == 0:
        return True
    return pool.after_soft_filters < pool.requested_limit and pool.after_soft_filters < config.pool_exhaustion_floor


def detect_soft_filter_changes(prev: SearchContext, next_ctx: SearchContext) -> list[str]:
    """Return the names of soft filter fields whose values differ."""
    return [name for name in SOFT_FILTER_FIELDS if getattr(prev, name) != getattr(next_ctx, name)]
