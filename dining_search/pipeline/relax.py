"""Relaxation engine: loosen one soft filter at a time when too few candidates remain.

Priority order (exactly one field per call):
  1. opening hours: open_state=OPEN_NOW, then open_at, then open_between
  2. dietary: is_kosher, then is_gluten_free
  3. min_rating_bucket (last resort)

Fields listed as hard constraints are never relaxed; the refusal is
recorded in ``denied``. Radius widening is not a relaxation: it needs a
provider requery.
"""

import logging
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict

from dining_search.core.config import RelaxConfig
from dining_search.core.schemas import FinalFilters

logger = logging.getLogger(__name__)

T = TypeVar("T")

HARD_CONSTRAINT_REASONS = {"isKosher": "religious_dietary_requirement"}


class RelaxStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: int
    field: str
    from_value: Any
    to_value: Any = None
    reason: str


class RelaxDenied(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    reason: str
    reason_code: str


class RelaxResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    relaxed: bool
    next_filters: FinalFilters
    steps: tuple[RelaxStep, ...] = ()
    denied: tuple[RelaxDenied, ...] = ()
    attempted_fields: tuple[str, ...] = ()


class CascadeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    final_filters: FinalFilters
    final_candidates: list[Any]
    steps: tuple[RelaxStep, ...] = ()
    denied: tuple[RelaxDenied, ...] = ()
    attempts: int = 0


def relax_if_too_few(
    candidates_after_filter: int,
    filters: FinalFilters,
    attempt: int,
    config: RelaxConfig,
) -> RelaxResult:
    """Relax the highest-priority active filter if the pool is too small.

    Returns ``relaxed=False`` with the input filters when the count is
    sufficient, attempts are used up, or nothing relaxable remains.
    """
    if candidates_after_filter >= config.min_acceptable or attempt >= config.max_attempts:
        return RelaxResult(relaxed=False, next_filters=filters)

    attempted: list[str] = []
    denied: list[RelaxDenied] = []

    step = _relax_opening_hours(filters)
    if step is not None:
        attempted.append(step.field)
    else:
        step = _relax_dietary(filters, config.hard_constraints, attempted, denied)
    if step is None and filters.min_rating_bucket is not None:
        attempted.append("minRatingBucket")
        step = RelaxStep(
            step=3,
            field="minRatingBucket",
            from_value=filters.min_rating_bucket,
            reason="too_few_high_rated_results",
        )

    if step is None:
        logger.debug("Nothing left to relax (attempt %d, %d candidates)", attempt, candidates_after_filter)
        return RelaxResult(
            relaxed=False,
            next_filters=filters,
            denied=tuple(denied),
            attempted_fields=tuple(attempted),
        )

    next_filters = filters.model_copy(update={_FIELD_ATTRS[step.field]: None})
    logger.debug(
        "Relaxed %s (%s -> None) on attempt %d: %d candidates < %d",
        step.field, step.from_value, attempt, candidates_after_filter, config.min_acceptable,
    )
    return RelaxResult(
        relaxed=True,
        next_filters=next_filters,
        steps=(step,),
        denied=tuple(denied),
        attempted_fields=tuple(attempted),
    )


_FIELD_ATTRS = {
    "openState": "open_state",
    "openAt": "open_at",
    "openBetween": "open_between",
    "isKosher": "is_kosher",
    "isGlutenFree": "is_gluten_free",
    "minRatingBucket": "min_rating_bucket",
}


def _relax_opening_hours(filters: FinalFilters) -> RelaxStep | None:
    if filters.open_state == "OPEN_NOW":
        return RelaxStep(step=1, field="openState", from_value="OPEN_NOW", reason="too_few_open_now_results")
    if filters.open_at is not None:
        return RelaxStep(
            step=1,
            field="openAt",
            from_value=filters.open_at.model_dump(),
            reason="too_few_openAt_results",
        )
    if filters.open_between is not None:
        return RelaxStep(
            step=1,
            field="openBetween",
            from_value=filters.open_between.model_dump(),
            reason="too_few_openBetween_results",
        )
    return None


def _relax_dietary(
    filters: FinalFilters,
    hard_constraints: Sequence[str],
    attempted: list[str],
    denied: list[RelaxDenied],
) -> RelaxStep | None:
    # A denied kosher relaxation does not fall through to gluten-free.
    if filters.is_kosher is True:
        attempted.append("isKosher")
        if "isKosher" in hard_constraints:
            denied.append(RelaxDenied(
                field="isKosher",
                reason="Hard constraint - religious dietary requirement",
                reason_code=HARD_CONSTRAINT_REASONS["isKosher"],
            ))
            return None
        return RelaxStep(step=2, field="isKosher", from_value=True, reason="too_few_kosher_results")
    if filters.is_gluten_free is True:
        attempted.append("isGlutenFree")
        return RelaxStep(step=2, field="isGlutenFree", from_value=True, reason="too_few_gluten_free_results")
    return None


def can_relax_further(filters: FinalFilters) -> bool:
    """True if any relaxable field is still set (ignores hard constraints)."""
    return (
        filters.open_state == "OPEN_NOW"
        or filters.open_at is not None
        or filters.open_between is not None
        or filters.is_kosher is True
        or filters.is_gluten_free is True
        or filters.min_rating_bucket is not None
    )


def can_relax_further_safe(filters: FinalFilters, hard_constraints: Sequence[str]) -> bool:
    """Like can_relax_further, but a hard-constrained kosher flag does not count."""
    if filters.open_state == "OPEN_NOW" or filters.open_at is not None or filters.open_between is not None:
        return True
    if filters.is_kosher is True and "isKosher" not in hard_constraints:
        return True
    return filters.is_gluten_free is True or filters.min_rating_bucket is not None


def apply_relaxation_cascade(
    pool: list[T],
    filters: FinalFilters,
    filter_fn: Callable[[list[T], FinalFilters], list[T]],
    config: RelaxConfig,
) -> CascadeResult:
    """Relax filters repeatedly until enough candidates survive or attempts run out."""
    candidates = filter_fn(pool, filters)
    steps: list[RelaxStep] = []
    denied: list[RelaxDenied] = []
    attempts = 0

    while len(candidates) < config.min_acceptable and attempts < config.max_attempts:
        result = relax_if_too_few(len(candidates), filters, attempts, config)
        denied.extend(result.denied)
        if not result.relaxed:
            break
        filters = result.next_filters
        steps.extend(result.steps)
        attempts += 1
        candidates = filter_fn(pool, filters)

    if steps:
        logger.info(
            "Relaxation applied %d step(s): %s -> %d candidates",
            len(steps), ", ".join(s.field for s in steps), len(candidates),
        )

    return CascadeResult(
        final_filters=filters,
        final_candidates=candidates,
        steps=tuple(steps),
        denied=tuple(denied),
        attempts=attempts,
    )
