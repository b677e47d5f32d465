"""Deduplication engine: decide whether an existing job can be reused.

Decision matrix:
  1. no candidate   → NEW_JOB  (NO_CANDIDATE)
  2. DONE_SUCCESS   → REUSE    (cached result)
  3. DONE_FAILED    → NEW_JOB  (previous job failed)
  4. RUNNING        → REUSE if fresh, NEW_JOB if stale by heartbeat or age
  5. PENDING / DONE_CLARIFY / DONE_STOPPED → REUSE

The engine only reads the record. Marking a stale job as failed is the
caller's job.
"""

import logging
import sqlite3
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from dining_search.core.config import DedupConfig
from dining_search.core.schemas import JobRecord, JobStatus

logger = logging.getLogger(__name__)


class StalenessDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    age_ms: int
    updated_age_ms: int
    max_age_ms: int
    is_stale_by_updated_at: bool = False
    is_stale_by_age: bool = False


class ReuseEligibility(BaseModel):
    model_config = ConfigDict(frozen=True)

    eligible: bool
    reason: str
    details: StalenessDetails | None = None


class DeduplicationDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_reuse: bool
    reason: str
    existing_job: JobRecord | None = None
    age_ms: int | None = None
    updated_age_ms: int | None = None


class JobLookup(Protocol):
    def find_by_idempotency_key(self, key: str, fresh_window_ms: int, now: int) -> JobRecord | None: ...


def should_reuse(job: JobRecord, now: int, config: DedupConfig) -> ReuseEligibility:
    """Apply the decision matrix to a single job."""
    age_ms = now - job.created_at
    updated_age_ms = now - job.updated_at
    max_age = config.running_max_age_ms

    if job.status is JobStatus.DONE_SUCCESS:
        return ReuseEligibility(eligible=True, reason="CACHED_RESULT_AVAILABLE")

    if job.status is JobStatus.DONE_FAILED:
        return ReuseEligibility(eligible=False, reason="PREVIOUS_JOB_FAILED")

    if job.status is JobStatus.RUNNING:
        stale_by_updated = updated_age_ms > max_age
        stale_by_age = age_ms > max_age
        details = StalenessDetails(
            age_ms=age_ms,
            updated_age_ms=updated_age_ms,
            max_age_ms=max_age,
            is_stale_by_updated_at=stale_by_updated,
            is_stale_by_age=stale_by_age,
        )
        if stale_by_updated:
            reason = f"STALE_RUNNING_NO_HEARTBEAT (updatedAgeMs: {updated_age_ms}ms > {max_age}ms)"
            return ReuseEligibility(eligible=False, reason=reason, details=details)
        if stale_by_age:
            reason = f"STALE_RUNNING_TOO_OLD (ageMs: {age_ms}ms > {max_age}ms)"
            return ReuseEligibility(eligible=False, reason=reason, details=details)
        reason = f"RUNNING_FRESH (updatedAgeMs: {updated_age_ms}ms <= {max_age}ms)"
        return ReuseEligibility(eligible=True, reason=reason, details=details)

    return ReuseEligibility(eligible=True, reason=f"STATUS_{job.status.value}")


def decide_reuse(candidate: JobRecord | None, now: int, config: DedupConfig) -> DeduplicationDecision:
    """Map a job-store lookup result to a reuse/new-job decision."""
    if candidate is None:
        return DeduplicationDecision(should_reuse=False, reason="NO_CANDIDATE")

    eligibility = should_reuse(candidate, now, config)
    decision = DeduplicationDecision(
        should_reuse=eligibility.eligible,
        reason=eligibility.reason,
        existing_job=candidate if eligibility.eligible else None,
        age_ms=now - candidate.created_at,
        updated_age_ms=now - candidate.updated_at,
    )
    logger.debug("Dedup %s: %s", candidate.request_id, summarize(decision))
    return decision


def is_stale(job: JobRecord, now: int, config: DedupConfig) -> bool:
    """Return True for a RUNNING job past its heartbeat or age limit."""
    if job.status is not JobStatus.RUNNING:
        return False
    max_age = config.running_max_age_ms
    return now - job.updated_at > max_age or now - job.created_at > max_age


def summarize(decision: DeduplicationDecision) -> str:
    """Human-readable one-liner for logs."""
    action = "REUSE" if decision.should_reuse else "NEW_JOB"
    age = f", ageMs: {decision.age_ms}" if decision.age_ms is not None else ""
    updated_age = f", updatedAgeMs: {decision.updated_age_ms}" if decision.updated_age_ms is not None else ""
    return f"Decision: {action} - {decision.reason}{age}{updated_age}"


class DeduplicationService:
    """Looks up candidate jobs and applies the decision matrix.

    Usage::

        service = DeduplicationService(store, settings.dedup)
        decision = service.decide(idempotency_key, now=now_ms)
        if decision.should_reuse:
            ...  # return decision.existing_job
    """

    def __init__(self, store: JobLookup, config: DedupConfig) -> None:
        self._store = store
        self._config = config

    def find_candidate(self, key: str, now: int) -> JobRecord | None:
        """Return the candidate job, or None if the lookup fails."""
        try:
            return self._store.find_by_idempotency_key(key, self._config.success_fresh_window_ms, now)
        except sqlite3.Error as e:
            logger.warning("Job lookup failed for key '%s', treating as no candidate: %s", key, e)
            return None

    def decide(self, key: str, now: int) -> DeduplicationDecision:
        return decide_reuse(self.find_candidate(key, now), now, self._config)
