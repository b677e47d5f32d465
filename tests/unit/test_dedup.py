"""Tests for the deduplication engine: decision matrix, staleness, service."""

import sqlite3

import pytest

from dining_search.core.config import DedupConfig
from dining_search.core.db import SQLiteJobStore, init_db
from dining_search.core.schemas import JobRecord, JobStatus
from dining_search.pipeline.dedup import (
    DeduplicationService,
    decide_reuse,
    is_stale,
    should_reuse,
    summarize,
)

NOW = 1_700_000_000_000
CONFIG = DedupConfig(running_max_age_ms=90_000)


def _job(status: JobStatus, *, age_ms: int = 1_000, updated_age_ms: int = 1_000) -> JobRecord:
    return JobRecord(
        request_id="req-1",
        session_id="sess-1",
        status=status,
        created_at=NOW - age_ms,
        updated_at=NOW - updated_age_ms,
        idempotency_key="key-1",
    )


# ---------------------------------------------------------------------------
# Decision matrix
# ---------------------------------------------------------------------------


class TestDecideReuse:
    def test_no_candidate(self) -> None:
        d = decide_reuse(None, NOW, CONFIG)
        assert d.should_reuse is False
        assert d.reason == "NO_CANDIDATE"
        assert d.existing_job is None
        assert d.age_ms is None

    def test_done_success_reused(self) -> None:
        job = _job(JobStatus.DONE_SUCCESS, age_ms=3_000, updated_age_ms=2_000)
        d = decide_reuse(job, NOW, CONFIG)
        assert d.should_reuse is True
        assert d.reason == "CACHED_RESULT_AVAILABLE"
        assert d.existing_job == job
        assert d.age_ms == 3_000
        assert d.updated_age_ms == 2_000

    def test_done_success_reused_even_when_old(self) -> None:
        job = _job(JobStatus.DONE_SUCCESS, age_ms=10_000_000, updated_age_ms=10_000_000)
        assert decide_reuse(job, NOW, CONFIG).should_reuse is True

    def test_done_failed_new_job(self) -> None:
        d = decide_reuse(_job(JobStatus.DONE_FAILED), NOW, CONFIG)
        assert d.should_reuse is False
        assert d.reason == "PREVIOUS_JOB_FAILED"
        assert d.existing_job is None

    def test_running_fresh_reused(self) -> None:
        d = decide_reuse(_job(JobStatus.RUNNING, age_ms=30_000, updated_age_ms=5_000), NOW, CONFIG)
        assert d.should_reuse is True
        assert d.reason.startswith("RUNNING_FRESH")

    def test_running_stale_heartbeat(self) -> None:
        job = _job(JobStatus.RUNNING, age_ms=95_000, updated_age_ms=95_000)
        before = job.model_dump()
        d = decide_reuse(job, NOW, CONFIG)
        assert d.should_reuse is False
        assert "STALE_RUNNING" in d.reason
        assert d.reason.startswith("STALE_RUNNING_NO_HEARTBEAT")
        assert d.existing_job is None
        # Record untouched
        assert job.model_dump() == before
        assert job.status is JobStatus.RUNNING

    def test_running_too_old_with_fresh_heartbeat(self) -> None:
        d = decide_reuse(_job(JobStatus.RUNNING, age_ms=120_000, updated_age_ms=1_000), NOW, CONFIG)
        assert d.should_reuse is False
        assert d.reason.startswith("STALE_RUNNING_TOO_OLD")

    def test_exactly_at_max_age_is_fresh(self) -> None:
        d = decide_reuse(_job(JobStatus.RUNNING, age_ms=90_000, updated_age_ms=90_000), NOW, CONFIG)
        assert d.should_reuse is True

    @pytest.mark.parametrize("status", [JobStatus.PENDING, JobStatus.DONE_CLARIFY, JobStatus.DONE_STOPPED])
    def test_other_statuses_reused(self, status: JobStatus) -> None:
        d = decide_reuse(_job(status), NOW, CONFIG)
        assert d.should_reuse is True
        assert d.reason == f"STATUS_{status.value}"

    def test_max_age_is_injected(self) -> None:
        job = _job(JobStatus.RUNNING, age_ms=20_000, updated_age_ms=20_000)
        assert decide_reuse(job, NOW, DedupConfig(running_max_age_ms=10_000)).should_reuse is False
        assert decide_reuse(job, NOW, DedupConfig(running_max_age_ms=30_000)).should_reuse is True


class TestShouldReuse:
    def test_staleness_details_for_running(self) -> None:
        e = should_reuse(_job(JobStatus.RUNNING, age_ms=95_000, updated_age_ms=95_000), NOW, CONFIG)
        assert e.eligible is False
        assert e.details is not None
        assert e.details.is_stale_by_updated_at is True
        assert e.details.is_stale_by_age is True
        assert e.details.max_age_ms == 90_000

    def test_no_details_for_terminal(self) -> None:
        assert should_reuse(_job(JobStatus.DONE_SUCCESS), NOW, CONFIG).details is None


class TestIsStale:
    def test_non_running_never_stale(self) -> None:
        assert is_stale(_job(JobStatus.PENDING, age_ms=10**9, updated_age_ms=10**9), NOW, CONFIG) is False

    def test_running_stale(self) -> None:
        assert is_stale(_job(JobStatus.RUNNING, updated_age_ms=95_000, age_ms=95_000), NOW, CONFIG) is True

    def test_running_fresh(self) -> None:
        assert is_stale(_job(JobStatus.RUNNING), NOW, CONFIG) is False


class TestSummarize:
    def test_reuse_summary(self) -> None:
        d = decide_reuse(_job(JobStatus.DONE_SUCCESS, age_ms=3_000, updated_age_ms=2_000), NOW, CONFIG)
        assert summarize(d) == "Decision: REUSE - CACHED_RESULT_AVAILABLE, ageMs: 3000, updatedAgeMs: 2000"

    def test_new_job_summary_without_candidate(self) -> None:
        assert summarize(decide_reuse(None, NOW, CONFIG)) == "Decision: NEW_JOB - NO_CANDIDATE"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class _BrokenStore:
    def find_by_idempotency_key(self, key: str, fresh_window_ms: int, now: int) -> JobRecord | None:
        raise sqlite3.OperationalError("database is locked")


class TestDeduplicationService:
    def test_decide_against_real_store(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        store = SQLiteJobStore(init_db(tmp_path / "jobs.db"))
        store.create_job("r1", "s1", now=NOW - 1_000, idempotency_key="k1")
        store.set_status("r1", JobStatus.RUNNING, now=NOW - 500)

        service = DeduplicationService(store, CONFIG)
        d = service.decide("k1", now=NOW)
        assert d.should_reuse is True
        assert d.existing_job is not None
        assert d.existing_job.request_id == "r1"

    def test_unknown_key(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        service = DeduplicationService(SQLiteJobStore(init_db(tmp_path / "jobs.db")), CONFIG)
        assert service.decide("missing", now=NOW).reason == "NO_CANDIDATE"

    def test_lookup_failure_is_non_fatal(self) -> None:
        service = DeduplicationService(_BrokenStore(), CONFIG)
        assert service.find_candidate("k1", now=NOW) is None
        assert service.decide("k1", now=NOW).reason == "NO_CANDIDATE"
