"""Tests for the job store: init, create-if-absent, status, heartbeat, pools."""

import sqlite3

import pytest

from dining_search.core.db import (
    SQLiteJobStore,
    create_job,
    find_by_idempotency_key,
    get_candidate_pool,
    get_job,
    init_db,
    save_candidate_pool,
    set_result,
    set_status,
    update_heartbeat,
)
from dining_search.core.schemas import JobStatus, LatLng, PlaceCandidate, SearchContext


@pytest.fixture()
def db(tmp_path):  # type: ignore[no-untyped-def]
    """Provide a fresh SQLite connection per test."""
    return init_db(tmp_path / "test.db")


class TestInitDb:
    def test_creates_tables(self, db) -> None:  # type: ignore[no-untyped-def]
        tables = {
            row[0]
            for row in db.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert "jobs" in tables
        assert "candidate_pools" in tables

    def test_idempotent(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        """Calling init_db twice on the same path doesn't error."""
        p = tmp_path / "double.db"
        conn1 = init_db(p)
        conn1.close()
        conn2 = init_db(p)
        conn2.close()

    def test_creates_parent_dir(self, tmp_path) -> None:  # type: ignore[no-untyped-def]
        conn = init_db(tmp_path / "nested" / "dir" / "jobs.db")
        conn.close()
        assert (tmp_path / "nested" / "dir" / "jobs.db").exists()


class TestCreateJob:
    def test_insert_new(self, db) -> None:  # type: ignore[no-untyped-def]
        assert create_job(db, "r1", "s1", now=1_000, idempotency_key="k1") is True
        job = get_job(db, "r1")
        assert job is not None
        assert job.status is JobStatus.PENDING
        assert job.created_at == 1_000
        assert job.updated_at == 1_000

    def test_duplicate_request_id_rejected(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        assert create_job(db, "r1", "s1", now=2_000) is False

    def test_second_active_job_for_key_rejected(self, db) -> None:  # type: ignore[no-untyped-def]
        assert create_job(db, "r1", "s1", now=1_000, idempotency_key="k1") is True
        assert create_job(db, "r2", "s1", now=1_001, idempotency_key="k1") is False

    def test_key_free_again_after_terminal(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000, idempotency_key="k1")
        set_status(db, "r1", JobStatus.DONE_FAILED, now=2_000)
        assert create_job(db, "r2", "s1", now=3_000, idempotency_key="k1") is True

    def test_jobs_without_key_never_conflict(self, db) -> None:  # type: ignore[no-untyped-def]
        assert create_job(db, "r1", "s1", now=1_000) is True
        assert create_job(db, "r2", "s1", now=1_000) is True


class TestGetJob:
    def test_missing_returns_none(self, db) -> None:  # type: ignore[no-untyped-def]
        assert get_job(db, "nope") is None


class TestFindByIdempotencyKey:
    def test_unknown_key(self, db) -> None:  # type: ignore[no-untyped-def]
        assert find_by_idempotency_key(db, "k1", fresh_window_ms=5_000, now=0) is None

    def test_returns_latest(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000, idempotency_key="k1")
        set_status(db, "r1", JobStatus.DONE_FAILED, now=1_500)
        create_job(db, "r2", "s1", now=2_000, idempotency_key="k1")
        job = find_by_idempotency_key(db, "k1", fresh_window_ms=5_000, now=2_100)
        assert job is not None
        assert job.request_id == "r2"

    def test_fresh_success_returned(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000, idempotency_key="k1")
        set_result(db, "r1", {"ok": True}, now=2_000)
        job = find_by_idempotency_key(db, "k1", fresh_window_ms=5_000, now=6_000)
        assert job is not None
        assert job.result == {"ok": True}

    def test_old_success_hidden(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000, idempotency_key="k1")
        set_result(db, "r1", {"ok": True}, now=2_000)
        assert find_by_idempotency_key(db, "k1", fresh_window_ms=5_000, now=7_001) is None

    def test_running_returned_regardless_of_age(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000, idempotency_key="k1")
        set_status(db, "r1", JobStatus.RUNNING, now=1_000)
        job = find_by_idempotency_key(db, "k1", fresh_window_ms=5_000, now=500_000)
        assert job is not None
        assert job.status is JobStatus.RUNNING


class TestStatusAndHeartbeat:
    def test_set_status_updates_timestamp(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        set_status(db, "r1", JobStatus.RUNNING, now=1_500)
        job = get_job(db, "r1")
        assert job is not None
        assert job.status is JobStatus.RUNNING
        assert job.updated_at == 1_500
        assert job.created_at == 1_000

    def test_error_stored(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        set_status(db, "r1", JobStatus.DONE_FAILED, now=1_500, error="boom")
        row = db.execute("SELECT error FROM jobs WHERE request_id = 'r1'").fetchone()
        assert row["error"] == "boom"

    def test_heartbeat_running_job(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        set_status(db, "r1", JobStatus.RUNNING, now=1_000)
        assert update_heartbeat(db, "r1", now=30_000) is True
        job = get_job(db, "r1")
        assert job is not None
        assert job.updated_at == 30_000

    def test_heartbeat_ignored_for_non_running(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        assert update_heartbeat(db, "r1", now=30_000) is False
        job = get_job(db, "r1")
        assert job is not None
        assert job.updated_at == 1_000


class TestSetResult:
    def test_stores_result_and_status(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        set_result(db, "r1", {"results": ["a", "b"]}, now=2_000)
        job = get_job(db, "r1")
        assert job is not None
        assert job.status is JobStatus.DONE_SUCCESS
        assert job.result == {"results": ["a", "b"]}

    def test_clarify_status(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        set_result(db, "r1", {"question": "where?"}, now=2_000, status=JobStatus.DONE_CLARIFY)
        job = get_job(db, "r1")
        assert job is not None
        assert job.status is JobStatus.DONE_CLARIFY

    def test_non_terminal_status_rejected(self, db) -> None:  # type: ignore[no-untyped-def]
        create_job(db, "r1", "s1", now=1_000)
        with pytest.raises(ValueError, match="terminal"):
            set_result(db, "r1", {}, now=2_000, status=JobStatus.RUNNING)


class TestCandidatePool:
    def test_missing_session(self, db) -> None:  # type: ignore[no-untyped-def]
        assert get_candidate_pool(db, "s1") is None

    def test_round_trip(self, db) -> None:  # type: ignore[no-untyped-def]
        ctx = SearchContext(query="hummus", user_location=LatLng(lat=32.0, lng=34.8), open_now=True)
        pool = [
            PlaceCandidate(place_id="a", rating=4.5, open_now=True),
            PlaceCandidate(place_id="b", user_ratings_total=10),
        ]
        save_candidate_pool(db, "s1", ctx, pool, now=1_000)
        cached = get_candidate_pool(db, "s1")
        assert cached is not None
        assert cached[0] == ctx
        assert cached[1] == pool

    def test_replaced_on_save(self, db) -> None:  # type: ignore[no-untyped-def]
        save_candidate_pool(db, "s1", SearchContext(query="a"), [PlaceCandidate(place_id="1")], now=1)
        save_candidate_pool(db, "s1", SearchContext(query="b"), [], now=2)
        cached = get_candidate_pool(db, "s1")
        assert cached is not None
        assert cached[0].query == "b"
        assert cached[1] == []


class TestSQLiteJobStore:
    def test_delegates_to_connection(self, db: sqlite3.Connection) -> None:
        store = SQLiteJobStore(db)
        assert store.create_job("r1", "s1", now=1_000, idempotency_key="k1") is True
        store.set_status("r1", JobStatus.RUNNING, now=1_100)
        assert store.update_heartbeat("r1", now=1_200) is True
        store.set_result("r1", {"n": 1}, now=1_300)
        job = store.find_by_idempotency_key("k1", fresh_window_ms=5_000, now=1_400)
        assert job is not None
        assert job.status is JobStatus.DONE_SUCCESS
        assert store.get_job("r1") == job
