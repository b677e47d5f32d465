"""SQLite job store: search jobs, idempotency lookup, and cached candidate pools.

The active-key index is the create-if-absent primitive: at most one PENDING
or RUNNING job can exist per idempotency key. Timestamps are epoch ms and
always supplied by the caller.
"""

import json
import sqlite3
from pathlib import Path
from typing import Any

from dining_search.core.schemas import JobRecord, JobStatus, PlaceCandidate, SearchContext

_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS jobs (
    request_id      TEXT    PRIMARY KEY,
    session_id      TEXT    NOT NULL,
    idempotency_key TEXT,
    status          TEXT    NOT NULL DEFAULT 'PENDING',
    created_at      INTEGER NOT NULL,
    updated_at      INTEGER NOT NULL,
    result_json     TEXT,
    error           TEXT
);
"""

_ACTIVE_KEY_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_jobs_active_key
ON jobs (idempotency_key)
WHERE status IN ('PENDING', 'RUNNING');
"""

_POOLS_TABLE = """
CREATE TABLE IF NOT EXISTS candidate_pools (
    session_id      TEXT    PRIMARY KEY,
    context_json    TEXT    NOT NULL,
    candidates_json TEXT    NOT NULL,
    created_at      INTEGER NOT NULL
);
"""

_TERMINAL = (
    JobStatus.DONE_SUCCESS,
    JobStatus.DONE_FAILED,
    JobStatus.DONE_CLARIFY,
    JobStatus.DONE_STOPPED,
)


def init_db(path: str | Path) -> sqlite3.Connection:
    """Create the database and tables, returning a connection."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(_JOBS_TABLE)
    conn.execute(_ACTIVE_KEY_INDEX)
    conn.execute(_POOLS_TABLE)
    conn.commit()
    return conn


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    result = json.loads(row["result_json"]) if row["result_json"] else None
    return JobRecord(
        request_id=row["request_id"],
        session_id=row["session_id"],
        idempotency_key=row["idempotency_key"],
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        result=result,
    )


def create_job(
    conn: sqlite3.Connection,
    request_id: str,
    session_id: str,
    now: int,
    idempotency_key: str | None = None,
) -> bool:
    """Insert a PENDING job.

    Returns False if the request ID exists or another active job already
    holds the idempotency key.
    """
    try:
        conn.execute(
            """
            INSERT INTO jobs (request_id, session_id, idempotency_key, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (request_id, session_id, idempotency_key, JobStatus.PENDING.value, now, now),
        )
        conn.commit()
        return True
    except sqlite3.IntegrityError:
        return False


def get_job(conn: sqlite3.Connection, request_id: str) -> JobRecord | None:
    row = conn.execute("SELECT * FROM jobs WHERE request_id = ?", (request_id,)).fetchone()
    return _row_to_job(row) if row is not None else None


def find_by_idempotency_key(
    conn: sqlite3.Connection,
    key: str,
    fresh_window_ms: int,
    now: int,
) -> JobRecord | None:
    """Return the most recent job for a key.

    Successful jobs older than the fresh window are not returned, so the
    caller starts a new job instead of serving an old cached result.
    """
    row = conn.execute(
        """
        SELECT * FROM jobs
        WHERE idempotency_key = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT 1
        """,
        (key,),
    ).fetchone()
    if row is None:
        return None
    job = _row_to_job(row)
    if job.status is JobStatus.DONE_SUCCESS and now - job.updated_at > fresh_window_ms:
        return None
    return job


def set_status(
    conn: sqlite3.Connection,
    request_id: str,
    status: JobStatus,
    now: int,
    error: str | None = None,
) -> None:
    conn.execute(
        "UPDATE jobs SET status = ?, updated_at = ?, error = COALESCE(?, error) WHERE request_id = ?",
        (status.value, now, error, request_id),
    )
    conn.commit()


def update_heartbeat(conn: sqlite3.Connection, request_id: str, now: int) -> bool:
    """Bump updated_at for a RUNNING job. Returns False for any other job."""
    cursor = conn.execute(
        "UPDATE jobs SET updated_at = ? WHERE request_id = ? AND status = ?",
        (now, request_id, JobStatus.RUNNING.value),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_result(
    conn: sqlite3.Connection,
    request_id: str,
    result: dict[str, Any],
    now: int,
    status: JobStatus = JobStatus.DONE_SUCCESS,
) -> None:
    """Store a result and move the job to a terminal status."""
    if status not in _TERMINAL:
        msg = f"result status must be terminal, got {status.value}"
        raise ValueError(msg)
    conn.execute(
        "UPDATE jobs SET status = ?, updated_at = ?, result_json = ? WHERE request_id = ?",
        (status.value, now, json.dumps(result), request_id),
    )
    conn.commit()


def save_candidate_pool(
    conn: sqlite3.Connection,
    session_id: str,
    context: SearchContext,
    candidates: list[PlaceCandidate],
    now: int,
) -> None:
    """Replace the cached provider pool for a session."""
    conn.execute(
        """
        INSERT INTO candidate_pools (session_id, context_json, candidates_json, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(session_id)
        DO UPDATE SET
            context_json = excluded.context_json,
            candidates_json = excluded.candidates_json,
            created_at = excluded.created_at
        """,
        (
            session_id,
            context.model_dump_json(),
            json.dumps([c.model_dump(mode="json") for c in candidates]),
            now,
        ),
    )
    conn.commit()


def get_candidate_pool(
    conn: sqlite3.Connection,
    session_id: str,
) -> tuple[SearchContext, list[PlaceCandidate]] | None:
    """Return the previous context and candidate pool for a session, if any."""
    row = conn.execute(
        "SELECT context_json, candidates_json FROM candidate_pools WHERE session_id = ?",
        (session_id,),
    ).fetchone()
    if row is None:
        return None
    context = SearchContext.model_validate_json(row["context_json"])
    candidates = [PlaceCandidate.model_validate(c) for c in json.loads(row["candidates_json"])]
    return context, candidates


class SQLiteJobStore:
    """Job store collaborator backed by a SQLite connection.

    Usage::

        store = SQLiteJobStore(init_db("data/jobs.db"))
        job = store.find_by_idempotency_key(key, fresh_window_ms=5000, now=now_ms)
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def find_by_idempotency_key(self, key: str, fresh_window_ms: int, now: int) -> JobRecord | None:
        return find_by_idempotency_key(self._conn, key, fresh_window_ms, now)

    def create_job(
        self,
        request_id: str,
        session_id: str,
        now: int,
        idempotency_key: str | None = None,
    ) -> bool:
        return create_job(self._conn, request_id, session_id, now, idempotency_key)

    def get_job(self, request_id: str) -> JobRecord | None:
        return get_job(self._conn, request_id)

    def set_status(self, request_id: str, status: JobStatus, now: int, error: str | None = None) -> None:
        set_status(self._conn, request_id, status, now, error)

    def update_heartbeat(self, request_id: str, now: int) -> bool:
        return update_heartbeat(self._conn, request_id, now)

    def set_result(self, request_id: str, result: dict[str, Any], now: int) -> None:
        set_result(self._conn, request_id, result, now)

    def save_candidate_pool(
        self,
        session_id: str,
        context: SearchContext,
        candidates: list[PlaceCandidate],
        now: int,
    ) -> None:
        save_candidate_pool(self._conn, session_id, context, candidates, now)

    def get_candidate_pool(self, session_id: str) -> tuple[SearchContext, list[PlaceCandidate]] | None:
        return get_candidate_pool(self._conn, session_id)
