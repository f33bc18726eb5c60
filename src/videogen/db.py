import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from videogen.config import settings

JOB_STATUSES = ("pending", "processing", "completed", "failed")
JOB_KINDS = ("text-based", "avatar-based")

_JOB_COLUMNS = {
    "title",
    "params",
    "status",
    "provider_name",
    "provider_task_id",
    "credit_reservation_id",
    "credits_cost",
    "retry_count",
    "error_message",
    "failure_reason_code",
    "artifact_location",
    "pending_since",
    "artifact_url",
    "thumbnail_url",
    "actual_duration",
    "file_size_bytes",
    "upload_attempts",
    "lease_until",
    "processing_started_at",
    "processing_completed_at",
}


def now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def connect() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def init_db() -> None:
    with connect() as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              user_id TEXT PRIMARY KEY,
              available_credits INTEGER NOT NULL DEFAULT 0 CHECK (available_credits >= 0),
              reserved_credits INTEGER NOT NULL DEFAULT 0 CHECK (reserved_credits >= 0),
              total_used INTEGER NOT NULL DEFAULT 0,
              total_purchased INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_reservations (
              reservation_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              job_id TEXT NOT NULL,
              amount INTEGER NOT NULL,
              status TEXT NOT NULL DEFAULT 'pending',
              reason TEXT,
              created_at TEXT NOT NULL,
              settled_at TEXT
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS ix_reservations_status ON credit_reservations(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_reservations_job ON credit_reservations(job_id)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_ledger (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              type TEXT NOT NULL,
              amount INTEGER NOT NULL,
              job_id TEXT,
              reservation_id TEXT,
              external_ref TEXT,
              note TEXT,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_external_ref
            ON credit_ledger(external_ref) WHERE external_ref IS NOT NULL
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              title TEXT NOT NULL DEFAULT '',
              params_json TEXT NOT NULL DEFAULT '{}',
              status TEXT NOT NULL,
              provider_name TEXT NOT NULL,
              provider_task_id TEXT,
              credit_reservation_id TEXT,
              credits_cost INTEGER NOT NULL DEFAULT 0,
              retry_count INTEGER NOT NULL DEFAULT 0,
              error_message TEXT,
              failure_reason_code TEXT,
              artifact_location TEXT,
              artifact_url TEXT,
              thumbnail_url TEXT,
              actual_duration REAL,
              file_size_bytes INTEGER,
              upload_attempts INTEGER NOT NULL DEFAULT 0,
              lease_until TEXT,
              pending_since TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              processing_started_at TEXT,
              processing_completed_at TEXT
            )
            """
        )

        if not _has_col(conn, "jobs", "upload_attempts"):
            conn.execute("ALTER TABLE jobs ADD COLUMN upload_attempts INTEGER NOT NULL DEFAULT 0")
        if not _has_col(conn, "jobs", "lease_until"):
            conn.execute("ALTER TABLE jobs ADD COLUMN lease_until TEXT")
        if not _has_col(conn, "jobs", "artifact_location"):
            conn.execute("ALTER TABLE jobs ADD COLUMN artifact_location TEXT")
        if not _has_col(conn, "jobs", "pending_since"):
            conn.execute("ALTER TABLE jobs ADD COLUMN pending_since TEXT")

        conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_user ON jobs(user_id, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_status ON jobs(status)")
        conn.commit()


def _job_from_row(row: sqlite3.Row | None) -> dict | None:
    if not row:
        return None
    job = dict(row)
    job["params"] = json.loads(job.pop("params_json") or "{}")
    return job


def insert_job(
    job_id: str,
    user_id: str,
    kind: str,
    title: str,
    params: dict,
    provider_name: str,
    credit_reservation_id: str,
    credits_cost: int,
) -> None:
    ts = now_iso()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO jobs (
              job_id, user_id, kind, title, params_json, status, provider_name,
              credit_reservation_id, credits_cost, pending_since, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                user_id,
                kind,
                title,
                json.dumps(params),
                provider_name,
                credit_reservation_id,
                credits_cost,
                ts,
                ts,
                ts,
            ),
        )
        conn.commit()


def get_job(job_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    return _job_from_row(row)


def list_jobs(user_id: str | None = None, status: str | None = None, limit: int = 20) -> list[dict]:
    clauses: list[str] = []
    values: list[Any] = []
    if user_id is not None:
        clauses.append("user_id = ?")
        values.append(user_id)
    if status is not None:
        clauses.append("status = ?")
        values.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    values.append(limit)
    with connect() as conn:
        rows = conn.execute(f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ?", tuple(values)).fetchall()
    return [_job_from_row(r) for r in rows]


def list_jobs_by_status(status: str) -> list[dict]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM jobs WHERE status = ? ORDER BY created_at", (status,)).fetchall()
    return [_job_from_row(r) for r in rows]


def _set_clause(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
    sets = ["updated_at = ?"]
    values: list[Any] = [now_iso()]
    for key, value in fields.items():
        if key not in _JOB_COLUMNS:
            raise ValueError(f"unknown job column: {key}")
        if key == "params":
            sets.append("params_json = ?")
            values.append(json.dumps(value))
            continue
        sets.append(f"{key} = ?")
        values.append(value)
    return sets, values


def transition_job(job_id: str, from_statuses: tuple[str, ...], **fields: Any) -> bool:
    """Compare-and-set on status: applies ``fields`` only while the job is in one of ``from_statuses``.

    Returns True for the single caller whose update won.
    """
    sets, values = _set_clause(fields)
    marks = ", ".join("?" for _ in from_statuses)
    values.extend([job_id, *from_statuses])
    sql = f"UPDATE jobs SET {', '.join(sets)} WHERE job_id = ? AND status IN ({marks})"
    with connect() as conn:
        cur = conn.execute(sql, tuple(values))
        conn.commit()
    return cur.rowcount == 1


def update_job(job_id: str, **fields: Any) -> None:
    sets, values = _set_clause(fields)
    values.append(job_id)
    with connect() as conn:
        conn.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE job_id = ?", tuple(values))
        conn.commit()


def increment_upload_attempts(job_id: str) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE jobs SET upload_attempts = upload_attempts + 1, updated_at = ? WHERE job_id = ?",
            (now_iso(), job_id),
        )
        conn.commit()


def claim_job(job_id: str, lease_sec: int, now: datetime | None = None) -> str | None:
    """Take the polling lease on a processing job. Returns the lease token, or None if someone else holds it."""
    current = now or datetime.now(timezone.utc)
    until = now_iso(current + timedelta(seconds=lease_sec))
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE jobs SET lease_until = ?
            WHERE job_id = ? AND status = 'processing' AND (lease_until IS NULL OR lease_until < ?)
            """,
            (until, job_id, now_iso(current)),
        )
        conn.commit()
    return until if cur.rowcount == 1 else None


def release_claim(job_id: str, lease_until: str) -> bool:
    # A lease that expired and was taken over by another worker is left alone.
    with connect() as conn:
        cur = conn.execute(
            "UPDATE jobs SET lease_until = NULL WHERE job_id = ? AND lease_until = ?",
            (job_id, lease_until),
        )
        conn.commit()
    return cur.rowcount == 1


def delete_job_row(job_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
        conn.commit()


def list_jobs_with_pending_reservation(status: str) -> list[dict]:
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT j.* FROM jobs j
            JOIN credit_reservations r ON r.reservation_id = j.credit_reservation_id
            WHERE j.status = ? AND r.status = 'pending'
            """,
            (status,),
        ).fetchall()
    return [_job_from_row(r) for r in rows]


def get_job_stats() -> dict:
    with connect() as conn:
        rows = conn.execute("SELECT status, COUNT(*) c FROM jobs GROUP BY status").fetchall()
        avg_row = conn.execute(
            "SELECT AVG(actual_duration) avg_duration, SUM(file_size_bytes) total_bytes FROM jobs WHERE status='completed'"
        ).fetchone()

    counts = {status: 0 for status in JOB_STATUSES}
    for r in rows:
        counts[r["status"]] = int(r["c"])
    total = sum(counts.values())
    finished = counts["completed"] + counts["failed"]
    return {
        "job_count": total,
        "by_status": counts,
        "success_rate": round(counts["completed"] / finished, 4) if finished else 0.0,
        "avg_duration_sec": round(float(avg_row["avg_duration"] or 0), 2),
        "total_artifact_bytes": int(avg_row["total_bytes"] or 0),
    }
