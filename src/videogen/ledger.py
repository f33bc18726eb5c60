import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from videogen.collaborators import PurchaseVerifier
from videogen.db import connect, now_iso
from videogen.errors import InsufficientCreditsError, PurchaseRejectedError

logger = logging.getLogger(__name__)

RESERVATION_PENDING = "pending"
RESERVATION_COMPLETED = "completed"
RESERVATION_RETURNED = "returned"


def _ensure_user(conn: sqlite3.Connection, user_id: str) -> None:
    ts = now_iso()
    conn.execute(
        "INSERT INTO users (user_id, created_at, updated_at) VALUES (?, ?, ?) ON CONFLICT(user_id) DO NOTHING",
        (user_id, ts, ts),
    )


def _add_entry(
    conn: sqlite3.Connection,
    user_id: str,
    entry_type: str,
    amount: int,
    job_id: str | None = None,
    reservation_id: str | None = None,
    external_ref: str | None = None,
    note: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO credit_ledger (user_id, type, amount, job_id, reservation_id, external_ref, note, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, entry_type, amount, job_id, reservation_id, external_ref, note, now_iso()),
    )


def reserve(user_id: str, amount: int, job_id: str) -> str:
    """Hold ``amount`` credits for ``job_id`` and return the new reservation id.

    The spendable check and the hold are one conditional UPDATE, so two concurrent
    reservations can never both draw on the same credits. The stored available
    balance is left alone until the reservation is confirmed.
    """
    if amount <= 0:
        raise ValueError("amount must be > 0")

    reservation_id = str(uuid4())
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        _ensure_user(conn, user_id)
        cur = conn.execute(
            """
            UPDATE users
            SET reserved_credits = reserved_credits + ?, updated_at = ?
            WHERE user_id = ? AND available_credits - reserved_credits >= ?
            """,
            (amount, now_iso(), user_id, amount),
        )
        if cur.rowcount != 1:
            row = conn.execute(
                "SELECT available_credits - reserved_credits AS spendable FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            conn.rollback()
            raise InsufficientCreditsError(required=amount, available=int(row["spendable"] if row else 0))

        conn.execute(
            """
            INSERT INTO credit_reservations (reservation_id, user_id, job_id, amount, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            """,
            (reservation_id, user_id, job_id, amount, now_iso()),
        )
        _add_entry(conn, user_id, "reserve", amount, job_id=job_id, reservation_id=reservation_id, note="job reserve")
        conn.commit()

    logger.info("credits reserved", extra={"user_id": user_id, "job_id": job_id, "reservation_id": reservation_id, "amount": amount})
    return reservation_id


def _settle(reservation_id: str, target: str, reason: str | None) -> int:
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT * FROM credit_reservations WHERE reservation_id = ?", (reservation_id,)).fetchone()
        if not row:
            conn.rollback()
            logger.warning("settle of unknown reservation ignored", extra={"reservation_id": reservation_id, "target": target})
            return 0

        cur = conn.execute(
            """
            UPDATE credit_reservations SET status = ?, reason = ?, settled_at = ?
            WHERE reservation_id = ? AND status = 'pending'
            """,
            (target, reason, now_iso(), reservation_id),
        )
        if cur.rowcount != 1:
            conn.rollback()
            logger.warning(
                "reservation already settled; %s ignored",
                target,
                extra={"reservation_id": reservation_id, "current_status": row["status"]},
            )
            return 0

        amount = int(row["amount"])
        if target == RESERVATION_COMPLETED:
            conn.execute(
                """
                UPDATE users
                SET available_credits = available_credits - ?,
                    reserved_credits = reserved_credits - ?,
                    total_used = total_used + ?,
                    updated_at = ?
                WHERE user_id = ?
                """,
                (amount, amount, amount, now_iso(), row["user_id"]),
            )
            entry_type = "confirm"
        else:
            conn.execute(
                "UPDATE users SET reserved_credits = reserved_credits - ?, updated_at = ? WHERE user_id = ?",
                (amount, now_iso(), row["user_id"]),
            )
            entry_type = "return"
        _add_entry(
            conn,
            row["user_id"],
            entry_type,
            amount,
            job_id=row["job_id"],
            reservation_id=reservation_id,
            note=reason,
        )
        conn.commit()

    logger.info(
        "reservation %s",
        target,
        extra={"reservation_id": reservation_id, "job_id": row["job_id"], "amount": amount, "reason": reason},
    )
    return amount


def confirm(reservation_id: str) -> int:
    return _settle(reservation_id, RESERVATION_COMPLETED, "job completed")


def return_reservation(reservation_id: str, reason: str = "video generation failed") -> int:
    return _settle(reservation_id, RESERVATION_RETURNED, reason)


def get_reservation(reservation_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM credit_reservations WHERE reservation_id = ?", (reservation_id,)).fetchone()
    return dict(row) if row else None


def status(user_id: str) -> dict:
    with connect() as conn:
        row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
    if not row:
        return {"user_id": user_id, "available": 0, "reserved": 0, "balance": 0, "total_used": 0, "total_purchased": 0}
    return {
        "user_id": user_id,
        "available": int(row["available_credits"]) - int(row["reserved_credits"]),
        "reserved": int(row["reserved_credits"]),
        "balance": int(row["available_credits"]),
        "total_used": int(row["total_used"]),
        "total_purchased": int(row["total_purchased"]),
    }


def grant(user_id: str, amount: int, note: str, external_ref: str | None = None) -> bool:
    """Add purchased or granted credits. Returns False when ``external_ref`` was already applied."""
    if amount <= 0:
        raise ValueError("amount must be > 0")
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        if external_ref is not None:
            seen = conn.execute("SELECT 1 FROM credit_ledger WHERE external_ref = ?", (external_ref,)).fetchone()
            if seen:
                conn.rollback()
                logger.warning("duplicate credit grant ignored", extra={"user_id": user_id, "external_ref": external_ref})
                return False
        _ensure_user(conn, user_id)
        conn.execute(
            """
            UPDATE users
            SET available_credits = available_credits + ?, total_purchased = total_purchased + ?, updated_at = ?
            WHERE user_id = ?
            """,
            (amount, amount, now_iso(), user_id),
        )
        _add_entry(conn, user_id, "grant", amount, external_ref=external_ref, note=note)
        conn.commit()
    return True


def apply_purchase(verifier: PurchaseVerifier, user_id: str, receipt: dict) -> dict:
    result = verifier.verify(receipt)
    if not result.valid or result.credits <= 0:
        raise PurchaseRejectedError(f"purchase_not_verified: {result.reference_id or 'unknown'}")
    applied = grant(user_id, result.credits, note="purchase", external_ref=result.reference_id)
    return {"applied": applied, "credits": result.credits, "reference_id": result.reference_id, **status(user_id)}


def list_ledger(user_id: str, limit: int = 20) -> list[dict]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM credit_ledger WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [dict(r) for r in rows]


def expire_stale_reservations(max_age_hours: int, now: datetime | None = None) -> int:
    """Return pending reservations older than the cutoff whose job is gone, failed, or has moved on to a newer reservation."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=max_age_hours)
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT r.reservation_id FROM credit_reservations r
            LEFT JOIN jobs j ON j.job_id = r.job_id
            WHERE r.status = 'pending' AND r.created_at < ?
              AND (j.job_id IS NULL OR j.status = 'failed' OR j.credit_reservation_id != r.reservation_id)
            """,
            (now_iso(cutoff),),
        ).fetchall()

    expired = 0
    for r in rows:
        if return_reservation(r["reservation_id"], reason="reservation expired (timeout)"):
            expired += 1
    return expired
