from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger
from psycopg import Connection

from audit import emit_audit_event
from db.db import get_conn
from db.repositories import (
    get_user,
    insert_reset_history,
    reset_weekly_used,
    set_weekly_limit,
    set_weekly_used,
)
from errors import UserInactive, WeeklyResetFailed
from hierarchy_db import ensure_manages
from ledger_engine import apply_release, check_limit_update, check_reservation, ledger_state, run_with_backoff
from settings import get_settings
from tenant_guard import Caller, ensure_visible


def reserve_in_tx(conn: Connection, user_id: int, amount: Decimal) -> Decimal:
    """
    reserve `amount` of the user's weekly allowance.

    must run inside the caller's transaction: the user row stays locked
    (FOR UPDATE) until that transaction commits, so concurrent reservations
    for the same user are serialized and the bet insert shares the lock.
    returns the new weekly_used.
    """
    user = get_user(conn, user_id, for_update=True)
    if not user["active"]:
        raise UserInactive(f"User {user_id} is inactive")

    new_used = check_reservation(user["role"], user["weekly_limit"], user["weekly_used"], amount)
    set_weekly_used(conn, user_id, new_used)
    logger.info(f"Reserved {amount} for user {user_id}: weekly_used {user['weekly_used']} -> {new_used}")
    return new_used


def release_in_tx(conn: Connection, user_id: int, amount: Decimal) -> Decimal:
    """refund `amount` (floored at zero) under the same row lock as reserve_in_tx."""
    user = get_user(conn, user_id, for_update=True)

    new_used = apply_release(user["weekly_used"], amount)
    set_weekly_used(conn, user_id, new_used)
    logger.info(f"Released {amount} for user {user_id}: weekly_used {user['weekly_used']} -> {new_used}")
    return new_used


def get_ledger_state(caller: Caller, user_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        user = get_user(conn, user_id)
        ensure_visible(caller, user["tenant_id"], f"ledger of user {user_id}", row_id=user_id)
        return ledger_state(user)


def update_limits_db(caller: Caller, user_id: int, weekly_limit: Decimal) -> Dict[str, Any]:
    """
    set a downline's weekly_limit (ADMIN, the tenant's MODERATOR or an upline).

    the user row is locked FOR UPDATE so the `weekly_used <= weekly_limit`
    check cannot race a concurrent reservation.
    """
    with get_conn() as conn:
        try:
            user = get_user(conn, user_id, for_update=True)
            ensure_manages(conn, caller, user)
            parent = get_user(conn, user["upline_id"]) if user["upline_id"] is not None else None
            new_limit = check_limit_update(user, weekly_limit, parent)
            set_weekly_limit(conn, user_id, new_limit)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    previous = user["weekly_limit"]
    logger.info(f"Weekly limit of user {user_id} changed {previous} -> {new_limit} by {caller.role} {caller.id}")
    emit_audit_event(
        "ledger.limit_updated",
        caller.id,
        {"user_id": user_id, "previous_limit": str(previous), "weekly_limit": str(new_limit)},
    )
    return ledger_state({**user, "weekly_limit": new_limit})


def _reset_once() -> int:
    with get_conn() as conn:
        try:
            affected = reset_weekly_used(conn)
            conn.commit()
            return affected
        except Exception:
            conn.rollback()
            raise


def _record_reset(started_at: datetime, status: str, attempts: int, affected: int, error: Optional[str] = None) -> None:
    with get_conn() as conn:
        try:
            insert_reset_history(conn, started_at, status, attempts, affected, error)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def weekly_reset(sleep=None) -> Dict[str, Any]:
    """
    zero weekly_used for every AGENT/MODERATOR row.

    idempotent; retried with exponential backoff. every run (success or
    final failure) leaves a limit_reset_history row behind. on final
    failure WeeklyResetFailed is raised after the history row is written;
    if that write fails too it is logged and WeeklyResetFailed still propagates.
    """
    settings = get_settings()
    started_at = datetime.now(timezone.utc)
    retry_kwargs = {} if sleep is None else {"sleep": sleep}

    try:
        affected, attempts = run_with_backoff(
            _reset_once,
            max_attempts=settings.reset_max_attempts,
            base_delay=settings.reset_base_delay_seconds,
            **retry_kwargs,
        )
    except WeeklyResetFailed as e:
        logger.error(str(e))
        try:
            _record_reset(started_at, "FAILED", e.attempts, 0, str(e.last_error))
        except Exception:
            # the reset failure is what the caller must see
            logger.exception("Could not write the FAILED weekly reset history row")
        emit_audit_event("ledger.weekly_reset_failed", None, {"attempts": e.attempts, "error": str(e.last_error)})
        raise

    _record_reset(started_at, "SUCCESS", attempts, affected)
    logger.info(f"Weekly reset done: {affected} users reset in {attempts} attempt(s)")
    emit_audit_event("ledger.weekly_reset", None, {"affected_users": affected, "attempts": attempts})
    return {"status": "SUCCESS", "affected_users": affected, "attempts": attempts}
