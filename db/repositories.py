from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List
import secrets
import string

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row

from errors import NotFound, TenantViolation
from tenant_guard import ADMIN, AGENT, MODERATOR, Caller, ROLES, scoped_where, stamp_tenant


USER_COLUMNS = (
    "id, username, role, upline_id, tenant_id, weekly_limit, weekly_used, "
    "commission_rate, active, created_at"
)

BET_COLUMNS = (
    "id, owner_id, tenant_id, provider_refs, bet_type, selection, amount_per_provider, "
    "total_amount, draw_date, status, total_payout, result_ref, receipt_number, "
    "created_at, settled_at, cancelled_at"
)


# ---------
# users
# ---------


def create_user_db(
    conn: Connection,
    caller: Caller,
    username: str,
    role: str,
    upline_id: Optional[int] = None,
    weekly_limit: Decimal = Decimal("0"),
    commission_rate: Decimal = Decimal("0"),
    tenant_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    create a new user.

    enforces:
      - username unique
      - only ADMIN creates MODERATOR / ADMIN accounts (they are tenant roots)
      - an AGENT is stamped with the caller's tenant (or rejected if another
        tenant was requested)
      - that tenant must be an existing MODERATOR
    upline cycles cannot happen on insert (a new row has no descendants);
    re-parenting goes through hierarchy_db.assign_upline_db.
    """
    username = username.strip()
    if not username:
        raise ValueError("username cannot be empty")
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    if not Decimal("0") <= Decimal(commission_rate) <= Decimal("100"):
        raise ValueError("commission_rate must be between 0 and 100")
    if Decimal(weekly_limit) < 0:
        raise ValueError("weekly_limit cannot be negative")

    if role == AGENT:
        values = stamp_tenant(caller, {"tenant_id": tenant_id})
        tenant_id = values["tenant_id"]
        if tenant_id is None:
            raise ValueError("an agent must belong to a moderator")
        tenant = get_user(conn, tenant_id)
        if tenant["role"] != MODERATOR:
            raise ValueError(f"tenant_id {tenant_id} is not a moderator")
    else:
        if caller.role != ADMIN:
            raise TenantViolation(f"Only an admin can create {role} accounts")
        tenant_id = None

    if upline_id is not None:
        upline = get_user(conn, upline_id)
        if tenant_id is not None and upline["id"] != tenant_id and upline["tenant_id"] != tenant_id:
            raise TenantViolation(f"Upline {upline_id} is outside tenant {tenant_id}")

    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                INSERT INTO users (username, role, upline_id, tenant_id, weekly_limit, commission_rate)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {USER_COLUMNS}
                """,
                (username, role, upline_id, tenant_id, weekly_limit, commission_rate),
            )
            row = cur.fetchone()
            if row is None:
                raise ValueError("failed to create user")
        return row

    except UniqueViolation:
        raise ValueError(f"username '{username}' already exists")


def get_user(conn: Connection, user_id: int, for_update: bool = False) -> Dict[str, Any]:
    """
    fetch a user row. for_update=True takes the row lock that serializes
    every weekly_used mutation for this user.
    """
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s{lock}", (user_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"User {user_id} not found")
    return row


def set_weekly_used(conn: Connection, user_id: int, weekly_used: Decimal) -> None:
    """caller must hold the row lock (get_user(..., for_update=True))."""
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET weekly_used = %s, updated_at = NOW() WHERE id = %s",
            (weekly_used, user_id),
        )
        if cur.rowcount != 1:
            raise NotFound(f"User {user_id} not found")


def set_weekly_limit(conn: Connection, user_id: int, weekly_limit: Decimal) -> None:
    """caller must hold the row lock (get_user(..., for_update=True))."""
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET weekly_limit = %s, updated_at = NOW() WHERE id = %s",
            (weekly_limit, user_id),
        )
        if cur.rowcount != 1:
            raise NotFound(f"User {user_id} not found")


def update_user_fields(conn: Connection, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    update the given columns (active / commission_rate) and return the row.
    column names come from code, never from the request.
    """
    assignments = ", ".join(f"{column} = %s" for column in fields)
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"UPDATE users SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING {USER_COLUMNS}",
            tuple(fields.values()) + (user_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"User {user_id} not found")
    return row


def reset_weekly_used(conn: Connection) -> int:
    """zero weekly_used for every AGENT/MODERATOR row. returns rows affected."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET weekly_used = 0, updated_at = NOW()
            WHERE role IN ('AGENT', 'MODERATOR')
            """
        )
        return cur.rowcount


def get_user_upline_id(conn: Connection, user_id: int) -> Optional[int]:
    """
    fetch upline_id for a user, or None if they are at the top.
    """
    with conn.cursor() as cur:
        cur.execute("SELECT upline_id FROM users WHERE id = %s", (user_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFound(f"User {user_id} not found")
        return row[0]


def set_user_upline_id(conn: Connection, child_id: int, parent_id: int) -> None:
    """
    set upline_id for child to parent. assumes all checks already done.
    """
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET upline_id = %s, updated_at = NOW() WHERE id = %s",
            (parent_id, child_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to update upline for user {child_id}")


def get_upline_rows(conn: Connection, user_id: int, max_depth: int) -> List[Dict[str, Any]]:
    """
    ancestors of user_id, closest first, via a recursive CTE.
    fetches up to max_depth + 1 rows so the caller can detect the ceiling;
    the level bound also stops the recursion on cyclic data.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            WITH RECURSIVE chain AS (
                SELECT u.id, u.upline_id, u.tenant_id, u.commission_rate, u.active, 1 AS level
                FROM users u
                WHERE u.id = (SELECT upline_id FROM users WHERE id = %(user_id)s)

                UNION ALL

                SELECT u.id, u.upline_id, u.tenant_id, u.commission_rate, u.active, c.level + 1
                FROM users u
                JOIN chain c ON u.id = c.upline_id
                WHERE c.level <= %(max_depth)s
            )
            SELECT id, tenant_id, commission_rate, active, level
            FROM chain
            ORDER BY level ASC
            """,
            {"user_id": user_id, "max_depth": max_depth},
        )
        return cur.fetchall()


def list_users(conn: Connection, caller: Caller, limit: int = 100) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    scoped_where(caller, clauses, params, column="tenant_id", root_column="id")
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {USER_COLUMNS} FROM users {where_sql} ORDER BY id LIMIT %s",
            tuple(params + [limit]),
        )
        return cur.fetchall()


# ---------
# bets
# ---------


def _generate_receipt_number(owner_id: int) -> str:
    alphabet = string.ascii_uppercase + string.digits
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"BET-{stamp}-{owner_id}-" + "".join(secrets.choice(alphabet) for _ in range(6))


def insert_bet(conn: Connection, values: Dict[str, Any]) -> Dict[str, Any]:
    """
    insert a PENDING bet plus one PENDING leg per provider.
    values must already carry the owner's tenant_id.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO bets
                (owner_id, tenant_id, provider_refs, bet_type, selection,
                 amount_per_provider, total_amount, draw_date, status, receipt_number)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'PENDING', %s)
            RETURNING {BET_COLUMNS}
            """,
            (
                values["owner_id"],
                values["tenant_id"],
                values["provider_refs"],
                values["bet_type"],
                values["selection"],
                values["amount_per_provider"],
                values["total_amount"],
                values["draw_date"],
                _generate_receipt_number(values["owner_id"]),
            ),
        )
        bet = cur.fetchone()

        cur.executemany(
            "INSERT INTO bet_legs (bet_id, provider_ref) VALUES (%s, %s)",
            [(bet["id"], ref) for ref in values["provider_refs"]],
        )
    return bet


def get_bet(conn: Connection, bet_id: int, for_update: bool = False) -> Dict[str, Any]:
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {BET_COLUMNS} FROM bets WHERE id = %s{lock}", (bet_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Bet {bet_id} not found")
    return row


def lock_pending_bet(conn: Connection, bet_id: int) -> Optional[Dict[str, Any]]:
    """
    lock a bet for its status transition, only if it is still PENDING.
    returns None when another worker already settled or cancelled it.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {BET_COLUMNS} FROM bets WHERE id = %s AND status = 'PENDING' FOR UPDATE",
            (bet_id,),
        )
        return cur.fetchone()


def get_bet_legs(conn: Connection, bet_id: int) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT provider_ref, status, payout, prize_tier, result_ref
            FROM bet_legs
            WHERE bet_id = %s
            ORDER BY id
            """,
            (bet_id,),
        )
        return cur.fetchall()


def update_bet_leg(conn: Connection, bet_id: int, provider_ref: str, leg: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE bet_legs
            SET status = %s, payout = %s, prize_tier = %s, result_ref = %s
            WHERE bet_id = %s AND provider_ref = %s AND status = 'PENDING'
            """,
            (leg["status"], leg["payout"], leg["prize_tier"], leg["result_ref"], bet_id, provider_ref),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Leg {provider_ref} of bet {bet_id} is not pending")


def finalize_bet(
    conn: Connection,
    bet_id: int,
    status: str,
    total_payout: Decimal,
    result_ref: Optional[int],
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE bets
            SET status = %s, total_payout = %s, result_ref = %s, settled_at = NOW()
            WHERE id = %s AND status = 'PENDING'
            """,
            (status, total_payout, result_ref, bet_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Bet {bet_id} is no longer pending")


def mark_bet_cancelled(conn: Connection, bet_id: int) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE bets
            SET status = 'CANCELLED', cancelled_at = NOW()
            WHERE id = %s AND status = 'PENDING'
            RETURNING {BET_COLUMNS}
            """,
            (bet_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise ValueError(f"Bet {bet_id} is no longer pending")
    return row


def pending_bet_ids_for_draw(conn: Connection, provider_ref: str, draw_date) -> List[int]:
    """PENDING bets on this draw date that still have a PENDING leg for the provider."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT b.id
            FROM bets b
            JOIN bet_legs l ON l.bet_id = b.id
            WHERE b.status = 'PENDING'
              AND b.draw_date = %s
              AND l.provider_ref = %s
              AND l.status = 'PENDING'
            ORDER BY b.id
            """,
            (draw_date, provider_ref),
        )
        return [r[0] for r in cur.fetchall()]


def list_bets(
    conn: Connection,
    caller: Caller,
    status: Optional[str] = None,
    owner_id: Optional[int] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    scoped_where(caller, clauses, params)

    if caller.role == AGENT:
        clauses.append("owner_id = %s")
        params.append(caller.id)
    elif owner_id is not None:
        clauses.append("owner_id = %s")
        params.append(owner_id)

    if status:
        clauses.append("status = %s")
        params.append(status)

    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {BET_COLUMNS} FROM bets {where_sql} ORDER BY created_at DESC LIMIT %s",
            tuple(params + [limit]),
        )
        return cur.fetchall()


# ---------
# draw results
# ---------


def upsert_draw_result(
    conn: Connection,
    provider_ref: str,
    draw_date,
    winning_numbers: List[str],
    supplementary_numbers: List[str],
    draw_key: str,
    draw_number: Optional[str] = None,
) -> Dict[str, Any]:
    """insert a draw result, or update the numbers of an existing one (same draw_key)."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO draw_results
                (provider_ref, draw_date, draw_key, draw_number, winning_numbers, supplementary_numbers)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (draw_key)
            DO UPDATE SET
                draw_number = EXCLUDED.draw_number,
                winning_numbers = EXCLUDED.winning_numbers,
                supplementary_numbers = EXCLUDED.supplementary_numbers,
                updated_at = NOW()
            RETURNING id, provider_ref, draw_date, draw_key, draw_number,
                      winning_numbers, supplementary_numbers
            """,
            (provider_ref, draw_date, draw_key, draw_number, winning_numbers, supplementary_numbers),
        )
        return cur.fetchone()


def get_draw_result(conn: Connection, result_id: int) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, provider_ref, draw_date, draw_key, draw_number,
                   winning_numbers, supplementary_numbers
            FROM draw_results
            WHERE id = %s
            """,
            (result_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Draw result {result_id} not found")
    return row


# ---------
# commissions (append-only: there is no update or delete here on purpose)
# ---------


def insert_commissions(conn: Connection, rows: List[Dict[str, Any]]) -> None:
    if not rows:
        return
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO commissions
                (recipient_id, bet_id, source_owner_id, tenant_id, level, rate, base_amount, amount)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            [
                (
                    r["recipient_id"],
                    r["bet_id"],
                    r["source_owner_id"],
                    r["tenant_id"],
                    r["level"],
                    r["rate"],
                    r["base_amount"],
                    r["amount"],
                )
                for r in rows
            ],
        )


def _commission_filters(
    caller: Caller,
    recipient_id: Optional[int],
    from_datetime: Optional[datetime],
    to_datetime: Optional[datetime],
):
    clauses: List[str] = []
    params: List[Any] = []
    scoped_where(caller, clauses, params)

    if caller.role == AGENT:
        clauses.append("recipient_id = %s")
        params.append(caller.id)
    elif recipient_id is not None:
        clauses.append("recipient_id = %s")
        params.append(recipient_id)

    if from_datetime is not None:
        clauses.append("created_at >= %s")
        params.append(from_datetime)
    if to_datetime is not None:
        clauses.append("created_at < %s")
        params.append(to_datetime)

    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where_sql, params


def list_commissions(
    conn: Connection,
    caller: Caller,
    recipient_id: Optional[int] = None,
    from_datetime: Optional[datetime] = None,
    to_datetime: Optional[datetime] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    where_sql, params = _commission_filters(caller, recipient_id, from_datetime, to_datetime)
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT id, recipient_id, bet_id, source_owner_id, tenant_id, level,
                   rate, base_amount, amount, created_at
            FROM commissions
            {where_sql}
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            tuple(params + [limit]),
        )
        return cur.fetchall()


def commission_summary(
    conn: Connection,
    caller: Caller,
    recipient_id: Optional[int] = None,
    from_datetime: Optional[datetime] = None,
    to_datetime: Optional[datetime] = None,
) -> Dict[str, Any]:
    where_sql, params = _commission_filters(caller, recipient_id, from_datetime, to_datetime)
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT COALESCE(SUM(amount), 0), COUNT(*), COUNT(DISTINCT bet_id) FROM commissions {where_sql}",
            tuple(params),
        )
        total, entries, bets = cur.fetchone()
    return {"total_commission": total, "entries": entries, "bets": bets}


def count_commissions_for_bet(conn: Connection, bet_id: int) -> int:
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM commissions WHERE bet_id = %s", (bet_id,))
        return cur.fetchone()[0]


# ---------
# weekly reset history
# ---------


def insert_reset_history(
    conn: Connection,
    started_at: datetime,
    status: str,
    attempts: int,
    affected_users: int,
    error_message: Optional[str] = None,
) -> Dict[str, Any]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO limit_reset_history (started_at, status, attempts, affected_users, error_message)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, started_at, finished_at, status, attempts, affected_users, error_message
            """,
            (started_at, status, attempts, affected_users, error_message),
        )
        return cur.fetchone()


def recent_reset_history(conn: Connection, limit: int = 10) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT id, started_at, finished_at, status, attempts, affected_users, error_message
            FROM limit_reset_history
            ORDER BY id DESC
            LIMIT %s
            """,
            (limit,),
        )
        return cur.fetchall()
