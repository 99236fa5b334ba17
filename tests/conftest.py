from decimal import Decimal
from pathlib import Path

import psycopg
import pytest

from audit import set_audit_sink
from db.db import get_conn
from settings import get_settings
from tenant_guard import ADMIN, AGENT, MODERATOR

SCHEMA = Path(__file__).resolve().parent.parent / "db" / "schema.sql"


# ---------
# in-memory "tables"
# ---------


@pytest.fixture
def users():
    """
    one organization (moderator 10) with a 3-level agent chain, plus an
    admin and a second organization (moderator 20).

      1 (ADMIN)
      └── 10 (MODERATOR, 2%)
          └── 11 (AGENT, 5%)
              └── 12 (AGENT, 3%)
                  └── 13 (AGENT, 0%)  <- bets are placed here
      20 (MODERATOR) └── 21 (AGENT)
    """

    def user(uid, role, upline_id=None, tenant_id=None, rate="0", limit="0", used="0", active=True):
        return {
            "id": uid,
            "username": f"user{uid}",
            "role": role,
            "upline_id": upline_id,
            "tenant_id": tenant_id,
            "weekly_limit": Decimal(limit),
            "weekly_used": Decimal(used),
            "commission_rate": Decimal(rate),
            "active": active,
        }

    rows = [
        user(1, ADMIN),
        user(10, MODERATOR, upline_id=1, rate="2", limit="10000"),
        user(11, AGENT, upline_id=10, tenant_id=10, rate="5", limit="1000"),
        user(12, AGENT, upline_id=11, tenant_id=10, rate="3", limit="1000"),
        user(13, AGENT, upline_id=12, tenant_id=10, limit="100"),
        user(20, MODERATOR, upline_id=1, rate="1", limit="5000"),
        user(21, AGENT, upline_id=20, tenant_id=20, rate="4", limit="500"),
    ]
    return {row["id"]: row for row in rows}


@pytest.fixture(autouse=True)
def audit_events():
    """collect audit events instead of logging them."""
    events = []
    set_audit_sink(events.append)
    yield events
    set_audit_sink(None)


# ---------
# postgres
# ---------


@pytest.fixture
def db_conn():
    """
    a clean schema on the configured database (LOTTO_DATABASE_DSN).
    tests using it are skipped when PostgreSQL is not reachable.
    """
    try:
        psycopg.connect(get_settings().database_dsn, connect_timeout=2).close()
    except psycopg.OperationalError:
        pytest.skip("PostgreSQL not reachable")

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA.read_text())
            cur.execute(
                "TRUNCATE commissions, bet_legs, bets, draw_results, limit_reset_history, users "
                "RESTART IDENTITY CASCADE;"
            )
        conn.commit()
        yield conn


def insert_user(conn, username, role, upline_id=None, tenant_id=None, rate="0", limit="0", used="0", active=True):
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO users (username, role, upline_id, tenant_id, commission_rate, weekly_limit, weekly_used, active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (username, role, upline_id, tenant_id, Decimal(rate), Decimal(limit), Decimal(used), active),
        )
        user_id = cur.fetchone()[0]
    conn.commit()
    return user_id


@pytest.fixture
def make_user(db_conn):
    def _make(username, role, **kwargs):
        return insert_user(db_conn, username, role, **kwargs)

    return _make


@pytest.fixture
def org(db_conn):
    """admin -> moderator (2%) -> agent A (5%) -> agent B (3%) -> agent C (0%, limit 100)."""
    admin = insert_user(db_conn, "admin", ADMIN)
    mod = insert_user(db_conn, "mod", MODERATOR, upline_id=admin, rate="2", limit="10000")
    a = insert_user(db_conn, "agent_a", AGENT, upline_id=mod, tenant_id=mod, rate="5", limit="1000")
    b = insert_user(db_conn, "agent_b", AGENT, upline_id=a, tenant_id=mod, rate="3", limit="1000")
    c = insert_user(db_conn, "agent_c", AGENT, upline_id=b, tenant_id=mod, limit="100")
    other_mod = insert_user(db_conn, "mod2", MODERATOR, upline_id=admin, rate="1", limit="5000")
    other_agent = insert_user(db_conn, "agent_x", AGENT, upline_id=other_mod, tenant_id=other_mod, limit="500")
    return {
        "admin": admin,
        "mod": mod,
        "a": a,
        "b": b,
        "c": c,
        "other_mod": other_mod,
        "other_agent": other_agent,
    }
