from decimal import Decimal
from typing import Any, Dict, List

from psycopg import Connection

from commission_engine import cascade
from db.repositories import insert_commissions
from hierarchy_db import resolve_upline_chain_db
from settings import get_settings
from tenant_guard import system_caller


def cascade_db(conn: Connection, bet: Dict[str, Any], profit_loss: Decimal) -> List[Dict[str, Any]]:
    """
    DB-backed cascade for one settled bet, inside the settlement transaction.

    the chain is resolved on the same connection and bounded by the bet's
    tenant; all rows go in with one executemany. a LedgerInconsistency raised
    by the reconciliation aborts the caller's transaction.
    """
    settings = get_settings()
    scope = system_caller(bet["tenant_id"])
    chain = resolve_upline_chain_db(conn, bet["owner_id"], caller=scope)

    rows, _ = cascade(
        bet["id"],
        bet["owner_id"],
        profit_loss,
        chain,
        precision=settings.money_precision,
        min_remaining=settings.min_cascade_remaining,
    )
    rows = [{**row, "tenant_id": bet["tenant_id"]} for row in rows]

    insert_commissions(conn, rows)
    return rows
