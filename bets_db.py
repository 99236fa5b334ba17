from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from audit import emit_audit_event
from bets_engine import normalize_bet, total_amount_for, validate_providers
from db.db import get_conn
from db.repositories import get_bet, get_user, insert_bet, mark_bet_cancelled
from db.repositories import list_bets as list_bets_db
from errors import NotOwner, NotPending
from ledger_db import release_in_tx, reserve_in_tx
from settings import get_settings
from settlement_engine import PENDING
from tenant_guard import ADMIN, Caller, ensure_visible, stamp_tenant, tenant_of


def place_bet(
    caller: Caller,
    amount_per_provider: Decimal,
    provider_refs: List[str],
    bet_type: str,
    selection: str,
    draw_date: date,
) -> Dict[str, Any]:
    """
    DB-backed bet placement.

    reserve against the caller's weekly limit and insert the PENDING bet (plus
    one leg per provider) in ONE transaction: either both happen or neither.
    """
    known = get_settings().known_providers or None
    refs = validate_providers(provider_refs, known)
    bet_type, selection = normalize_bet(bet_type, selection)
    total = total_amount_for(amount_per_provider, refs)

    with get_conn() as conn:
        try:
            bet = _place_bet_in_tx(conn, caller, amount_per_provider, refs, bet_type, selection, draw_date, total)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Bet {bet['id']} placed by user {caller.id}: {total} on {', '.join(refs)} for {draw_date}")
    emit_audit_event(
        "bet.placed",
        caller.id,
        {"bet_id": bet["id"], "receipt_number": bet["receipt_number"], "total_amount": str(total)},
    )
    return bet


def _place_bet_in_tx(
    conn: Connection,
    caller: Caller,
    amount_per_provider: Decimal,
    refs: List[str],
    bet_type: str,
    selection: str,
    draw_date: date,
    total: Decimal,
) -> Dict[str, Any]:
    # 1) lock + reserve (raises LimitExceeded / UserInactive)
    reserve_in_tx(conn, caller.id, total)

    # 2) tenant comes from the owner row, never from the request
    owner = get_user(conn, caller.id)
    values = stamp_tenant(
        caller,
        {
            "owner_id": caller.id,
            "tenant_id": tenant_of(owner),
            "provider_refs": refs,
            "bet_type": bet_type,
            "selection": selection,
            "amount_per_provider": Decimal(amount_per_provider),
            "total_amount": total,
            "draw_date": draw_date,
        },
    )

    # 3) bet + legs
    return insert_bet(conn, values)


def cancel_bet(caller: Caller, bet_id: int) -> Dict[str, Any]:
    """
    PENDING -> CANCELLED and refund total_amount to the owner's weekly_used,
    in one transaction. only the owner (or an ADMIN) may cancel.
    """
    with get_conn() as conn:
        try:
            bet = _cancel_bet_in_tx(conn, caller, bet_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Bet {bet_id} cancelled by {caller.role} {caller.id}, refunded {bet['total_amount']}")
    emit_audit_event("bet.cancelled", caller.id, {"bet_id": bet_id, "refund": str(bet["total_amount"])})
    return bet


def _cancel_bet_in_tx(conn: Connection, caller: Caller, bet_id: int) -> Dict[str, Any]:
    # bet row lock first: a concurrent settlement of this bet waits on it
    bet = get_bet(conn, bet_id, for_update=True)

    ensure_visible(caller, bet["tenant_id"], f"bet {bet_id}")
    if bet["owner_id"] != caller.id and caller.role != ADMIN:
        raise NotOwner(bet_id, caller.id)
    if bet["status"] != PENDING:
        raise NotPending(bet_id, bet["status"])

    release_in_tx(conn, bet["owner_id"], bet["total_amount"])
    return mark_bet_cancelled(conn, bet_id)


def list_bets(caller: Caller, status: Optional[str] = None, owner_id: Optional[int] = None, limit: int = 100):
    with get_conn() as conn:
        return list_bets_db(conn, caller, status=status, owner_id=owner_id, limit=limit)
