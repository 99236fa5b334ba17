from datetime import date
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from audit import emit_audit_event
from commission_db import cascade_db
from db.db import get_conn
from db.repositories import (
    finalize_bet,
    get_bet_legs,
    get_draw_result,
    lock_pending_bet,
    pending_bet_ids_for_draw,
    update_bet_leg,
    upsert_draw_result,
)
from settings import get_settings
from settlement_engine import (
    PENDING,
    combine_legs,
    count_outcome,
    distributes_commission,
    draw_key,
    evaluate_leg,
    new_summary,
    profit_loss_for,
)


def settle(draw_result_id: int) -> Dict[str, Any]:
    """
    DB-backed settlement pass for one persisted draw result.

    each matching bet is settled in its OWN transaction:
      - lock the bet row (FOR UPDATE ... WHERE status = 'PENDING')
      - evaluate the leg for this provider
      - when every leg is settled: final status + commission cascade
    a failure rolls back that bet only; it is logged, audited and reported in
    the summary, and the batch moves on. re-running for the same draw finds
    no PENDING leg for it and changes nothing.
    """
    with get_conn() as conn:
        draw = get_draw_result(conn, draw_result_id)
        bet_ids = pending_bet_ids_for_draw(conn, draw["provider_ref"], draw["draw_date"])

    key = draw_key(draw["provider_ref"], draw["draw_date"])
    summary = new_summary(key)
    commission_on_losses = get_settings().commission_on_losses

    for bet_id in bet_ids:
        with get_conn() as conn:
            try:
                outcome = _settle_bet_in_tx(conn, bet_id, draw, commission_on_losses)
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.exception(f"Settlement of bet {bet_id} failed for draw {key}")
                summary["errors"].append({"bet_id": bet_id, "error": str(e)})
                emit_audit_event(
                    "settlement.bet_failed",
                    None,
                    {"bet_id": bet_id, "draw_key": key, "error": str(e)},
                )
                continue

        if outcome is None:
            # settled or cancelled by someone else since we listed it
            continue

        status, rows = outcome
        summary["commissions"] += len(rows)
        count_outcome(summary, status)

    logger.info(
        f"Settled draw {key}: {summary['processed']} bets, {summary['won']} won, "
        f"{summary['partial']} partial, {summary['lost']} lost, {len(summary['errors'])} errors"
    )
    emit_audit_event(
        "settlement.completed",
        None,
        {k: v for k, v in summary.items() if k != "errors"} | {"errors": len(summary["errors"])},
    )
    return summary


def _settle_bet_in_tx(
    conn: Connection,
    bet_id: int,
    draw: Dict[str, Any],
    commission_on_losses: bool,
) -> Optional[tuple]:
    bet = lock_pending_bet(conn, bet_id)
    if bet is None:
        return None

    legs = get_bet_legs(conn, bet_id)
    provider_ref = draw["provider_ref"]
    if not any(leg["provider_ref"] == provider_ref and leg["status"] == PENDING for leg in legs):
        return None

    leg_outcome = evaluate_leg(bet, draw)
    update_bet_leg(conn, bet_id, provider_ref, leg_outcome)
    legs = [leg_outcome if leg["provider_ref"] == provider_ref else leg for leg in legs]

    combined = combine_legs(legs)
    rows: List[Dict[str, Any]] = []
    if combined["status"] == PENDING:
        return PENDING, rows

    finalize_bet(conn, bet_id, combined["status"], combined["total_payout"], draw["id"])

    if distributes_commission(combined["status"], commission_on_losses):
        profit_loss = profit_loss_for(combined["status"], combined["total_payout"], bet["total_amount"])
        rows = cascade_db(conn, bet, profit_loss)

    logger.info(
        f"Bet {bet_id} settled {combined['status']}: payout {combined['total_payout']}, "
        f"{len(rows)} commission rows"
    )
    return combined["status"], rows


def _validate_numbers(numbers: List[str], what: str) -> List[str]:
    cleaned = [str(n).strip() for n in numbers]
    bad = [n for n in cleaned if not n.isdigit()]
    if bad:
        raise ValueError(f"Invalid {what}: {', '.join(bad)}")
    return cleaned


def record_draw_result(
    provider_ref: str,
    draw_date: date,
    winning_numbers: List[str],
    supplementary_numbers: Optional[List[str]] = None,
    draw_number: Optional[str] = None,
    settle_now: bool = True,
) -> Dict[str, Any]:
    """
    persist a validated draw result (insert, or update by draw_key) and,
    unless settle_now is False, run settlement for it right away.
    """
    provider_ref = (provider_ref or "").strip()
    if not provider_ref:
        raise ValueError("provider_ref cannot be empty")
    winning = _validate_numbers(winning_numbers, "winning numbers")
    if not winning:
        raise ValueError("At least one winning number is required")
    supplementary = _validate_numbers(supplementary_numbers or [], "supplementary numbers")

    with get_conn() as conn:
        try:
            result = upsert_draw_result(
                conn,
                provider_ref,
                draw_date,
                winning,
                supplementary,
                draw_key(provider_ref, draw_date),
                draw_number,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Draw result {result['draw_key']} stored as id {result['id']}")
    emit_audit_event("draw_result.recorded", None, {"draw_result_id": result["id"], "draw_key": result["draw_key"]})

    response = {"draw_result": result, "settlement": None}
    if settle_now:
        response["settlement"] = settle(result["id"])
    return response
