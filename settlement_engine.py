from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from loguru import logger

import outcome_rules
from commission_engine import cascade
from hierarchy_engine import resolve_upline_chain
from tenant_guard import system_caller

PENDING = "PENDING"
WON = "WON"
LOST = "LOST"
PARTIAL = "PARTIAL"
CANCELLED = "CANCELLED"

ZERO = Decimal("0")


def draw_key(provider_ref: str, draw_date) -> str:
    if isinstance(draw_date, date):
        draw_date = draw_date.isoformat()
    return f"{provider_ref}:{draw_date}"


def evaluate_leg(bet: Dict[str, Any], draw: Dict[str, Any]) -> Dict[str, Any]:
    """outcome of the bet's leg for the draw's provider."""
    payout, tier = outcome_rules.evaluate(
        bet["bet_type"], bet["selection"], bet["amount_per_provider"], draw
    )
    return {
        "status": WON if payout > ZERO else LOST,
        "payout": payout,
        "prize_tier": tier,
        "result_ref": draw.get("id"),
    }


def combine_legs(legs: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    bet status from its legs:
      - any leg still PENDING -> PENDING
      - every leg paid        -> WON
      - some legs paid        -> PARTIAL
      - no leg paid           -> LOST
    """
    total_payout = sum((leg["payout"] for leg in legs), ZERO)
    if any(leg["status"] == PENDING for leg in legs):
        return {"status": PENDING, "total_payout": total_payout}

    won = sum(1 for leg in legs if leg["status"] == WON)
    if won == len(legs) and won > 0:
        status = WON
    elif won > 0:
        status = PARTIAL
    else:
        status = LOST
    return {"status": status, "total_payout": total_payout}


def profit_loss_for(status: str, total_payout, total_amount) -> Decimal:
    """owner's result on the bet: + when the payout beats the stake."""
    if status in (WON, PARTIAL):
        return Decimal(total_payout) - Decimal(total_amount)
    if status == LOST:
        return -Decimal(total_amount)
    raise ValueError(f"No profit/loss for a {status} bet")


def distributes_commission(status: str, commission_on_losses: bool) -> bool:
    if status in (WON, PARTIAL):
        return True
    return status == LOST and commission_on_losses


def new_summary(key: str) -> Dict[str, Any]:
    return {
        "draw_key": key,
        "processed": 0,
        "won": 0,
        "lost": 0,
        "partial": 0,
        "still_pending": 0,
        "commissions": 0,
        "errors": [],
    }


def count_outcome(summary: Dict[str, Any], status: str) -> None:
    summary["processed"] += 1
    if status == WON:
        summary["won"] += 1
    elif status == LOST:
        summary["lost"] += 1
    elif status == PARTIAL:
        summary["partial"] += 1
    else:
        summary["still_pending"] += 1


def settle(
    draw,
    users,
    bets,
    commissions,
    commission_on_losses: bool = True,
    include_inactive: bool = True,
) -> Dict[str, Any]:
    """
    in-memory settlement pass for one draw result.

    draw : dict
        {"id", "provider_ref", "draw_date", "winning_numbers", "supplementary_numbers"}
    users : dict  user_id -> row
    bets : dict   bet_id -> bet (with "legs": {provider_ref: leg})
    commissions : list
        append-only journal of commission rows.

    only PENDING bets with a PENDING leg for this provider are touched, so
    calling settle() again for the same draw changes nothing.
    """
    key = draw_key(draw["provider_ref"], draw["draw_date"])
    summary = new_summary(key)

    matching = [
        bet
        for bet in bets.values()
        if bet["status"] == PENDING
        and draw_key(draw["provider_ref"], bet["draw_date"]) == key
        and bet["legs"].get(draw["provider_ref"], {}).get("status") == PENDING
    ]

    for bet in matching:
        try:
            status, rows = _settle_bet(bet, draw, users, commission_on_losses, include_inactive)
        except Exception as e:
            logger.exception(f"Settlement of bet {bet['id']} failed for draw {key}")
            summary["errors"].append({"bet_id": bet["id"], "error": str(e)})
            continue

        commissions.extend(rows)
        summary["commissions"] += len(rows)
        count_outcome(summary, status)

    logger.info(
        f"Settled draw {key}: {summary['processed']} bets, {summary['won']} won, "
        f"{summary['partial']} partial, {summary['lost']} lost, {len(summary['errors'])} errors"
    )
    return summary


def _settle_bet(bet, draw, users, commission_on_losses, include_inactive):
    # work on copies so a failure leaves the bet untouched
    legs = {ref: dict(leg) for ref, leg in bet["legs"].items()}
    legs[draw["provider_ref"]] = evaluate_leg(bet, draw)

    combined = combine_legs(list(legs.values()))
    rows: List[Dict[str, Any]] = []

    if combined["status"] != PENDING and distributes_commission(combined["status"], commission_on_losses):
        scope = system_caller(bet["tenant_id"])
        profit_loss = profit_loss_for(combined["status"], combined["total_payout"], bet["total_amount"])
        chain = resolve_upline_chain(
            bet["owner_id"], users, include_inactive=include_inactive, caller=scope
        )
        rows, _ = cascade(bet["id"], bet["owner_id"], profit_loss, chain)
        rows = [{**row, "tenant_id": bet["tenant_id"]} for row in rows]

    bet["legs"] = legs
    bet["total_payout"] = combined["total_payout"]
    if combined["status"] != PENDING:
        bet["status"] = combined["status"]
        bet["result_ref"] = draw.get("id")
    return combined["status"], rows
