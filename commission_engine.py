from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from errors import LedgerInconsistency

MONEY = Decimal("0.01")
MIN_REMAINING = Decimal("0.01")
HUNDRED = Decimal("100")


def round_money(value: Decimal, precision: Decimal = MONEY) -> Decimal:
    # ROUND_HALF_UP in decimal is half-away-from-zero, also for negatives
    return value.quantize(precision, rounding=ROUND_HALF_UP)


def cascade(
    bet_id: Optional[int],
    owner_id: int,
    profit_loss,
    chain: List[Dict[str, Any]],
    precision: Decimal = MONEY,
    min_remaining: Decimal = MIN_REMAINING,
) -> Tuple[List[Dict[str, Any]], Decimal]:
    """
    distribute profit_loss up the upline chain.

    profit_loss: Decimal, signed (+ owner won, - owner lost)
    chain: output of resolve_upline_chain, closest upline first

    each level takes `rate`% of what is still remaining. the share is rounded
    to money precision BEFORE it is subtracted, so the next level works on the
    already-rounded remainder and sum(amounts) + remaining == profit_loss.

    returns (rows, remaining). rows are ready for a batch insert.
    """
    original = Decimal(profit_loss)
    remaining = original
    rows: List[Dict[str, Any]] = []

    for upline in chain:
        if abs(remaining) < min_remaining:
            break

        rate = Decimal(upline["commission_rate"])
        share = round_money(remaining * (rate / HUNDRED), precision)

        if share == 0:
            # 0% upline (or share below a cent): nothing to book, keep walking
            continue

        rows.append(
            {
                "recipient_id": upline["user_id"],
                "bet_id": bet_id,
                "source_owner_id": owner_id,
                "level": upline["level"],
                "rate": rate,
                "base_amount": remaining,
                "amount": share,
            }
        )
        remaining -= share

    reconcile(bet_id, original, rows, remaining, precision)
    return rows, remaining


def reconcile(bet_id, original: Decimal, rows, remaining: Decimal, tolerance: Decimal = MONEY) -> None:
    total = sum((row["amount"] for row in rows), Decimal("0")) + remaining
    if abs(total - original) >= tolerance:
        logger.error(
            f"Cascade reconciliation failed for bet {bet_id}: "
            f"profit_loss={original} shares+remaining={total} rows={rows}"
        )
        raise LedgerInconsistency(bet_id, original, total)
