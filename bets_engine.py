from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import ledger_engine
import outcome_rules
from commission_engine import round_money
from errors import NotFound, NotOwner, NotPending, ProviderInvalid
from settlement_engine import CANCELLED, PENDING
from tenant_guard import ADMIN, AGENT, Caller, ensure_visible, filter_rows, tenant_of

# 3D through 6D games; longer numbers also make IBOX permutations explode
MIN_SELECTION_DIGITS = 3
MAX_SELECTION_DIGITS = 6


def validate_providers(provider_refs: Iterable[str], known_providers=None) -> List[str]:
    refs = [ref.strip() for ref in provider_refs if ref and ref.strip()]
    if not refs:
        raise ProviderInvalid("At least one provider is required")
    if len(set(refs)) != len(refs):
        raise ProviderInvalid("Duplicate providers in one bet")
    if known_providers is not None:
        unknown = [ref for ref in refs if ref not in known_providers]
        if unknown:
            raise ProviderInvalid(f"Unknown or inactive provider(s): {', '.join(unknown)}")
    return refs


def normalize_bet(bet_type: str, selection: str):
    bet_type = (bet_type or "").strip().upper()
    if bet_type not in outcome_rules.known_bet_types():
        raise ValueError(f"Unknown bet type {bet_type!r}")
    selection = (selection or "").strip()
    if not selection.isdigit():
        raise ValueError("Selection must be a number")
    if not MIN_SELECTION_DIGITS <= len(selection) <= MAX_SELECTION_DIGITS:
        raise ValueError(
            f"Selection must have {MIN_SELECTION_DIGITS} to {MAX_SELECTION_DIGITS} digits, got {len(selection)}"
        )
    return bet_type, selection


def total_amount_for(amount_per_provider, provider_refs: List[str]) -> Decimal:
    amount = Decimal(amount_per_provider)
    if amount <= 0:
        raise ValueError("Bet amount must be positive")
    return round_money(amount * len(provider_refs))


def place_bet(
    caller: Caller,
    amount_per_provider,
    provider_refs,
    bet_type: str,
    selection: str,
    draw_date,
    users,
    bets,
    known_providers=None,
) -> Dict[str, Any]:
    """
    in-memory placement: reserve against the owner's weekly limit, then record
    the bet as PENDING with one PENDING leg per provider.
    """
    refs = validate_providers(provider_refs, known_providers)
    bet_type, selection = normalize_bet(bet_type, selection)
    total = total_amount_for(amount_per_provider, refs)

    owner = users.get(caller.id)
    if owner is None:
        raise NotFound(f"User {caller.id} not found")

    ledger_engine.reserve(caller.id, total, users)

    bet_id = max(bets, default=0) + 1
    bet = {
        "id": bet_id,
        "owner_id": caller.id,
        "tenant_id": tenant_of({"id": caller.id, **owner}),
        "provider_refs": refs,
        "bet_type": bet_type,
        "selection": selection,
        "amount_per_provider": Decimal(amount_per_provider),
        "total_amount": total,
        "draw_date": draw_date,
        "status": PENDING,
        "total_payout": Decimal("0"),
        "result_ref": None,
        "legs": {
            ref: {"status": PENDING, "payout": Decimal("0"), "prize_tier": None, "result_ref": None}
            for ref in refs
        },
    }
    bets[bet_id] = bet
    return bet


def cancel_bet(caller: Caller, bet_id, users, bets) -> Dict[str, Any]:
    """PENDING -> CANCELLED, refunding exactly total_amount (floored at zero)."""
    bet = bets.get(bet_id)
    if bet is None:
        raise NotFound(f"Bet {bet_id} not found")

    ensure_visible(caller, bet["tenant_id"], f"bet {bet_id}")
    if bet["owner_id"] != caller.id and caller.role != ADMIN:
        raise NotOwner(bet_id, caller.id)
    if bet["status"] != PENDING:
        raise NotPending(bet_id, bet["status"])

    ledger_engine.release(bet["owner_id"], bet["total_amount"], users)
    bet["status"] = CANCELLED
    return bet


def list_bets(caller: Caller, bets, status: Optional[str] = None) -> List[Dict[str, Any]]:
    rows = filter_rows(caller, bets.values())
    if caller.role == AGENT:
        rows = [row for row in rows if row["owner_id"] == caller.id]
    if status:
        rows = [row for row in rows if row["status"] == status]
    return rows
