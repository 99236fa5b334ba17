"""
bet-type specific outcome rules.

a rule is `rule(selection, stake, draw) -> (payout, prize_tier)`:
  - selection: the bet number as a string (e.g. "1234")
  - stake: Decimal staked on this leg
  - draw: {"winning_numbers": [1st, 2nd, 3rd, starters...],
           "supplementary_numbers": [consolations...]}
payout is 0 and prize_tier None when the leg did not win.

rules are looked up by bet type; unknown types settle as "no match" so one
malformed bet never aborts a settlement batch.
"""

from decimal import Decimal
from itertools import permutations
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from commission_engine import round_money
from settings import get_settings

ZERO = Decimal("0")

Outcome = Tuple[Decimal, Optional[str]]
Rule = Callable[[str, Decimal, dict], Outcome]

# multiplier of the stake, per prize tier
BIG_PRIZES = {
    "1ST": Decimal("2500"),
    "2ND": Decimal("1000"),
    "3RD": Decimal("500"),
    "STARTER": Decimal("180"),
    "CONSOLATION": Decimal("60"),
}

SMALL_PRIZES = {
    "1ST": Decimal("3500"),
    "2ND": Decimal("2000"),
    "3RD": Decimal("1000"),
}

TOP_TIERS = ("1ST", "2ND", "3RD")

_RULES: Dict[str, Rule] = {}


def register_rule(bet_type: str):
    def decorator(fn: Rule) -> Rule:
        _RULES[bet_type.upper()] = fn
        return fn

    return decorator


def get_rule(bet_type: str) -> Optional[Rule]:
    return _RULES.get((bet_type or "").upper())


def known_bet_types():
    return sorted(_RULES)


def _tier_of(number: str, draw: dict) -> Optional[str]:
    winning = list(draw.get("winning_numbers") or [])
    for tier, drawn in zip(TOP_TIERS, winning[:3]):
        if number == drawn:
            return tier
    if number in winning[3:]:
        return "STARTER"
    if number in (draw.get("supplementary_numbers") or []):
        return "CONSOLATION"
    return None


@register_rule("STRAIGHT")
def straight(selection: str, stake: Decimal, draw: dict) -> Outcome:
    """exact match against any winning or supplementary number."""
    drawn = list(draw.get("winning_numbers") or []) + list(draw.get("supplementary_numbers") or [])
    if selection in drawn:
        return round_money(stake * get_settings().straight_payout_multiplier), "STRAIGHT"
    return ZERO, None


@register_rule("BIG")
def big(selection: str, stake: Decimal, draw: dict) -> Outcome:
    tier = _tier_of(selection, draw)
    if tier is None:
        return ZERO, None
    return round_money(stake * BIG_PRIZES[tier]), tier


@register_rule("SMALL")
def small(selection: str, stake: Decimal, draw: dict) -> Outcome:
    tier = _tier_of(selection, draw)
    if tier not in SMALL_PRIZES:
        return ZERO, None
    return round_money(stake * SMALL_PRIZES[tier]), tier


@register_rule("IBOX")
def ibox(selection: str, stake: Decimal, draw: dict) -> Outcome:
    """
    every distinct permutation of the selection is covered; the stake is split
    evenly across them and the first winning permutation (best tier first) pays.
    """
    perms = sorted({"".join(p) for p in permutations(selection)})
    if not perms:
        return ZERO, None
    per_perm = stake / len(perms)

    best: Optional[str] = None
    for perm in perms:
        tier = _tier_of(perm, draw)
        if tier is None:
            continue
        if best is None or BIG_PRIZES[tier] > BIG_PRIZES[best]:
            best = tier

    if best is None:
        return ZERO, None
    return round_money(per_perm * BIG_PRIZES[best]), f"{best}-IBOX"


def evaluate(bet_type: str, selection: str, stake, draw: dict) -> Outcome:
    rule = get_rule(bet_type)
    if rule is None:
        logger.warning(f"No outcome rule for bet type {bet_type!r}; settling as no match")
        return ZERO, None
    return rule(selection, Decimal(stake), draw)
