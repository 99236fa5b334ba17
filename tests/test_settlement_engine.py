from datetime import date
from decimal import Decimal

import pytest

from bets_engine import cancel_bet, place_bet
from settlement_engine import (
    LOST,
    PARTIAL,
    PENDING,
    WON,
    combine_legs,
    draw_key,
    profit_loss_for,
    settle,
)
from tenant_guard import Caller

DRAW_DATE = date(2024, 1, 6)


def draw(provider_ref, winning=("1234", "5678", "9012", "1111"), supplementary=("3333",), result_id=501, draw_date=DRAW_DATE):
    return {
        "id": result_id,
        "provider_ref": provider_ref,
        "draw_date": draw_date,
        "winning_numbers": list(winning),
        "supplementary_numbers": list(supplementary),
    }


@pytest.fixture
def agent():
    return Caller(id=13, role="AGENT", tenant_id=10)


@pytest.fixture
def bets():
    return {}


def test_draw_key_format():
    assert draw_key("M", DRAW_DATE) == "M:2024-01-06"
    assert draw_key("M", "2024-01-06") == "M:2024-01-06"


def test_won_bet_cascades_profit_within_tenant(users, bets, agent):
    bet = place_bet(agent, Decimal("1"), ["M"], "BIG", "1234", DRAW_DATE, users, bets)
    commissions = []

    summary = settle(draw("M"), users, bets, commissions)

    assert bet["status"] == WON
    assert bet["total_payout"] == Decimal("2500.00")
    assert bet["result_ref"] == 501
    assert bet["legs"]["M"]["prize_tier"] == "1ST"
    assert summary["processed"] == 1
    assert summary["won"] == 1
    assert summary["errors"] == []

    # profit 2499: 12 @3%, 11 @5%, 10 @2%; the admin above the moderator is outside the tenant
    assert [(c["recipient_id"], c["amount"]) for c in commissions] == [
        (12, Decimal("74.97")),
        (11, Decimal("121.20")),
        (10, Decimal("46.06")),
    ]
    assert all(c["tenant_id"] == 10 for c in commissions)
    assert all(c["bet_id"] == bet["id"] for c in commissions)
    assert summary["commissions"] == 3


def test_lost_bet_cascades_negative_amounts(users, bets, agent):
    place_bet(agent, Decimal("10"), ["M"], "BIG", "0000", DRAW_DATE, users, bets)
    commissions = []

    summary = settle(draw("M"), users, bets, commissions)

    assert summary["lost"] == 1
    assert [c["amount"] for c in commissions] == [Decimal("-0.30"), Decimal("-0.49"), Decimal("-0.18")]


def test_losses_can_be_excluded_from_commission(users, bets, agent):
    bet = place_bet(agent, Decimal("10"), ["M"], "BIG", "0000", DRAW_DATE, users, bets)
    commissions = []

    settle(draw("M"), users, bets, commissions, commission_on_losses=False)

    assert bet["status"] == LOST
    assert commissions == []


def test_settling_twice_changes_nothing(users, bets, agent):
    bet = place_bet(agent, Decimal("1"), ["M"], "BIG", "1234", DRAW_DATE, users, bets)
    commissions = []

    settle(draw("M"), users, bets, commissions)
    snapshot = (bet["status"], bet["total_payout"], list(commissions))

    again = settle(draw("M"), users, bets, commissions)

    assert again["processed"] == 0
    assert (bet["status"], bet["total_payout"], commissions) == snapshot


def test_multi_provider_bet_waits_for_every_leg(users, bets, agent):
    bet = place_bet(agent, Decimal("1"), ["M", "P"], "BIG", "1234", DRAW_DATE, users, bets)
    assert bet["total_amount"] == Decimal("2.00")
    commissions = []

    first = settle(draw("M"), users, bets, commissions)

    assert first["still_pending"] == 1
    assert bet["status"] == PENDING
    assert bet["legs"]["M"]["status"] == WON
    assert commissions == []

    second = settle(draw("P", winning=("0000",), result_id=502), users, bets, commissions)

    assert second["partial"] == 1
    assert bet["status"] == PARTIAL
    assert bet["total_payout"] == Decimal("2500.00")
    assert bet["result_ref"] == 502
    # profit 2498 -> 3% of it first
    assert commissions[0]["amount"] == Decimal("74.94")


def test_other_draw_dates_and_cancelled_bets_are_ignored(users, bets, agent):
    other_day = place_bet(agent, Decimal("1"), ["M"], "BIG", "1234", date(2024, 1, 7), users, bets)
    cancelled = place_bet(agent, Decimal("1"), ["M"], "BIG", "1234", DRAW_DATE, users, bets)
    cancel_bet(agent, cancelled["id"], users, bets)

    summary = settle(draw("M"), users, bets, [])

    assert summary["processed"] == 0
    assert other_day["status"] == PENDING
    assert cancelled["status"] == "CANCELLED"


def test_one_failing_bet_does_not_abort_the_batch(users, bets, agent):
    broken = place_bet(agent, Decimal("1"), ["M"], "BIG", "1234", DRAW_DATE, users, bets)
    healthy = place_bet(Caller(id=21, role="AGENT", tenant_id=20), Decimal("1"), ["M"], "BIG", "1234", DRAW_DATE, users, bets)
    # dangling upline: resolving 13's chain fails
    users[12]["upline_id"] = 999
    commissions = []

    summary = settle(draw("M"), users, bets, commissions)

    assert [e["bet_id"] for e in summary["errors"]] == [broken["id"]]
    assert broken["status"] == PENDING
    assert broken["legs"]["M"]["status"] == PENDING
    assert healthy["status"] == WON
    assert summary["processed"] == 1
    assert {c["recipient_id"] for c in commissions} == {20}


def test_combine_legs():
    won = {"status": WON, "payout": Decimal("10")}
    lost = {"status": LOST, "payout": Decimal("0")}
    pending = {"status": PENDING, "payout": Decimal("0")}

    assert combine_legs([won, won]) == {"status": WON, "total_payout": Decimal("20")}
    assert combine_legs([won, lost])["status"] == PARTIAL
    assert combine_legs([lost, lost])["status"] == LOST
    assert combine_legs([won, pending])["status"] == PENDING


def test_profit_loss_for():
    assert profit_loss_for(WON, Decimal("90"), Decimal("1")) == Decimal("89")
    assert profit_loss_for(PARTIAL, Decimal("1"), Decimal("2")) == Decimal("-1")
    assert profit_loss_for(LOST, Decimal("0"), Decimal("5")) == Decimal("-5")
    with pytest.raises(ValueError):
        profit_loss_for(PENDING, Decimal("0"), Decimal("5"))
