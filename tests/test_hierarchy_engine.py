from decimal import Decimal

import pytest
from loguru import logger

from errors import HierarchyCycle
from hierarchy_engine import build_chain, register_upline, resolve_upline_chain
from tenant_guard import system_caller


def _straight_line(n):
    """users 0..n, each user i+1 under user i."""
    users = {0: {"upline_id": None, "commission_rate": Decimal("1"), "active": True, "tenant_id": None}}
    for i in range(1, n + 1):
        users[i] = {"upline_id": i - 1, "commission_rate": Decimal("1"), "active": True, "tenant_id": None}
    return users


def test_chain_is_ordered_closest_first(users):
    chain = resolve_upline_chain(13, users)

    assert [c["user_id"] for c in chain] == [12, 11, 10, 1]
    assert [c["level"] for c in chain] == [1, 2, 3, 4]
    assert [c["commission_rate"] for c in chain] == [Decimal("3"), Decimal("5"), Decimal("2"), Decimal("0")]


def test_top_of_tree_has_empty_chain(users):
    assert resolve_upline_chain(1, users) == []


def test_unknown_user_raises(users):
    with pytest.raises(ValueError):
        resolve_upline_chain(999, users)


def test_inactive_uplines_are_kept_by_default(users):
    users[11]["active"] = False

    chain = resolve_upline_chain(13, users)

    assert [c["user_id"] for c in chain] == [12, 11, 10, 1]
    assert chain[1]["active"] is False


def test_inactive_uplines_can_be_skipped_without_consuming_a_level(users):
    users[11]["active"] = False

    chain = resolve_upline_chain(13, users, include_inactive=False)

    assert [c["user_id"] for c in chain] == [12, 10, 1]
    assert [c["level"] for c in chain] == [1, 2, 3]


def test_chain_stops_at_tenant_boundary(users):
    chain = resolve_upline_chain(13, users, caller=system_caller(10))

    # the moderator is the tenant root; the admin above it is outside
    assert [c["user_id"] for c in chain] == [12, 11, 10]


def test_depth_ceiling_truncates_and_logs_warning():
    users = _straight_line(150)
    messages = []
    handler_id = logger.add(messages.append, level="WARNING")
    try:
        chain = resolve_upline_chain(150, users, max_depth=100)
    finally:
        logger.remove(handler_id)

    assert len(chain) == 100
    assert chain[0]["user_id"] == 149
    assert chain[-1]["user_id"] == 50
    assert any("100-level ceiling" in str(m) for m in messages)


def test_exactly_max_depth_levels_does_not_warn():
    users = _straight_line(100)
    messages = []
    handler_id = logger.add(messages.append, level="WARNING")
    try:
        chain = resolve_upline_chain(100, users, max_depth=100)
    finally:
        logger.remove(handler_id)

    assert len(chain) == 100
    assert messages == []


def test_cyclic_data_terminates():
    users = {
        1: {"upline_id": 2, "commission_rate": Decimal("1"), "active": True},
        2: {"upline_id": 1, "commission_rate": Decimal("1"), "active": True},
    }

    chain = resolve_upline_chain(1, users, max_depth=10)

    assert len(chain) == 10


def test_build_chain_converts_rates_to_decimal():
    chain = build_chain(5, [{"id": 4, "commission_rate": "2.50", "active": True}])

    assert chain == [{"user_id": 4, "commission_rate": Decimal("2.50"), "level": 1, "active": True}]


def test_register_upline_links_and_transfers(users):
    register_upline(13, 11, users)
    assert users[13]["upline_id"] == 11

    # transfer back under 12
    register_upline(13, 12, users)
    assert users[13]["upline_id"] == 12


def test_register_upline_rejects_self_reference(users):
    with pytest.raises(HierarchyCycle):
        register_upline(11, 11, users)


def test_register_upline_rejects_cycles(users):
    # 13 is below 11; putting 11 under 13 closes a loop
    with pytest.raises(HierarchyCycle):
        register_upline(11, 13, users)

    assert users[11]["upline_id"] == 10
