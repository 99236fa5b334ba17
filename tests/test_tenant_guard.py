import pytest

from errors import TenantViolation
from tenant_guard import (
    Caller,
    ensure_visible,
    filter_rows,
    scoped_where,
    stamp_tenant,
    system_caller,
    tenant_of,
    tenant_scope,
)

AGENT = Caller(id=13, role="AGENT", tenant_id=10)
MODERATOR = Caller(id=10, role="MODERATOR")
ADMIN = Caller(id=1, role="ADMIN")


def test_caller_validation():
    with pytest.raises(ValueError):
        Caller(id=1, role="ROOT")
    with pytest.raises(TenantViolation):
        Caller(id=5, role="AGENT")


def test_tenant_scope_per_role():
    assert tenant_scope(AGENT) == 10
    assert tenant_scope(MODERATOR) == 10
    assert tenant_scope(ADMIN) is None


def test_scoped_where_injects_equality_filter():
    clauses, params = ["status = %s"], ["PENDING"]
    scoped_where(AGENT, clauses, params)

    assert clauses == ["status = %s", "tenant_id = %s"]
    assert params == ["PENDING", 10]


def test_scoped_where_lets_moderator_see_its_own_user_row():
    clauses, params = [], []
    scoped_where(MODERATOR, clauses, params, column="tenant_id", root_column="id")

    assert clauses == ["(tenant_id = %s OR id = %s)"]
    assert params == [10, 10]


def test_scoped_where_is_a_noop_for_admin():
    clauses, params = [], []
    scoped_where(ADMIN, clauses, params)

    assert clauses == [] and params == []


def test_filter_rows():
    rows = [{"id": 1, "tenant_id": 10}, {"id": 2, "tenant_id": 20}, {"id": 10, "tenant_id": None}]

    assert [r["id"] for r in filter_rows(AGENT, rows)] == [1]
    assert [r["id"] for r in filter_rows(MODERATOR, rows, id_key="id")] == [1, 10]
    assert len(filter_rows(ADMIN, rows)) == 3


def test_ensure_visible_raises_across_tenants():
    ensure_visible(AGENT, 10, "bet 1")
    ensure_visible(ADMIN, 20, "bet 2")

    with pytest.raises(TenantViolation):
        ensure_visible(AGENT, 20, "bet 2")
    with pytest.raises(TenantViolation):
        ensure_visible(MODERATOR, None, "user 1", row_id=1)


def test_stamp_tenant():
    assert stamp_tenant(AGENT, {"x": 1}) == {"x": 1, "tenant_id": 10}
    assert stamp_tenant(MODERATOR, {"tenant_id": 10}) == {"tenant_id": 10}
    assert stamp_tenant(ADMIN, {"tenant_id": 20}) == {"tenant_id": 20}

    with pytest.raises(TenantViolation):
        stamp_tenant(AGENT, {"tenant_id": 20})


def test_system_caller_is_scoped_to_the_bet_tenant():
    assert tenant_scope(system_caller(20)) == 20
    assert tenant_scope(system_caller(None)) is None


def test_tenant_of():
    assert tenant_of({"id": 10, "role": "MODERATOR", "tenant_id": None}) == 10
    assert tenant_of({"id": 13, "role": "AGENT", "tenant_id": 10}) == 10
    assert tenant_of({"id": 1, "role": "ADMIN", "tenant_id": None}) is None
