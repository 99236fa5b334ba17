from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from audit import emit_audit_event
from db.db import get_conn
from db.repositories import (
    get_upline_rows,
    get_user,
    get_user_upline_id,
    set_user_upline_id,
    update_user_fields,
)
from errors import HierarchyCycle, TenantViolation
from hierarchy_engine import build_chain
from settings import get_settings
from tenant_guard import ADMIN, AGENT, MODERATOR, Caller, ensure_visible, is_visible, tenant_of


def resolve_upline_chain_db(
    conn: Connection,
    user_id: int,
    caller: Optional[Caller] = None,
    max_depth: Optional[int] = None,
    include_inactive: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    """
    DB-backed upline resolution. runs on the caller's connection so it reads
    inside the same transaction (settlement holds the bet lock meanwhile).

    caller: when given, the chain ends at the caller's tenant boundary.
    """
    settings = get_settings()
    if max_depth is None:
        max_depth = settings.max_hierarchy_depth
    if include_inactive is None:
        include_inactive = settings.include_inactive_uplines

    rows = get_upline_rows(conn, user_id, max_depth)

    if caller is not None:
        visible = []
        for row in rows:
            if not is_visible(caller, row["tenant_id"], row["id"]):
                break
            visible.append(row)
        rows = visible

    return build_chain(user_id, rows, max_depth=max_depth, include_inactive=include_inactive)


def assign_upline_db(conn: Connection, caller: Caller, child_id: int, parent_id: int) -> Dict[str, Any]:
    """
    move child under parent (creation-time link or transfer), inside the
    caller's transaction.

    rules:
      - both users must be visible to the caller
      - a user cannot be its own upline
      - the new edge must not create a cycle
    """
    if child_id == parent_id:
        raise HierarchyCycle(f"User {child_id} cannot be its own upline.")

    child = get_user(conn, child_id, for_update=True)
    parent = get_user(conn, parent_id)
    ensure_visible(caller, child["tenant_id"], f"user {child_id}", row_id=child_id)
    ensure_visible(caller, parent["tenant_id"], f"user {parent_id}", row_id=parent_id)

    # an agent's upline must sit in the same organization (or be its root)
    if child["role"] == AGENT and tenant_of(parent) != child["tenant_id"]:
        raise TenantViolation(
            f"User {parent_id} is outside the organization of user {child_id}."
        )

    # walk up from parent; hitting child means the new edge closes a loop
    max_depth = get_settings().max_hierarchy_depth
    current: Optional[int] = parent_id
    steps = 0
    while current is not None:
        if current == child_id:
            raise HierarchyCycle(
                f"Assigning {parent_id} as upline of {child_id} would create a cycle."
            )
        steps += 1
        if steps > max_depth:
            raise HierarchyCycle(f"Upline chain of {parent_id} does not terminate.")
        current = get_user_upline_id(conn, current)

    previous = child["upline_id"]
    set_user_upline_id(conn, child_id, parent_id)
    logger.info(f"User {child_id} moved under {parent_id} (was {previous}) by {caller.role} {caller.id}")
    return {"status": "linked", "child_id": child_id, "parent_id": parent_id, "previous_upline_id": previous}


def transfer_user_db(caller: Caller, child_id: int, parent_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            result = assign_upline_db(conn, caller, child_id, parent_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    emit_audit_event("user.upline_assigned", caller.id, result)
    return result


def ensure_manages(conn: Connection, caller: Caller, user: Dict[str, Any]) -> None:
    """
    the caller may change the account settings of `user`:
      - ADMIN manages everyone
      - a MODERATOR manages the other users of its tenant
      - an AGENT manages its own downline only
    nobody but an ADMIN edits their own account.
    """
    user_id = user["id"]
    ensure_visible(caller, user["tenant_id"], f"user {user_id}", row_id=user_id)
    if caller.role == ADMIN:
        return
    if user_id != caller.id:
        if caller.role == MODERATOR:
            return
        uplines = get_upline_rows(conn, user_id, get_settings().max_hierarchy_depth)
        if any(row["id"] == caller.id for row in uplines):
            return

    logger.warning(f"{caller.role} {caller.id} tried to change user {user_id} outside its downline")
    raise TenantViolation(f"User {user_id} is not in your downline")


def update_user_db(
    caller: Caller,
    user_id: int,
    active: Optional[bool] = None,
    commission_rate: Optional[Decimal] = None,
) -> Dict[str, Any]:
    """
    change a user's active flag and/or commission rate.
    an inactive user can no longer reserve (place bets); whether it still
    earns commissions depends on include_inactive_uplines.
    """
    fields: Dict[str, Any] = {}
    if active is not None:
        fields["active"] = active
    if commission_rate is not None:
        if not Decimal("0") <= Decimal(commission_rate) <= Decimal("100"):
            raise ValueError("commission_rate must be between 0 and 100")
        fields["commission_rate"] = Decimal(commission_rate)
    if not fields:
        raise ValueError("Nothing to update")

    with get_conn() as conn:
        try:
            user = get_user(conn, user_id, for_update=True)
            ensure_manages(conn, caller, user)
            updated = update_user_fields(conn, user_id, fields)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    changes = {k: str(v) if isinstance(v, Decimal) else v for k, v in fields.items()}
    logger.info(f"User {user_id} updated by {caller.role} {caller.id}: {changes}")
    emit_audit_event("user.updated", caller.id, {"user_id": user_id, **changes})
    return updated
