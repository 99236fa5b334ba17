from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger

from errors import HierarchyCycle, HierarchyDepthExceeded
from tenant_guard import Caller, is_visible

DEFAULT_MAX_DEPTH = 100


def register_upline(child_id, parent_id, users):
    """
    attach `child_id` under `parent_id`.
    users: dict mapping user_id -> row dict (needs "upline_id")
    rules:
      - a user cannot be its own upline
      - the edge child -> parent must NOT create a cycle
    unlike a referral, the upline may be re-assigned (transfer), as long as
    the result stays acyclic.
    """
    if child_id not in users:
        raise ValueError(f"User {child_id} not found")
    if parent_id not in users:
        raise ValueError(f"User {parent_id} not found")

    if child_id == parent_id:
        raise HierarchyCycle(f"User {child_id} cannot be its own upline.")

    # walk UP from parent; hitting child means the new edge closes a loop
    current = parent_id
    steps = 0
    while current is not None:
        if current == child_id:
            raise HierarchyCycle(
                f"Assigning {parent_id} as upline of {child_id} would create a cycle."
            )
        steps += 1
        if steps > DEFAULT_MAX_DEPTH:
            # existing data is already cyclic above the parent
            raise HierarchyCycle(f"Upline chain of {parent_id} does not terminate.")
        current = users[current].get("upline_id")

    users[child_id]["upline_id"] = parent_id


def build_chain(
    user_id: int,
    rows: List[Dict[str, Any]],
    max_depth: int = DEFAULT_MAX_DEPTH,
    include_inactive: bool = True,
) -> List[Dict[str, Any]]:
    """
    turn raw ancestor rows (closest first, each with id / commission_rate /
    active) into the resolver output.

    rows may hold one more entry than max_depth: that extra row is how callers
    signal the ceiling was hit. it is logged, never raised.
    """
    if len(rows) > max_depth:
        logger.warning(str(HierarchyDepthExceeded(user_id, max_depth)))
        rows = rows[:max_depth]

    chain = []
    for row in rows:
        if not row["active"] and not include_inactive:
            continue
        chain.append(
            {
                "user_id": row["id"],
                "commission_rate": Decimal(row["commission_rate"]),
                "level": len(chain) + 1,
                "active": row["active"],
            }
        )
    return chain


def resolve_upline_chain(
    user_id,
    users,
    max_depth: int = DEFAULT_MAX_DEPTH,
    include_inactive: bool = True,
    caller: Optional[Caller] = None,
) -> List[Dict[str, Any]]:
    """
    given a user_id and users (user_id -> row with upline_id / commission_rate /
    active), return the ordered upline chain, direct parent first.
    terminates after max_depth levels even on cyclic data.

    caller: when given, the walk stops at the first ancestor outside the
    caller's tenant (the tenant root is the last visible level).
    """
    if user_id not in users:
        raise ValueError(f"User {user_id} not found")

    rows = []
    current: Optional[int] = users[user_id].get("upline_id")

    # one extra step so build_chain can tell "exactly max_depth" from "cut off"
    while current is not None and len(rows) <= max_depth:
        row = users.get(current)
        if row is None:
            raise ValueError(f"User {current} not found")
        if caller is not None and not is_visible(caller, row.get("tenant_id"), current):
            break
        rows.append({"id": current, **row})
        current = row.get("upline_id")

    return build_chain(user_id, rows, max_depth=max_depth, include_inactive=include_inactive)
