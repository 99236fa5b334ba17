import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from errors import LimitExceeded, UserInactive, WeeklyResetFailed
from tenant_guard import LIMITED_ROLES

ZERO = Decimal("0")


def is_unlimited(role: str, weekly_limit) -> bool:
    """only ADMIN is exempt. a 0 limit blocks an AGENT/MODERATOR from betting."""
    return role not in LIMITED_ROLES


def check_reservation(role: str, weekly_limit, weekly_used, amount) -> Decimal:
    """
    return the new weekly_used after reserving `amount`,
    or raise LimitExceeded (carrying the remaining allowance).
    """
    amount = Decimal(amount)
    if amount <= ZERO:
        raise ValueError("Reservation amount must be positive")

    projected = Decimal(weekly_used) + amount
    if is_unlimited(role, weekly_limit):
        return projected

    limit = Decimal(weekly_limit)
    if projected > limit:
        raise LimitExceeded(remaining=limit - Decimal(weekly_used), required=amount)
    return projected


def apply_release(weekly_used, amount) -> Decimal:
    """refund `amount`; floored at zero so a double refund never goes negative."""
    amount = Decimal(amount)
    if amount <= ZERO:
        raise ValueError("Release amount must be positive")
    return max(ZERO, Decimal(weekly_used) - amount)


def ledger_state(user: Dict[str, Any]) -> Dict[str, Any]:
    """{weekly_limit, weekly_used, remaining}; remaining is None when unlimited."""
    limit = Decimal(user["weekly_limit"])
    used = Decimal(user["weekly_used"])
    remaining = None if is_unlimited(user["role"], limit) else limit - used
    return {
        "user_id": user["id"],
        "weekly_limit": limit,
        "weekly_used": used,
        "remaining": remaining,
    }


def check_limit_update(user: Dict[str, Any], new_limit, parent: Optional[Dict[str, Any]] = None) -> Decimal:
    """
    validate a new weekly_limit for `user` and return it as a Decimal.

    rejects:
      - ADMIN targets (they have no limit to set)
      - negative limits
      - a limit above the upline's own limit (when the upline is limited)
      - a limit below what the user already used this week
    """
    if is_unlimited(user["role"], user["weekly_limit"]):
        raise ValueError(f"User {user['id']} is {user['role']} and has no weekly limit")

    new_limit = Decimal(new_limit)
    if new_limit < ZERO:
        raise ValueError("weekly_limit cannot be negative")

    if parent is not None and not is_unlimited(parent["role"], parent["weekly_limit"]):
        parent_limit = Decimal(parent["weekly_limit"])
        if new_limit > parent_limit:
            raise ValueError(
                f"weekly_limit {new_limit:.2f} exceeds the upline's limit of {parent_limit:.2f}"
            )

    used = Decimal(user["weekly_used"])
    if used > new_limit:
        raise ValueError(
            f"weekly_limit {new_limit:.2f} is below the amount already used this week ({used:.2f})"
        )
    return new_limit


# ---------
# in-memory ledger over a users "table" (user_id -> row)
# ---------


def reserve(user_id, amount, users) -> Decimal:
    user = users.get(user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")
    if not user.get("active", True):
        raise UserInactive(f"User {user_id} is inactive")

    new_used = check_reservation(user["role"], user["weekly_limit"], user["weekly_used"], amount)
    user["weekly_used"] = new_used
    return new_used


def release(user_id, amount, users) -> Decimal:
    user = users.get(user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    new_used = apply_release(user["weekly_used"], amount)
    user["weekly_used"] = new_used
    return new_used


def weekly_reset(users) -> int:
    """zero weekly_used for AGENT/MODERATOR rows; returns rows touched. idempotent."""
    affected = 0
    for user in users.values():
        if user["role"] in LIMITED_ROLES:
            user["weekly_used"] = ZERO
            affected += 1
    return affected


# ---------
# retry helper for the weekly reset batch
# ---------


def run_with_backoff(
    operation: Callable[[], Any],
    max_attempts: int,
    base_delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[Any, int]:
    """
    call operation() until it succeeds or max_attempts is reached.
    delay between attempts = base_delay * 2^(attempt-1): 1x, 2x, 4x, ...

    returns (result, attempts). on final failure raises WeeklyResetFailed,
    which carries the attempt count and the last error.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return operation(), attempt
        except Exception as e:
            last_error = e
            if attempt == max_attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"Weekly reset attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            sleep(delay)

    raise WeeklyResetFailed(attempts=max_attempts, last_error=last_error)
