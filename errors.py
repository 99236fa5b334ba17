from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """base class for every error raised by the settlement / ledger core."""


class NotFound(LedgerError, LookupError):
    pass


class LimitExceeded(LedgerError, ValueError):
    """
    weekly allowance would be exceeded. user-facing, carries the exact remaining
    allowance so the caller can retry with a smaller stake.
    """

    def __init__(self, remaining: Decimal, required: Decimal):
        self.remaining = remaining
        self.required = required
        super().__init__(
            f"Insufficient weekly limit. Remaining: {remaining:.2f}, Required: {required:.2f}"
        )


class UserInactive(LedgerError, PermissionError):
    pass


class ProviderInvalid(LedgerError, ValueError):
    pass


class NotPending(LedgerError, ValueError):
    def __init__(self, bet_id: int, status: str):
        self.bet_id = bet_id
        self.status = status
        super().__init__(f"Cannot cancel bet {bet_id} with status: {status}")


class NotOwner(LedgerError, PermissionError):
    def __init__(self, bet_id: int, caller_id: int):
        self.bet_id = bet_id
        self.caller_id = caller_id
        super().__init__(f"User {caller_id} does not own bet {bet_id}")


class TenantViolation(LedgerError, PermissionError):
    """a read or write crossed a tenant boundary. bug or bypass attempt."""


class HierarchyCycle(LedgerError, ValueError):
    pass


class HierarchyDepthExceeded(LedgerError):
    """only ever logged; the chain is truncated at the ceiling."""

    def __init__(self, user_id: int, max_depth: int):
        self.user_id = user_id
        self.max_depth = max_depth
        super().__init__(
            f"Upline chain of user {user_id} reached the {max_depth}-level ceiling (possible cycle)"
        )


class LedgerInconsistency(LedgerError, RuntimeError):
    """cascade amounts do not reconcile with the original profit/loss."""

    def __init__(self, bet_id: Optional[int], expected: Decimal, actual: Decimal):
        self.bet_id = bet_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Commission cascade for bet {bet_id} does not reconcile: "
            f"expected {expected}, got {actual}"
        )


class WeeklyResetFailed(LedgerError, RuntimeError):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Weekly reset failed after {attempts} attempts: {last_error}")
