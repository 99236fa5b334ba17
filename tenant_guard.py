"""
tenant isolation guard.

every read/write over users, bets or commissions that happens on behalf of a
caller goes through one of these helpers:

  - reads:  scoped_where() (SQL) / filter_rows() (in-memory) inject the
            mandatory tenant_id equality filter.
  - writes: stamp_tenant() fills tenant_id when absent and rejects foreign ones.
  - single rows: ensure_visible().

the caller is always passed explicitly; there is no ambient "current user".
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from errors import TenantViolation

AGENT = "AGENT"
MODERATOR = "MODERATOR"
ADMIN = "ADMIN"
ROLES = (AGENT, MODERATOR, ADMIN)
LIMITED_ROLES = (AGENT, MODERATOR)


@dataclass(frozen=True)
class Caller:
    id: int
    role: str
    tenant_id: Optional[int] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role {self.role!r}")
        if self.role == AGENT and self.tenant_id is None:
            raise TenantViolation(f"Agent {self.id} has no tenant")


def system_caller(tenant_id: Optional[int]) -> Caller:
    """
    internal caller for batch work (settlement), scoped to the tenant resolved
    from the bet being processed. a bet without tenant (ADMIN-owned) gets an
    unrestricted scope.
    """
    if tenant_id is None:
        return Caller(id=0, role=ADMIN)
    return Caller(id=tenant_id, role=MODERATOR)


def tenant_scope(caller: Caller) -> Optional[int]:
    """tenant_id the caller is confined to, or None for ADMIN (unrestricted)."""
    if caller.role == ADMIN:
        return None
    if caller.role == MODERATOR:
        return caller.id
    return caller.tenant_id


def scoped_where(
    caller: Caller,
    clauses: List[str],
    params: List[Any],
    column: str = "tenant_id",
    root_column: Optional[str] = None,
) -> None:
    """
    append the mandatory tenant filter to a WHERE clause list (in place).

    root_column: set when querying users, so a MODERATOR (tenant root, with
    tenant_id NULL on its own row) still sees itself.
    """
    scope = tenant_scope(caller)
    if scope is None:
        return
    if root_column and caller.role == MODERATOR:
        clauses.append(f"({column} = %s OR {root_column} = %s)")
        params.extend([scope, scope])
        return
    clauses.append(f"{column} = %s")
    params.append(scope)


def is_visible(caller: Caller, row_tenant_id: Optional[int], row_id: Optional[int] = None) -> bool:
    scope = tenant_scope(caller)
    if scope is None:
        return True
    if row_tenant_id == scope:
        return True
    # the moderator's own user row is its tenant root
    return caller.role == MODERATOR and row_id is not None and row_id == caller.id


def filter_rows(caller: Caller, rows: Iterable[Dict[str, Any]], id_key: Optional[str] = None) -> List[Dict[str, Any]]:
    """in-memory twin of scoped_where()."""
    return [
        row
        for row in rows
        if is_visible(caller, row.get("tenant_id"), row.get(id_key) if id_key else None)
    ]


def ensure_visible(caller: Caller, row_tenant_id: Optional[int], what: str, row_id: Optional[int] = None) -> None:
    if not is_visible(caller, row_tenant_id, row_id):
        logger.error(
            f"Tenant violation: {caller.role} {caller.id} (tenant {tenant_scope(caller)}) "
            f"attempted to access {what} of tenant {row_tenant_id}"
        )
        raise TenantViolation(f"{what} is outside your organization")


def stamp_tenant(caller: Caller, values: Dict[str, Any]) -> Dict[str, Any]:
    """
    prepare a row for insert: auto-stamp tenant_id when absent, reject any
    attempt to write into a different tenant. ADMIN may write anywhere.
    """
    scope = tenant_scope(caller)
    requested = values.get("tenant_id")

    if scope is None:
        return values

    if requested is None:
        return {**values, "tenant_id": scope}

    if requested != scope:
        logger.error(
            f"Tenant violation: {caller.role} {caller.id} attempted to write tenant_id={requested} "
            f"outside its scope {scope}"
        )
        raise TenantViolation(f"Cannot write records for tenant {requested}")

    return values


def tenant_of(user: Dict[str, Any]) -> Optional[int]:
    """tenant a user's records belong to: the moderator itself, the agent's moderator, none for ADMIN."""
    if user["role"] == MODERATOR:
        return user["id"]
    if user["role"] == AGENT:
        return user["tenant_id"]
    return None
