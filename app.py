from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

import bets_db
import ledger_db
import settlement_db
from db.db import get_conn
from db.repositories import commission_summary, create_user_db, get_user, list_commissions, recent_reset_history
from errors import (
    HierarchyCycle,
    LedgerInconsistency,
    LimitExceeded,
    NotFound,
    NotOwner,
    NotPending,
    ProviderInvalid,
    TenantViolation,
    UserInactive,
    WeeklyResetFailed,
)
from hierarchy_db import transfer_user_db, update_user_db
from log import setup_logging
from tenant_guard import ADMIN, Caller, ROLES


setup_logging()

app = FastAPI(title="Lotto Ledger", version="0.1.0")

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class PlaceBetRequest(BaseModel):
    provider_refs: List[str] = Field(..., min_length=1, description="One leg per provider")
    bet_type: str = Field(..., description="STRAIGHT, BIG, SMALL or IBOX")
    selection: str = Field(..., description="The number played, e.g. '1234'")
    amount_per_provider: Decimal = Field(..., gt=0)
    draw_date: date

class DrawResultRequest(BaseModel):
    provider_ref: str
    draw_date: date
    draw_number: Optional[str] = None
    winning_numbers: List[str] = Field(..., min_length=1, description="1st, 2nd, 3rd, then starters")
    supplementary_numbers: List[str] = Field(default_factory=list, description="Consolation numbers")
    settle: bool = Field(True, description="Run settlement right after storing the result")

class CreateUserRequest(BaseModel):
    username: str
    role: str = Field(..., description="AGENT, MODERATOR or ADMIN")
    upline_id: Optional[int] = None
    tenant_id: Optional[int] = None
    weekly_limit: Decimal = Field(Decimal("0"), ge=0, description="0 blocks betting for agents and moderators; ADMIN is always unlimited")
    commission_rate: Decimal = Field(Decimal("0"), ge=0, le=100)

class AssignUplineRequest(BaseModel):
    upline_id: int

class UpdateLimitsRequest(BaseModel):
    weekly_limit: Decimal = Field(..., ge=0, description="Capped by the upline's own limit")

class UpdateUserRequest(BaseModel):
    active: Optional[bool] = None
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)


# ---------
# caller identity
# ---------


def validate_user_identity(token: str) -> Caller:
    """
    sandbox identity check: the bearer token is the user id.
    deployments replace this with their session / JWT validation.
    """
    try:
        user_id = int(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")

    with get_conn() as conn:
        try:
            user = get_user(conn, user_id)
        except NotFound:
            raise HTTPException(status_code=401, detail="Invalid token")

    if not user["active"]:
        raise HTTPException(status_code=403, detail=f"User {user_id} is inactive")
    return Caller(id=user["id"], role=user["role"], tenant_id=user["tenant_id"])


def get_caller(authorization: Optional[str] = Header(None)) -> Caller:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return validate_user_identity(authorization[len("Bearer "):].strip())


def _require_admin(caller: Caller) -> None:
    if caller.role != ADMIN:
        raise HTTPException(status_code=403, detail="Admin only")


# ---------
# helpers
# ---------

ERROR_STATUS = [
    (NotFound, 404),
    (LimitExceeded, 400),
    (NotPending, 409),
    (NotOwner, 403),
    (UserInactive, 403),
    (TenantViolation, 403),
    (ProviderInvalid, 400),
    (HierarchyCycle, 400),
    (WeeklyResetFailed, 503),
]


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, LedgerInconsistency):
        # details are in the log, never in the response
        return HTTPException(status_code=500, detail="Internal server error")
    for error_type, status_code in ERROR_STATUS:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.exception("Unexpected error")
    return HTTPException(status_code=500, detail="Internal server error")


def _jsonable(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """decimals must serialize as strings (money at 2 dp), dates as ISO 8601."""
    if row is None:
        return None
    out: Dict[str, Any] = {}
    for k, v in row.items():
        if isinstance(v, Decimal):
            out[k] = f"{v:.2f}"
        elif isinstance(v, (datetime, date)):
            out[k] = v.isoformat()
        elif isinstance(v, dict):
            out[k] = _jsonable(v)
        else:
            out[k] = v
    return out


# ---------
# endpoints
# ---------


@app.post("/api/bets")
def place_bet(payload: PlaceBetRequest, caller: Caller = Depends(get_caller)):
    """
    place a bet for the caller. reserves total_amount against the weekly limit.
    a LimitExceeded 400 carries the exact remaining allowance.
    """
    try:
        bet = bets_db.place_bet(
            caller,
            amount_per_provider=payload.amount_per_provider,
            provider_refs=payload.provider_refs,
            bet_type=payload.bet_type,
            selection=payload.selection,
            draw_date=payload.draw_date,
        )
    except Exception as e:
        raise _to_http(e)
    return _jsonable(bet)


@app.post("/api/bets/{bet_id}/cancel")
def cancel_bet(bet_id: int, caller: Caller = Depends(get_caller)):
    try:
        bet = bets_db.cancel_bet(caller, bet_id)
    except Exception as e:
        raise _to_http(e)
    return _jsonable(bet)


@app.get("/api/bets")
def list_bets(
    status: Optional[str] = Query(None, description="PENDING, WON, LOST, PARTIAL or CANCELLED"),
    owner_id: Optional[int] = Query(None, description="Filter by owner (moderators / admins)"),
    limit: int = Query(100, ge=1, le=500),
    caller: Caller = Depends(get_caller),
):
    try:
        bets = bets_db.list_bets(caller, status=status, owner_id=owner_id, limit=limit)
    except Exception as e:
        raise _to_http(e)
    return {"bets": [_jsonable(b) for b in bets]}


@app.get("/api/ledger/{user_id}")
def ledger_state(user_id: int, caller: Caller = Depends(get_caller)):
    """
    weekly allowance of a user:
    {"user_id", "weekly_limit", "weekly_used", "remaining"}; remaining is null
    when the user is unlimited.
    """
    try:
        state = ledger_db.get_ledger_state(caller, user_id)
    except Exception as e:
        raise _to_http(e)
    return _jsonable(state)


@app.get("/api/commissions")
def commissions(
    recipient_id: Optional[int] = Query(None, description="Recipient (ignored for agents)"),
    from_datetime: datetime | None = Query(None, alias="from", description="Start (inclusive), ISO 8601"),
    to_datetime: datetime | None = Query(None, alias="to", description="End (exclusive), ISO 8601"),
    limit: int = Query(50, ge=1, le=500),
    caller: Caller = Depends(get_caller),
):
    """
    commission journal (tenant scoped) plus totals over the same window.
    amounts are signed: negative rows come from owner losses.
    """
    try:
        with get_conn() as conn:
            rows = list_commissions(conn, caller, recipient_id, from_datetime, to_datetime, limit)
            summary = commission_summary(conn, caller, recipient_id, from_datetime, to_datetime)
    except Exception as e:
        raise _to_http(e)

    return {
        "summary": _jsonable(summary),
        "range": {
            "from": from_datetime.isoformat() if from_datetime else None,
            "to": to_datetime.isoformat() if to_datetime else None,
        },
        "commissions": [_jsonable(r) for r in rows],
    }


@app.post("/api/results")
def record_result(payload: DrawResultRequest, caller: Caller = Depends(get_caller)):
    """
    store a validated draw result (upsert by provider + date) and settle it.
    """
    _require_admin(caller)
    try:
        result = settlement_db.record_draw_result(
            provider_ref=payload.provider_ref,
            draw_date=payload.draw_date,
            winning_numbers=payload.winning_numbers,
            supplementary_numbers=payload.supplementary_numbers,
            draw_number=payload.draw_number,
            settle_now=payload.settle,
        )
    except Exception as e:
        raise _to_http(e)
    return {"draw_result": _jsonable(result["draw_result"]), "settlement": result["settlement"]}


@app.post("/api/results/{draw_result_id}/settle")
def settle_result(draw_result_id: int, caller: Caller = Depends(get_caller)):
    """re-run settlement for a stored result. idempotent."""
    _require_admin(caller)
    try:
        return settlement_db.settle(draw_result_id)
    except Exception as e:
        raise _to_http(e)


@app.post("/api/admin/weekly-reset")
def weekly_reset(caller: Caller = Depends(get_caller)):
    _require_admin(caller)
    try:
        return ledger_db.weekly_reset()
    except Exception as e:
        raise _to_http(e)


@app.get("/api/admin/weekly-reset/history")
def weekly_reset_history(limit: int = Query(10, ge=1, le=100), caller: Caller = Depends(get_caller)):
    """latest weekly reset runs, newest first (status, attempts, rows affected, error)."""
    _require_admin(caller)
    try:
        with get_conn() as conn:
            runs = recent_reset_history(conn, limit)
    except Exception as e:
        raise _to_http(e)
    return {"runs": [_jsonable(r) for r in runs]}


@app.post("/api/users")
def create_user(payload: CreateUserRequest, caller: Caller = Depends(get_caller)):
    if payload.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Unknown role {payload.role!r}")
    try:
        with get_conn() as conn:
            try:
                user = create_user_db(
                    conn,
                    caller,
                    username=payload.username,
                    role=payload.role,
                    upline_id=payload.upline_id,
                    weekly_limit=payload.weekly_limit,
                    commission_rate=payload.commission_rate,
                    tenant_id=payload.tenant_id,
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
    except Exception as e:
        raise _to_http(e)
    return _jsonable(user)


@app.post("/api/users/{user_id}/upline")
def assign_upline(user_id: int, payload: AssignUplineRequest, caller: Caller = Depends(get_caller)):
    """move a user under a new upline (transfer). cycles are rejected."""
    try:
        return transfer_user_db(caller, user_id, payload.upline_id)
    except Exception as e:
        raise _to_http(e)


@app.patch("/api/users/{user_id}")
def update_user(user_id: int, payload: UpdateUserRequest, caller: Caller = Depends(get_caller)):
    """activate / deactivate a downline or change its commission rate."""
    try:
        user = update_user_db(caller, user_id, active=payload.active, commission_rate=payload.commission_rate)
    except Exception as e:
        raise _to_http(e)
    return _jsonable(user)


@app.patch("/api/users/{user_id}/limits")
def update_limits(user_id: int, payload: UpdateLimitsRequest, caller: Caller = Depends(get_caller)):
    """
    set a downline's weekly limit. rejected when it exceeds the upline's limit
    or falls below what the user already used this week.
    """
    try:
        state = ledger_db.update_limits_db(caller, user_id, payload.weekly_limit)
    except Exception as e:
        raise _to_http(e)
    return _jsonable(state)
