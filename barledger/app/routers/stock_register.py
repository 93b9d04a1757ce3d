from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from datetime import date
from typing import Any, List, Optional
from ..clock import Clock, TimeZoneOffset, local_today
from ..db import get_conn
from ..day_register import get_register, list_day_locks, lock_day, save_register, unlock_day
from ..deps import get_clock, get_tz_offset, require_role

router = APIRouter(prefix="/stock-register", tags=["stock-register"])


class RegisterRowIn(BaseModel):
    item_id: str
    # Balances are coerced to non-negative whole numbers server-side. A missing opening
    # carries forward from the previous closing; a missing closing equals the total.
    opening_balance: Optional[Any] = None
    received: Any = 0
    closing_balance: Optional[Any] = None


class RegisterSaveIn(BaseModel):
    register_date: Optional[date] = Field(default=None, alias="date")
    tz_offset: Optional[int] = None
    rows: List[RegisterRowIn]


class DayLockIn(BaseModel):
    day: date = Field(alias="date")


@router.get("")
def view_register(
    day: Optional[date] = Query(None, alias="date"),
    _actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    register_date = day or local_today(clock, tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            out = get_register(cur, register_date)
            out["selected"]["tz_offset"] = tz.minutes
            return out


@router.post("", status_code=201)
def save_day_register(data: RegisterSaveIn, actor=Depends(require_role("owner")), clock: Clock = Depends(get_clock)):
    register_date = data.register_date or local_today(clock, TimeZoneOffset.parse(data.tz_offset))
    rows = [r.model_dump() for r in data.rows]
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"rows": save_register(cur, register_date, rows, actor, clock.now())}


@router.post("/lock-day")
def lock_register_day(data: DayLockIn, actor=Depends(require_role("owner")), clock: Clock = Depends(get_clock)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return lock_day(cur, data.day, actor, clock.now())


@router.post("/unlock-day")
def unlock_register_day(data: DayLockIn, actor=Depends(require_role("owner"))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return unlock_day(cur, data.day, actor)


@router.get("/locks")
def list_register_locks(
    year: Optional[int] = None,
    month: Optional[int] = None,
    _actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    today = local_today(clock, tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"locks": list_day_locks(cur, year or today.year, month or today.month)}
