from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from ..clock import Clock, TimeZoneOffset
from ..db import get_conn
from ..deps import get_clock, get_tz_offset, require_role
from ..shift_close import close_shift, preview_shift

router = APIRouter(prefix="/shift-close", tags=["shifts"])


class ShiftCloseIn(BaseModel):
    cash_counted: Decimal = Field(ge=0)
    tz_offset: Optional[int] = None


@router.get("")
def shift_summary(
    actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return preview_shift(cur, actor, clock, tz)


@router.post("", status_code=201)
def close_current_shift(
    data: ShiftCloseIn,
    actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
):
    tz = TimeZoneOffset.parse(data.tz_offset)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                shift = close_shift(cur, actor, data.cash_counted, clock, tz)
                return {"shift": shift, "message": "Shift closed successfully."}
