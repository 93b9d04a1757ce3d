from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from ..analytics import build_sales_report
from ..audit_log import DEFAULT_LIMIT, list_audit_events
from ..clock import Clock, TimeZoneOffset
from ..db import get_conn
from ..deps import get_clock, get_tz_offset, require_role
from ..month_closure import analytics_window, close_month, list_closures
from ..validation import ReportRange

router = APIRouter(tags=["reports"])


class MonthCloseIn(BaseModel):
    tz_offset: Optional[int] = None


@router.post("/month-close")
def close_current_month(
    data: MonthCloseIn,
    actor=Depends(require_role("owner")),
    clock: Clock = Depends(get_clock),
):
    tz = TimeZoneOffset.parse(data.tz_offset)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                closure = close_month(cur, clock, tz, actor)
                return {"closure": closure, "message": f"Month {closure['month_key']} closed successfully."}


@router.get("/month-close")
def get_month_closures(_actor=Depends(require_role("owner"))):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"closures": list_closures(cur)}


@router.get("/reports")
def sales_report(
    range: ReportRange = "today",
    show_archived: bool = False,
    _actor=Depends(require_role("owner")),
    clock: Clock = Depends(get_clock),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            window = analytics_window(cur, range, clock, tz, show_archived=show_archived)
            return build_sales_report(cur, window)


@router.get("/audit/logs")
def audit_logs(
    actor: Optional[str] = None,
    action: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
    _owner=Depends(require_role("owner")),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return list_audit_events(
                cur,
                actor=actor,
                action=action,
                date_from=date_from,
                date_to=date_to,
                cursor=cursor,
                limit=limit,
                tz=tz,
            )
