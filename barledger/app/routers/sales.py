from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from ..clock import Clock, TimeZoneOffset
from ..db import get_conn
from ..deps import get_clock, get_tz_offset, require_role
from ..month_closure import reporting_since
from ..sale_ledger import list_sales, list_voids, record_sale, void_cart_line, void_sale
from ..sizes import resolve_size
from ..validation import ReportRange, parse_uuid, parse_uuid_optional

router = APIRouter(tags=["sales"])


class SaleIn(BaseModel):
    inventory_id: str
    inventory_size_id: Optional[str] = None
    quantity: int = Field(gt=0)


class VoidIn(BaseModel):
    # Without a sale_id this is a cart-level void of a line that was never sold.
    sale_id: Optional[str] = None
    void_reason: str
    voided_amount: Decimal
    item_name: Optional[str] = None


@router.post("/sales", status_code=201)
def create_sale(data: SaleIn, actor=Depends(require_role("owner", "staff")), clock: Clock = Depends(get_clock)):
    inventory_id = parse_uuid(data.inventory_id, "inventory_id")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                size = resolve_size(cur, inventory_id, data.inventory_size_id)
                sale = record_sale(cur, inventory_id, size, data.quantity, actor, clock.now())
                return {"sale": sale, "size": size}


@router.get("/sales")
def get_sales(
    staff: Optional[str] = None,
    voided: Optional[bool] = None,
    since: Optional[datetime] = None,
    range: Optional[ReportRange] = None,
    show_archived: bool = False,
    actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    # Staff only see their own sales.
    if actor["role"] != "owner":
        staff = actor["email"]
    with get_conn() as conn:
        with conn.cursor() as cur:
            since = reporting_since(cur, range, since, clock, tz, show_archived=show_archived)
            return {"sales": list_sales(cur, staff=staff, voided=voided, since=since)}


@router.post("/voids", status_code=201)
def create_void(data: VoidIn, actor=Depends(require_role("owner", "staff")), clock: Clock = Depends(get_clock)):
    sale_id = parse_uuid_optional(data.sale_id, "sale_id")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if sale_id:
                    return void_sale(cur, sale_id, data.void_reason, data.voided_amount, actor, clock.now())
                row = void_cart_line(
                    cur,
                    data.void_reason,
                    data.voided_amount,
                    actor,
                    clock.now(),
                    item_name=data.item_name,
                )
                return {"void": row, "restored_stock": None, "warning": None}


@router.get("/voids")
def get_voids(
    staff: Optional[str] = None,
    since: Optional[datetime] = None,
    range: Optional[ReportRange] = None,
    show_archived: bool = False,
    _actor=Depends(require_role("owner")),
    clock: Clock = Depends(get_clock),
    tz: TimeZoneOffset = Depends(get_tz_offset),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            since = reporting_since(cur, range, since, clock, tz, show_archived=show_archived)
            return {"voids": list_voids(cur, staff=staff, since=since)}
