from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import List, Optional
from ..clock import Clock
from ..db import get_conn
from ..deps import get_capabilities, get_clock, require_role
from ..orders import create_order
from ..schema import SchemaCapabilities
from ..tabs import add_tab_items, close_tab, get_tab, list_tabs, open_tab
from ..validation import PaymentMethod, TabStatus, parse_uuid

router = APIRouter(tags=["tabs"])


class TabOpenIn(BaseModel):
    customer_name: str
    table_label: Optional[str] = None


class TabItemIn(BaseModel):
    inventory_id: str
    name: Optional[str] = None
    inventory_size_id: Optional[str] = None
    size_label: Optional[str] = None
    size_ml: Optional[Decimal] = Field(default=None, gt=0)
    quantity: int
    unit_price: Decimal = Decimal("0")
    line_total: Optional[Decimal] = None


class TabItemsIn(BaseModel):
    items: List[TabItemIn]


class TabCloseIn(BaseModel):
    payment_method: PaymentMethod


class OrderLineIn(BaseModel):
    item_id: Optional[str] = None
    name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    size_ml: Optional[Decimal] = None
    line_total: Optional[Decimal] = Field(default=None, ge=0)


class SplitEntryIn(BaseModel):
    label: Optional[str] = None
    detail: Optional[str] = None
    amount: Decimal = Field(ge=0)


class SplitBillIn(BaseModel):
    mode: str
    entries: List[SplitEntryIn] = Field(default_factory=list)


class OrderIn(BaseModel):
    order_id: Optional[str] = None
    items: List[OrderLineIn] = Field(min_length=1)
    total: Decimal = Field(gt=0)
    payment_method: PaymentMethod
    split_bill: Optional[SplitBillIn] = None


@router.get("/tabs")
def get_tabs(status: Optional[TabStatus] = None, _actor=Depends(require_role("owner", "staff"))):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"tabs": list_tabs(cur, status)}


@router.get("/tabs/{tab_id}")
def get_tab_detail(tab_id: str, _actor=Depends(require_role("owner", "staff"))):
    tab_id = parse_uuid(tab_id, "tab_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            return get_tab(cur, tab_id)


@router.post("/tabs", status_code=201)
def create_tab(data: TabOpenIn, actor=Depends(require_role("owner", "staff")), clock: Clock = Depends(get_clock)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"tab": open_tab(cur, data.customer_name, data.table_label, actor, clock.now())}


@router.post("/tabs/{tab_id}/items")
def add_items_to_tab(
    tab_id: str,
    data: TabItemsIn,
    actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
):
    tab_id = parse_uuid(tab_id, "tab_id")
    items = [it.model_dump() for it in data.items]
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return add_tab_items(cur, tab_id, items, actor, clock.now())


@router.post("/tabs/{tab_id}/close")
def close_open_tab(
    tab_id: str,
    data: TabCloseIn,
    actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    tab_id = parse_uuid(tab_id, "tab_id")
    # close_tab owns the transaction (it commits partial progress before reporting failure).
    with get_conn() as conn:
        return close_tab(conn, tab_id, data.payment_method, actor, capabilities, clock.now())


@router.post("/orders", status_code=201)
def create_checkout_order(
    data: OrderIn,
    actor=Depends(require_role("owner", "staff")),
    clock: Clock = Depends(get_clock),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    items = []
    for line in data.items:
        row = line.model_dump()
        if row["line_total"] is None:
            row["line_total"] = row["unit_price"] * row["quantity"]
        items.append(row)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                order = create_order(
                    cur,
                    capabilities,
                    items=items,
                    total_amount=data.total,
                    payment_method=data.payment_method,
                    actor=actor,
                    now=clock.now(),
                    order_code=data.order_id,
                    split_bill=data.split_bill.model_dump() if data.split_bill else None,
                )
                return {"order": order}
