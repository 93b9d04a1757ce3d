from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from ..audit_log import write_audit_event
from ..clock import Clock
from ..db import get_conn
from ..deps import get_clock, require_role
from ..inventory_store import create_item, delete_item, get_item, list_items, set_item_active, update_item
from ..sizes import list_sizes, upsert_size
from ..validation import Category, parse_uuid

router = APIRouter(prefix="/inventory", tags=["inventory"])


class InventoryItemIn(BaseModel):
    name: str = Field(min_length=1)
    brand_name: Optional[str] = None
    category: Category
    bottle_size_ml: Optional[Decimal] = Field(default=None, gt=0)
    cost_price: Decimal = Field(default=Decimal("0"), ge=0)
    selling_price: Decimal = Field(default=Decimal("0"), ge=0)
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    current_stock_ml: Optional[Decimal] = Field(default=None, ge=0)
    low_stock_alert: int = Field(default=0, ge=0)


class InventoryItemPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    brand_name: Optional[str] = None
    category: Optional[Category] = None
    bottle_size_ml: Optional[Decimal] = Field(default=None, gt=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    selling_price: Optional[Decimal] = Field(default=None, ge=0)
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    current_stock_ml: Optional[Decimal] = Field(default=None, ge=0)
    low_stock_alert: Optional[int] = Field(default=None, ge=0)


class SizeIn(BaseModel):
    size_label: Optional[str] = None
    size_ml: Decimal = Field(gt=0)
    selling_price: Decimal = Field(ge=0)
    is_active: bool = True


@router.get("")
def list_inventory(include_inactive: bool = False, actor=Depends(require_role("owner", "staff"))):
    with get_conn() as conn:
        with conn.cursor() as cur:
            items = list_items(cur, include_inactive=include_inactive and actor["role"] == "owner")
            for it in items:
                it["is_low_stock"] = int(it.get("stock_quantity") or 0) <= int(it.get("low_stock_alert") or 0)
            return {"items": items}


@router.post("", status_code=201)
def create_inventory_item(data: InventoryItemIn, actor=Depends(require_role("owner")), clock: Clock = Depends(get_clock)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                item = create_item(cur, data.model_dump(), clock.now())
                write_audit_event(cur, actor, "inventory.create", "inventory_items", item["id"], after=item)
                return {"item": item}


@router.patch("/{item_id}")
def update_inventory_item(
    item_id: str,
    data: InventoryItemPatch,
    actor=Depends(require_role("owner")),
    clock: Clock = Depends(get_clock),
):
    item_id = parse_uuid(item_id, "item_id")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                before, after = update_item(cur, item_id, data.model_dump(exclude_unset=True), clock.now())
                write_audit_event(cur, actor, "inventory.update", "inventory_items", item_id, before=before, after=after)
                return {"item": after}


def _toggle_active(item_id: str, is_active: bool, actor: dict, clock: Clock) -> dict:
    item_id = parse_uuid(item_id, "item_id")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                before = get_item(cur, item_id, for_update=True)
                after = set_item_active(cur, item_id, is_active, clock.now())
                action = "inventory.enable" if is_active else "inventory.disable"
                write_audit_event(cur, actor, action, "inventory_items", item_id, before=before, after=after)
                return {"item": after}


@router.post("/{item_id}/disable")
def disable_inventory_item(item_id: str, actor=Depends(require_role("owner")), clock: Clock = Depends(get_clock)):
    return _toggle_active(item_id, False, actor, clock)


@router.post("/{item_id}/enable")
def enable_inventory_item(item_id: str, actor=Depends(require_role("owner")), clock: Clock = Depends(get_clock)):
    return _toggle_active(item_id, True, actor, clock)


@router.delete("/{item_id}")
def delete_inventory_item(item_id: str, actor=Depends(require_role("owner"))):
    item_id = parse_uuid(item_id, "item_id")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                before = delete_item(cur, item_id)
                write_audit_event(cur, actor, "inventory.delete", "inventory_items", item_id, before=before)
                return {"ok": True}


@router.get("/{item_id}/sizes")
def list_inventory_sizes(item_id: str, _actor=Depends(require_role("owner", "staff"))):
    item_id = parse_uuid(item_id, "item_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            get_item(cur, item_id)
            return {"sizes": list_sizes(cur, item_id)}


@router.post("/{item_id}/sizes", status_code=201)
def upsert_inventory_size(
    item_id: str,
    data: SizeIn,
    actor=Depends(require_role("owner")),
    clock: Clock = Depends(get_clock),
):
    item_id = parse_uuid(item_id, "item_id")
    label = (data.size_label or "").strip() or f"{data.size_ml.normalize():f} ml"
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                size = upsert_size(
                    cur,
                    item_id,
                    size_label=label,
                    size_ml=data.size_ml,
                    selling_price=data.selling_price,
                    is_active=data.is_active,
                    now=clock.now(),
                )
                write_audit_event(cur, actor, "inventory_size.upsert", "inventory_sizes", size["id"], after=size)
                return {"size": size}
