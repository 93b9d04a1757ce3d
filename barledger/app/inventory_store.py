"""
Per-SKU stock state.

`current_stock_ml` is authoritative; `stock_quantity` (whole bottles/portions) is derived
from it on every write and stored for display. All stock mutations go through a single
conditional UPDATE so concurrent sales on the same item cannot both pass the sufficiency
check.
"""
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from .config import settings
from .errors import Dependent, NotFound, OutOfStock, ValidationError
from .validation import FOOD_CATEGORY

ITEM_COLUMNS = """
    id, name, brand_name, category, bottle_size_ml,
    cost_price, selling_price, stock_quantity, current_stock_ml,
    low_stock_alert, is_active, created_at, updated_at
"""

EDITABLE_FIELDS = ("name", "brand_name", "category", "bottle_size_ml", "cost_price", "selling_price", "low_stock_alert")


def derive_stock_quantity(stock_ml, bottle_size_ml) -> int:
    size = Decimal(str(bottle_size_ml))
    if size <= 0:
        raise ValidationError("bottle_size_ml must be > 0")
    whole = (Decimal(str(stock_ml)) / size).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, int(whole))


def default_bottle_size(category: Optional[str]) -> Decimal:
    # Food is counted in portions: one "bottle" is one plate.
    if category == FOOD_CATEGORY:
        return Decimal("1")
    return settings.default_bottle_size_ml


def adjust_stock(cur, item_id: str, delta_ml: Decimal, now: datetime) -> dict:
    """
    Apply a signed volume delta atomically.

    The sufficiency check and the decrement are the same statement; a zero-row result is
    then classified by a follow-up read (missing item vs. not enough volume).
    """
    delta_ml = Decimal(str(delta_ml))
    cur.execute(
        """
        UPDATE inventory_items
        SET current_stock_ml = current_stock_ml + %s,
            stock_quantity = GREATEST(FLOOR((current_stock_ml + %s) / bottle_size_ml), 0)::int,
            updated_at = %s
        WHERE id = %s
          AND current_stock_ml + %s >= 0
        RETURNING id, name, bottle_size_ml, current_stock_ml, stock_quantity
        """,
        (delta_ml, delta_ml, now, item_id, delta_ml),
    )
    row = cur.fetchone()
    if row:
        return row

    cur.execute(
        "SELECT id, name, current_stock_ml FROM inventory_items WHERE id = %s",
        (item_id,),
    )
    existing = cur.fetchone()
    if not existing:
        raise NotFound("inventory item not found")
    available = Decimal(str(existing.get("current_stock_ml") or 0))
    raise OutOfStock(
        f"insufficient stock for {existing.get('name') or 'item'}: required {-delta_ml} ml, available {available} ml",
        data={"inventory_id": str(item_id), "required_ml": -delta_ml, "available_ml": available},
    )


def set_stock_from_count(cur, item_id: str, count: int, now: datetime) -> Optional[dict]:
    """Overwrite stock from a physical bottle count (day register is the correction path)."""
    cur.execute(
        """
        UPDATE inventory_items
        SET stock_quantity = %s,
            current_stock_ml = %s * bottle_size_ml,
            updated_at = %s
        WHERE id = %s
        RETURNING id, bottle_size_ml, current_stock_ml, stock_quantity
        """,
        (count, count, now, item_id),
    )
    return cur.fetchone()


def get_item(cur, item_id: str, *, for_update: bool = False) -> dict:
    sql = f"SELECT {ITEM_COLUMNS} FROM inventory_items WHERE id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (item_id,))
    row = cur.fetchone()
    if not row:
        raise NotFound("inventory item not found")
    return row


def list_items(cur, *, include_inactive: bool = False) -> list:
    sql = f"SELECT {ITEM_COLUMNS} FROM inventory_items"
    if not include_inactive:
        sql += " WHERE is_active = true"
    sql += " ORDER BY category ASC, name ASC"
    cur.execute(sql)
    return cur.fetchall()


def create_item(cur, data: dict, now: datetime) -> dict:
    category = data["category"]
    bottle_size_ml = Decimal(str(data.get("bottle_size_ml") or default_bottle_size(category)))
    if bottle_size_ml <= 0:
        raise ValidationError("bottle_size_ml must be > 0")
    if data.get("current_stock_ml") is not None:
        stock_ml = Decimal(str(data["current_stock_ml"]))
    else:
        stock_ml = Decimal(int(data.get("stock_quantity") or 0)) * bottle_size_ml
    if stock_ml < 0:
        raise ValidationError("stock must be >= 0")
    cur.execute(
        f"""
        INSERT INTO inventory_items
          (name, brand_name, category, bottle_size_ml, cost_price, selling_price,
           stock_quantity, current_stock_ml, low_stock_alert, is_active, created_at, updated_at)
        VALUES
          (%s, %s, %s, %s, %s, %s,
           %s, %s, %s, true, %s, %s)
        RETURNING {ITEM_COLUMNS}
        """,
        (
            data["name"],
            data.get("brand_name"),
            category,
            bottle_size_ml,
            Decimal(str(data.get("cost_price") or 0)),
            Decimal(str(data.get("selling_price") or 0)),
            derive_stock_quantity(stock_ml, bottle_size_ml),
            stock_ml,
            int(data.get("low_stock_alert") or 0),
            now,
            now,
        ),
    )
    return cur.fetchone()


def update_item(cur, item_id: str, patch: dict, now: datetime) -> tuple[dict, dict]:
    """
    Admin edit. Returns (before, after).

    Stock may be given either as a bottle count or as a volume; the volume is what gets
    stored and the count is re-derived, including when the bottle size itself changes.
    """
    before = get_item(cur, item_id, for_update=True)
    fields = {k: patch[k] for k in EDITABLE_FIELDS if k in patch and patch[k] is not None}

    bottle_size_ml = Decimal(str(fields.get("bottle_size_ml", before["bottle_size_ml"])))
    if bottle_size_ml <= 0:
        raise ValidationError("bottle_size_ml must be > 0")
    stock_ml = Decimal(str(before["current_stock_ml"] or 0))
    if patch.get("current_stock_ml") is not None:
        stock_ml = Decimal(str(patch["current_stock_ml"]))
    elif patch.get("stock_quantity") is not None:
        stock_ml = Decimal(int(patch["stock_quantity"])) * bottle_size_ml
    if stock_ml < 0:
        raise ValidationError("stock must be >= 0")

    fields["current_stock_ml"] = stock_ml
    fields["stock_quantity"] = derive_stock_quantity(stock_ml, bottle_size_ml)
    fields["updated_at"] = now

    sets = ", ".join(f"{k} = %s" for k in fields)
    cur.execute(
        f"UPDATE inventory_items SET {sets} WHERE id = %s RETURNING {ITEM_COLUMNS}",
        (*fields.values(), item_id),
    )
    return before, cur.fetchone()


def set_item_active(cur, item_id: str, is_active: bool, now: datetime) -> dict:
    cur.execute(
        f"""
        UPDATE inventory_items
        SET is_active = %s, updated_at = %s
        WHERE id = %s
        RETURNING {ITEM_COLUMNS}
        """,
        (is_active, now, item_id),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound("inventory item not found")
    return row


def delete_item(cur, item_id: str) -> dict:
    before = get_item(cur, item_id, for_update=True)
    for table, column in (("sales", "inventory_id"), ("tab_items", "inventory_id"), ("stock_register", "item_id")):
        cur.execute(f"SELECT 1 FROM {table} WHERE {column} = %s LIMIT 1", (item_id,))
        if cur.fetchone():
            raise Dependent(
                f"inventory item is referenced by {table}; disable it instead",
                data={"inventory_id": str(item_id), "referenced_by": table},
            )
    cur.execute("DELETE FROM inventory_items WHERE id = %s", (item_id,))
    return before
