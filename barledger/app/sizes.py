from datetime import datetime
from decimal import Decimal
from typing import Optional

from .config import settings
from .errors import NoSellingPriceConfigured, NotFound, ValidationError
from .validation import FOOD_CATEGORY

SIZE_COLUMNS = "id, inventory_id, size_label, size_ml, selling_price, is_active"

# Client-side placeholders for "whatever the default pour is" are tagged `auto:<...>`.
AUTO_SIZE_PREFIX = "auto:"


def _load_sellable_item(cur, item_id: str) -> dict:
    cur.execute(
        """
        SELECT id, name, category, bottle_size_ml, selling_price, is_active
        FROM inventory_items
        WHERE id = %s
        """,
        (item_id,),
    )
    item = cur.fetchone()
    if not item or not item.get("is_active"):
        raise NotFound("inventory item not found or disabled")
    return item


def default_size_for(item: dict) -> tuple[str, Decimal]:
    if item.get("category") == FOOD_CATEGORY:
        portion = Decimal(str(item.get("bottle_size_ml") or 1))
        return "Portion", portion
    peg = settings.default_peg_ml
    return f"Peg {peg.normalize():f} ml", peg


def resolve_size(cur, item_id: str, requested_size_id: Optional[str] = None) -> dict:
    """
    Resolve the pour/portion to sell for an item.

    An explicit size id wins; otherwise the smallest active variant; otherwise a default
    variant is provisioned from the item's selling price. The provisioning write is an
    upsert on (inventory_id, size_ml) so two first sales racing each other end up sharing
    one row.
    """
    item = _load_sellable_item(cur, item_id)
    requested = (requested_size_id or "").strip() or None

    if requested and not requested.startswith(AUTO_SIZE_PREFIX):
        cur.execute(
            f"""
            SELECT {SIZE_COLUMNS}
            FROM inventory_sizes
            WHERE id = %s AND inventory_id = %s AND is_active = true
            """,
            (requested, item_id),
        )
        row = cur.fetchone()
        if not row:
            raise NotFound("inventory size not found or inactive")
        return row

    cur.execute(
        f"""
        SELECT {SIZE_COLUMNS}
        FROM inventory_sizes
        WHERE inventory_id = %s AND is_active = true
        ORDER BY size_ml ASC
        LIMIT 1
        """,
        (item_id,),
    )
    row = cur.fetchone()
    if row:
        return row

    price = Decimal(str(item.get("selling_price") or 0))
    if price <= 0:
        raise NoSellingPriceConfigured("inventory item has no selling price configured")
    label, size_ml = default_size_for(item)
    cur.execute(
        """
        INSERT INTO inventory_sizes (inventory_id, size_label, size_ml, selling_price, is_active)
        VALUES (%s, %s, %s, %s, true)
        ON CONFLICT (inventory_id, size_ml) DO UPDATE
        SET size_label = EXCLUDED.size_label,
            selling_price = EXCLUDED.selling_price,
            is_active = true,
            updated_at = now()
        """,
        (item_id, label, size_ml, price),
    )
    cur.execute(
        f"""
        SELECT {SIZE_COLUMNS}
        FROM inventory_sizes
        WHERE inventory_id = %s AND size_ml = %s
        """,
        (item_id, size_ml),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound("failed to resolve inventory size")
    return row


def list_sizes(cur, item_id: str) -> list:
    cur.execute(
        f"""
        SELECT {SIZE_COLUMNS}
        FROM inventory_sizes
        WHERE inventory_id = %s
        ORDER BY size_ml ASC
        """,
        (item_id,),
    )
    return cur.fetchall()


def upsert_size(
    cur,
    item_id: str,
    *,
    size_label: Optional[str],
    size_ml: Decimal,
    selling_price: Decimal,
    is_active: bool,
    now: datetime,
) -> dict:
    if Decimal(str(size_ml)) <= 0:
        raise ValidationError("size_ml must be > 0")
    if Decimal(str(selling_price)) < 0:
        raise ValidationError("selling_price must be >= 0")
    cur.execute("SELECT 1 FROM inventory_items WHERE id = %s", (item_id,))
    if not cur.fetchone():
        raise NotFound("inventory item not found")
    cur.execute(
        f"""
        INSERT INTO inventory_sizes (inventory_id, size_label, size_ml, selling_price, is_active, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (inventory_id, size_ml) DO UPDATE
        SET size_label = EXCLUDED.size_label,
            selling_price = EXCLUDED.selling_price,
            is_active = EXCLUDED.is_active,
            updated_at = EXCLUDED.updated_at
        RETURNING {SIZE_COLUMNS}
        """,
        (item_id, size_label, size_ml, selling_price, is_active, now),
    )
    return cur.fetchone()
