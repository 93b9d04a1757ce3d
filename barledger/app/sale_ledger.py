"""
Stock-deducting sales and their reversal.

A sale and its stock deduction always share the caller's transaction: if the deduction
fails, the INSERT never happens. A void credits back exactly what the sale deducted, using
the volume snapshot stored on the sale row itself.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .audit_log import write_audit_event
from .errors import AlreadyVoided, NotFound, ValidationError
from .inventory_store import adjust_stock
from .jsonlog import json_log

SALE_COLUMNS = """
    id, inventory_id, item_name, inventory_size_id, size_ml, quantity,
    unit_price, amount, staff_name, order_id,
    is_voided, void_reason, voided_at, voided_by, created_at
"""

MIN_VOID_REASON_LEN = 3


def q_money(v) -> Decimal:
    return Decimal(str(v)).quantize(Decimal("0.01"))


def staff_name_for(actor: Optional[dict]) -> str:
    return str((actor or {}).get("email") or "staff")


def _positive_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer")
    return value


def _void_contract(reason: Optional[str], voided_amount) -> tuple[str, Decimal]:
    reason = (reason or "").strip()
    if len(reason) < MIN_VOID_REASON_LEN:
        raise ValidationError(f"void_reason must be at least {MIN_VOID_REASON_LEN} characters")
    try:
        amount = Decimal(str(voided_amount))
    except Exception:
        raise ValidationError("voided_amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("voided_amount must be a positive number")
    return reason, q_money(amount)


def record_sale(
    cur,
    item_id: str,
    size: dict,
    quantity: int,
    actor: Optional[dict],
    now: datetime,
    *,
    order_id: Optional[str] = None,
) -> dict:
    quantity = _positive_int(quantity, "quantity")
    size_ml = Decimal(str(size["size_ml"]))
    required_ml = size_ml * quantity

    stock = adjust_stock(cur, item_id, -required_ml, now)

    unit_price = q_money(size.get("selling_price") or 0)
    amount = q_money(unit_price * quantity)
    cur.execute(
        f"""
        INSERT INTO sales
          (inventory_id, item_name, inventory_size_id, size_ml, quantity,
           unit_price, amount, staff_name, order_id, is_voided, created_at)
        VALUES
          (%s, %s, %s, %s, %s,
           %s, %s, %s, %s, false, %s)
        RETURNING {SALE_COLUMNS}
        """,
        (
            item_id,
            stock.get("name") or "Unknown Item",
            size["id"],
            size_ml,
            quantity,
            unit_price,
            amount,
            staff_name_for(actor),
            order_id,
            now,
        ),
    )
    sale = cur.fetchone()

    write_audit_event(
        cur,
        actor,
        "sale.create",
        "sales",
        sale["id"],
        after=sale,
        metadata={
            "required_ml": required_ml,
            "remaining_stock_ml": stock.get("current_stock_ml"),
            "order_id": order_id,
        },
    )
    return sale


def _originating_item_id(cur, sale: dict) -> Optional[str]:
    if sale.get("inventory_id"):
        return str(sale["inventory_id"])
    if not sale.get("inventory_size_id"):
        return None
    cur.execute("SELECT inventory_id FROM inventory_sizes WHERE id = %s", (sale["inventory_size_id"],))
    row = cur.fetchone()
    return str(row["inventory_id"]) if row and row.get("inventory_id") else None


def void_sale(cur, sale_id: str, reason: Optional[str], voided_amount, actor: Optional[dict], now: datetime) -> dict:
    """
    Reverse a recorded sale.

    Rejects a second void with AlreadyVoided (never a silent success). The stock credit is
    best-effort: if the originating item can no longer be found the void still goes through
    and the response carries a warning.
    """
    reason, amount = _void_contract(reason, voided_amount)

    cur.execute(f"SELECT {SALE_COLUMNS} FROM sales WHERE id = %s FOR UPDATE", (sale_id,))
    before = cur.fetchone()
    if not before:
        raise NotFound("sale not found")
    if before.get("is_voided"):
        raise AlreadyVoided("sale is already voided", data={"sale_id": str(sale_id)})

    cur.execute(
        f"""
        UPDATE sales
        SET is_voided = true,
            void_reason = %s,
            voided_at = %s,
            voided_by = %s
        WHERE id = %s AND is_voided = false
        RETURNING {SALE_COLUMNS}
        """,
        (reason, now, staff_name_for(actor), sale_id),
    )
    after = cur.fetchone()
    if not after:
        raise AlreadyVoided("sale is already voided", data={"sale_id": str(sale_id)})

    restored_stock = None
    warning = None
    quantity = int(before.get("quantity") or 0)
    size_ml = Decimal(str(before.get("size_ml") or 0))
    item_id = _originating_item_id(cur, before)
    if item_id and quantity > 0 and size_ml > 0:
        restore_ml = size_ml * quantity
        try:
            stock = adjust_stock(cur, item_id, restore_ml, now)
            restored_stock = {
                "inventory_id": item_id,
                "restored_ml": restore_ml,
                "current_stock_ml": stock.get("current_stock_ml"),
                "stock_quantity": stock.get("stock_quantity"),
            }
        except NotFound:
            warning = "originating inventory item no longer exists; stock was not restored"
    else:
        warning = "sale has no resolvable item/size; stock was not restored"
    if warning:
        json_log("warning", "void.stock_credit_skipped", sale_id=str(sale_id), reason=warning)

    cur.execute(
        """
        INSERT INTO void_logs (sale_id, mode, staff_name, void_reason, voided_amount, restored_ml, created_at)
        VALUES (%s, 'sale_void', %s, %s, %s, %s, %s)
        """,
        (
            sale_id,
            staff_name_for(actor),
            reason,
            amount,
            restored_stock["restored_ml"] if restored_stock else None,
            now,
        ),
    )

    write_audit_event(
        cur,
        actor,
        "void.create",
        "sales",
        sale_id,
        before=before,
        after=after,
        metadata={
            "mode": "sale_void",
            "reason": reason,
            "voided_amount": amount,
            "restored_stock": restored_stock,
        },
    )
    return {"sale": after, "restored_stock": restored_stock, "warning": warning}


def void_cart_line(
    cur,
    reason: Optional[str],
    voided_amount,
    actor: Optional[dict],
    now: datetime,
    *,
    item_name: Optional[str] = None,
) -> dict:
    """Void of a line removed from an in-progress order: nothing was sold, so no stock moves."""
    reason, amount = _void_contract(reason, voided_amount)
    cur.execute(
        """
        INSERT INTO void_logs (sale_id, mode, staff_name, void_reason, voided_amount, restored_ml, created_at)
        VALUES (NULL, 'cart_void', %s, %s, %s, NULL, %s)
        RETURNING id, sale_id, mode, staff_name, void_reason, voided_amount, created_at
        """,
        (staff_name_for(actor), reason, amount, now),
    )
    row = cur.fetchone()
    write_audit_event(
        cur,
        actor,
        "void.create",
        "sales",
        None,
        after=row,
        metadata={"mode": "cart_void", "reason": reason, "voided_amount": amount, "item_name": item_name},
    )
    return row


def list_sales(cur, *, staff: Optional[str] = None, voided: Optional[bool] = None, since: Optional[datetime] = None) -> list:
    sql = f"SELECT {SALE_COLUMNS} FROM sales WHERE 1=1"
    params: list = []
    if staff:
        sql += " AND staff_name = %s"
        params.append(staff)
    if voided is not None:
        sql += " AND is_voided = %s"
        params.append(voided)
    if since:
        sql += " AND created_at >= %s"
        params.append(since)
    sql += " ORDER BY created_at DESC, id DESC"
    cur.execute(sql, params)
    return cur.fetchall()


def list_voids(cur, *, staff: Optional[str] = None, since: Optional[datetime] = None) -> list:
    sql = """
        SELECT id, sale_id, mode, staff_name, void_reason, voided_amount, restored_ml, created_at
        FROM void_logs
        WHERE 1=1
    """
    params: list = []
    if staff:
        sql += " AND staff_name = %s"
        params.append(staff)
    if since:
        sql += " AND created_at >= %s"
        params.append(since)
    sql += " ORDER BY created_at DESC, id DESC"
    cur.execute(sql, params)
    return cur.fetchall()
