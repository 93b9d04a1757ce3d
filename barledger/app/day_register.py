"""
Daily stock register (opening / received / closing bottle counts per item) and day locks.

Opening carries forward from the most recent earlier row's closing balance. Saving a day
also overwrites live stock from the counted closing balance. A locked day cannot be saved
until it is unlocked again.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .audit_log import write_audit_event
from .errors import DayLocked, NotFound, ValidationError
from .inventory_store import set_stock_from_count
from .sale_ledger import q_money

LOCK_COLUMNS = "id, date, month, year, locked_by_user_id, locked_by_email, created_at"


def to_count(value) -> int:
    """Coerce a register balance to a non-negative whole number (garbage becomes 0)."""
    try:
        parsed = Decimal(str(value if value is not None else 0))
    except Exception:
        return 0
    if not parsed.is_finite():
        return 0
    return max(0, int(parsed))


def compute_register_row(opening, received, closing, unit_price) -> dict:
    opening = to_count(opening)
    received = to_count(received)
    total = opening + received
    closing = total if closing is None else to_count(closing)
    sale = max(0, total - closing)
    price = Decimal(str(unit_price or 0))
    return {
        "opening_balance": opening,
        "received": received,
        "total": total,
        "closing_balance": closing,
        "sale": sale,
        "unit_price": q_money(price),
        "amount": q_money(price * sale),
    }


def get_day_lock(cur, day: date) -> Optional[dict]:
    cur.execute(f"SELECT {LOCK_COLUMNS} FROM stock_register_day_locks WHERE date = %s", (day,))
    return cur.fetchone()


def previous_closings(cur, register_date: date) -> dict:
    """Latest closing balance per item from any date before `register_date`."""
    cur.execute(
        """
        SELECT DISTINCT ON (item_id) item_id, closing_balance
        FROM stock_register
        WHERE date < %s
        ORDER BY item_id, date DESC
        """,
        (register_date,),
    )
    return {str(r["item_id"]): r["closing_balance"] for r in cur.fetchall()}


def get_register(cur, register_date: date) -> dict:
    cur.execute(
        """
        SELECT id, name, brand_name, selling_price
        FROM inventory_items
        WHERE is_active = true
        ORDER BY name ASC
        """
    )
    items = cur.fetchall()

    cur.execute(
        """
        SELECT id, item_id, opening_balance, received, closing_balance
        FROM stock_register
        WHERE date = %s
        """,
        (register_date,),
    )
    saved = {str(r["item_id"]): r for r in cur.fetchall()}

    previous_close = previous_closings(cur, register_date)

    rows = []
    for item in items:
        item_id = str(item["id"])
        current = saved.get(item_id)
        if current:
            opening = current.get("opening_balance")
            received = current.get("received")
            closing = current.get("closing_balance")
        else:
            opening = previous_close.get(item_id, 0)
            received = 0
            closing = None
        row = compute_register_row(opening, received, closing, item.get("selling_price"))
        row.update(
            {
                "id": current["id"] if current else None,
                "item_id": item_id,
                "name": item.get("name"),
                "brand_name": item.get("brand_name"),
                "date": register_date,
                "month": register_date.month,
                "year": register_date.year,
            }
        )
        rows.append(row)

    lock = get_day_lock(cur, register_date)
    return {
        "rows": rows,
        "summary": {
            "total_sold": sum(r["sale"] for r in rows),
            "total_revenue": q_money(sum((r["amount"] for r in rows), Decimal("0"))),
            "remaining_stock": sum(r["closing_balance"] for r in rows),
        },
        "selected": {"date": register_date, "month": register_date.month, "year": register_date.year},
        "is_day_locked": bool(lock),
        "locked_by_email": lock.get("locked_by_email") if lock else None,
        "locked_at": lock.get("created_at") if lock else None,
    }


def save_register(cur, register_date: date, rows: list, actor: Optional[dict], now: datetime) -> list:
    lock = get_day_lock(cur, register_date)
    if lock:
        raise DayLocked(
            "this day is locked and cannot be edited",
            data={
                "date": register_date,
                "locked_by_email": lock.get("locked_by_email"),
                "locked_at": lock.get("created_at"),
            },
        )
    if not rows:
        raise ValidationError("rows must be a non-empty array")
    item_ids = [str(r.get("item_id") or "").strip() for r in rows]
    if not all(item_ids):
        raise ValidationError("rows must include valid item_id")

    cur.execute(
        "SELECT id, selling_price FROM inventory_items WHERE id = ANY(%s)",
        (list(set(item_ids)),),
    )
    prices = {str(r["id"]): r.get("selling_price") for r in cur.fetchall()}
    missing = [i for i in item_ids if i not in prices]
    if missing:
        raise NotFound("inventory item not found", data={"item_ids": missing})

    # Omitted opening carries forward; omitted closing means nothing was sold.
    carried = previous_closings(cur, register_date)
    saved = []
    for item_id, raw in zip(item_ids, rows):
        opening = raw.get("opening_balance")
        if opening is None:
            opening = carried.get(item_id, 0)
        row = compute_register_row(opening, raw.get("received"), raw.get("closing_balance"), prices[item_id])
        cur.execute(
            """
            INSERT INTO stock_register
              (item_id, date, month, year, opening_balance, received, total, sale,
               closing_balance, amount, created_by, updated_at)
            VALUES
              (%s, %s, %s, %s, %s, %s, %s, %s,
               %s, %s, %s, %s)
            ON CONFLICT (item_id, date) DO UPDATE
            SET opening_balance = EXCLUDED.opening_balance,
                received = EXCLUDED.received,
                total = EXCLUDED.total,
                sale = EXCLUDED.sale,
                closing_balance = EXCLUDED.closing_balance,
                amount = EXCLUDED.amount,
                created_by = EXCLUDED.created_by,
                updated_at = EXCLUDED.updated_at
            RETURNING id, item_id, date, month, year, opening_balance, received, total, sale,
                      closing_balance, amount, updated_at
            """,
            (
                item_id,
                register_date,
                register_date.month,
                register_date.year,
                row["opening_balance"],
                row["received"],
                row["total"],
                row["sale"],
                row["closing_balance"],
                row["amount"],
                (actor or {}).get("actor_id"),
                now,
            ),
        )
        saved.append(cur.fetchone())
        set_stock_from_count(cur, item_id, row["closing_balance"], now)

    write_audit_event(
        cur,
        actor,
        "stock_register.save",
        "stock_register",
        None,
        after=saved,
        metadata={
            "date": register_date,
            "month": register_date.month,
            "year": register_date.year,
            "row_count": len(saved),
        },
    )
    return saved


def lock_day(cur, day: date, actor: Optional[dict], now: datetime) -> dict:
    cur.execute(
        f"""
        INSERT INTO stock_register_day_locks (date, month, year, locked_by_user_id, locked_by_email, created_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (date) DO NOTHING
        RETURNING {LOCK_COLUMNS}
        """,
        (day, day.month, day.year, (actor or {}).get("actor_id"), (actor or {}).get("email"), now),
    )
    inserted = cur.fetchone()
    if not inserted:
        return {"lock": get_day_lock(cur, day), "already_locked": True}

    write_audit_event(
        cur,
        actor,
        "stock_register.lock_day",
        "stock_register_day_locks",
        inserted["id"],
        after=inserted,
        metadata={"date": day, "month": day.month, "year": day.year},
    )
    return {"lock": inserted, "already_locked": False}


def unlock_day(cur, day: date, actor: Optional[dict]) -> dict:
    cur.execute(
        f"DELETE FROM stock_register_day_locks WHERE date = %s RETURNING {LOCK_COLUMNS}",
        (day,),
    )
    removed = cur.fetchone()
    if not removed:
        return {"lock": None, "already_unlocked": True}

    write_audit_event(
        cur,
        actor,
        "stock_register.unlock_day",
        "stock_register_day_locks",
        removed["id"],
        before=removed,
        metadata={"date": day, "month": day.month, "year": day.year},
    )
    return {"lock": removed, "already_unlocked": False}


def list_day_locks(cur, year: int, month: int) -> list:
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12")
    if not 2000 <= year <= 2100:
        raise ValidationError("year must be between 2000 and 2100")
    cur.execute(
        f"""
        SELECT {LOCK_COLUMNS}
        FROM stock_register_day_locks
        WHERE year = %s AND month = %s
        ORDER BY date ASC
        """,
        (year, month),
    )
    return cur.fetchall()
