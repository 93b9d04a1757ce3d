"""
Running tabs.

A tab only collects lines; no stock moves until it is closed. Closing converts every line
into a stock-deducting sale linked to one order receipt.

State machine:
- open -> closed (close_tab)
- open -> cancelled (month closure)
Both end states are terminal.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from .audit_log import write_audit_event
from .errors import EmptyTab, InvalidState, NotFound, OutOfStock, TabCloseFailed, ValidationError
from .orders import create_order, generate_code, normalize_payment_method, order_total
from .sale_ledger import q_money, record_sale, staff_name_for
from .schema import SchemaCapabilities
from .sizes import resolve_size

TAB_COLUMNS = """
    id, tab_code, status, customer_name, table_label, total_amount,
    opened_by, opened_by_user_id, opened_at, closed_at, payment_method, order_id, updated_at
"""

TAB_ITEM_COLUMNS = """
    id, tab_id, item_name, inventory_id, inventory_size_id, size_label, size_ml,
    quantity, unit_price, line_total, added_by, added_at
"""


def _lock_tab(cur, tab_id: str) -> dict:
    cur.execute(f"SELECT {TAB_COLUMNS} FROM tabs WHERE id = %s FOR UPDATE", (tab_id,))
    tab = cur.fetchone()
    if not tab:
        raise NotFound("tab not found")
    return tab


def _require_open(tab: dict) -> None:
    if tab.get("status") != "open":
        raise InvalidState(
            f"tab is {tab.get('status')}; only open tabs can be changed",
            data={"tab_id": str(tab["id"]), "status": tab.get("status")},
        )


def _tab_items(cur, tab_id: str) -> list:
    cur.execute(
        f"SELECT {TAB_ITEM_COLUMNS} FROM tab_items WHERE tab_id = %s ORDER BY added_at ASC, id ASC",
        (tab_id,),
    )
    return cur.fetchall()


def open_tab(cur, customer_name: Optional[str], table_label: Optional[str], actor: Optional[dict], now: datetime) -> dict:
    customer_name = (customer_name or "").strip()
    if not customer_name:
        raise ValidationError("customer_name is required")
    cur.execute(
        f"""
        INSERT INTO tabs
          (tab_code, status, customer_name, table_label, total_amount,
           opened_by, opened_by_user_id, opened_at, updated_at)
        VALUES
          (%s, 'open', %s, %s, 0,
           %s, %s, %s, %s)
        RETURNING {TAB_COLUMNS}
        """,
        (
            generate_code("TAB", now),
            customer_name,
            (table_label or "").strip() or None,
            staff_name_for(actor),
            (actor or {}).get("actor_id"),
            now,
            now,
        ),
    )
    tab = cur.fetchone()
    write_audit_event(cur, actor, "tab.open", "tabs", tab["id"], after=tab)
    return tab


def _money_field(raw, index: int, field_name: str) -> Decimal:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        value = None
    if value is None or not value.is_finite() or value < 0:
        raise ValidationError(
            f"items[{index}] has invalid {field_name}",
            data={"index": index, "reason": f"{field_name} must be a number >= 0"},
        )
    return q_money(value)


def _normalize_line(raw: dict, index: int) -> dict:
    inventory_id = str(raw.get("inventory_id") or "").strip()
    if not inventory_id:
        raise ValidationError(
            f"items[{index}] has invalid inventory_id",
            data={"index": index, "reason": "inventory_id is required"},
        )
    quantity = raw.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(
            f"items[{index}] has invalid quantity",
            data={"index": index, "reason": "quantity must be a positive integer"},
        )
    unit_price = _money_field(raw.get("unit_price") or 0, index, "unit_price")
    if raw.get("line_total") is not None:
        line_total = _money_field(raw["line_total"], index, "line_total")
    else:
        line_total = q_money(unit_price * quantity)
    size_ml = raw.get("size_ml")
    return {
        "inventory_id": inventory_id,
        "item_name": (str(raw.get("name") or "").strip() or None),
        "inventory_size_id": (str(raw.get("inventory_size_id") or "").strip() or None),
        "size_label": (str(raw.get("size_label") or "").strip() or None),
        "size_ml": Decimal(str(size_ml)) if size_ml is not None else None,
        "quantity": quantity,
        "unit_price": unit_price,
        "line_total": line_total,
    }


def add_tab_items(cur, tab_id: str, items: list, actor: Optional[dict], now: datetime) -> dict:
    if not items:
        raise ValidationError("items must be a non-empty array")
    tab = _lock_tab(cur, tab_id)
    _require_open(tab)

    lines = [_normalize_line(raw, i) for i, raw in enumerate(items)]

    cur.execute(
        "SELECT id, name, is_active FROM inventory_items WHERE id = ANY(%s)",
        (list({ln["inventory_id"] for ln in lines}),),
    )
    known = {str(r["id"]): r for r in cur.fetchall()}
    for i, ln in enumerate(lines):
        inv = known.get(ln["inventory_id"])
        if not inv or not inv.get("is_active"):
            raise NotFound(
                f"items[{i}] references a missing or disabled inventory item",
                data={"index": i, "inventory_id": ln["inventory_id"]},
            )
        ln["item_name"] = ln["item_name"] or inv.get("name") or "Item"

    inserted = []
    for ln in lines:
        cur.execute(
            f"""
            INSERT INTO tab_items
              (tab_id, item_name, inventory_id, inventory_size_id, size_label, size_ml,
               quantity, unit_price, line_total, added_by, added_at)
            VALUES
              (%s, %s, %s, %s, %s, %s,
               %s, %s, %s, %s, %s)
            RETURNING {TAB_ITEM_COLUMNS}
            """,
            (
                tab_id,
                ln["item_name"],
                ln["inventory_id"],
                ln["inventory_size_id"],
                ln["size_label"],
                ln["size_ml"],
                ln["quantity"],
                ln["unit_price"],
                ln["line_total"],
                staff_name_for(actor),
                now,
            ),
        )
        inserted.append(cur.fetchone())

    added_total = q_money(sum((ln["line_total"] for ln in lines), Decimal("0")))
    cur.execute(
        f"""
        UPDATE tabs
        SET total_amount = total_amount + %s,
            updated_at = %s
        WHERE id = %s
        RETURNING {TAB_COLUMNS}
        """,
        (added_total, now, tab_id),
    )
    updated = cur.fetchone()

    write_audit_event(
        cur,
        actor,
        "tab.add_items",
        "tabs",
        tab_id,
        before=tab,
        after=updated,
        metadata={"added_items": len(lines), "added_total": added_total},
    )
    return {"tab": updated, "items": inserted}


def _order_line(item: dict) -> dict:
    return {
        "item_id": str(item["inventory_id"]) if item.get("inventory_id") else None,
        "name": item.get("item_name"),
        "quantity": int(item.get("quantity") or 0),
        "unit_price": item.get("unit_price"),
        "size_ml": item.get("size_ml"),
        "line_total": item.get("line_total"),
    }


def close_tab(
    conn,
    tab_id: str,
    payment_method: Optional[str],
    actor: Optional[dict],
    capabilities: SchemaCapabilities,
    now: datetime,
) -> dict:
    """
    Settle an open tab.

    Runs as one transaction on `conn`, which must not already be inside one. Each line is
    sold inside its own savepoint. When a line fails for stock or a missing item, the lines
    before it and the order stay committed, the tab stays open, and TabCloseFailed is raised
    after the commit.
    """
    method = normalize_payment_method(payment_method)
    failure = None
    sold: list = []

    with conn.transaction():
        with conn.cursor() as cur:
            tab = _lock_tab(cur, tab_id)
            _require_open(tab)
            items = _tab_items(cur, tab_id)
            if not items:
                raise EmptyTab("tab has no items", data={"tab_id": str(tab_id)})

            order_items = [_order_line(it) for it in items]
            total = order_total(order_items)
            order = create_order(
                cur,
                capabilities,
                items=order_items,
                total_amount=total,
                payment_method=method,
                actor=actor,
                now=now,
                code_prefix="TAB",
            )

            for index, item in enumerate(items):
                try:
                    with conn.transaction():
                        if not item.get("inventory_id"):
                            raise NotFound("tab item has no inventory item")
                        size = resolve_size(cur, str(item["inventory_id"]), item.get("inventory_size_id"))
                        sale = record_sale(
                            cur,
                            str(item["inventory_id"]),
                            size,
                            int(item["quantity"]),
                            actor,
                            now,
                            order_id=order["order_id"],
                        )
                except (OutOfStock, NotFound) as exc:
                    failure = (index, item, exc)
                    break
                sold.append(sale)

            if failure:
                index, item, exc = failure
                write_audit_event(
                    cur,
                    actor,
                    "tab.close",
                    "tabs",
                    tab_id,
                    outcome="failure",
                    before=tab,
                    metadata={
                        "order_id": order["order_id"],
                        "failed_index": index,
                        "failed_item": item.get("item_name"),
                        "error": exc.to_dict(),
                        "sold_sale_ids": [s["id"] for s in sold],
                    },
                )
            else:
                cur.execute(
                    f"""
                    UPDATE tabs
                    SET status = 'closed',
                        closed_at = %s,
                        payment_method = %s,
                        order_id = %s,
                        total_amount = %s,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING {TAB_COLUMNS}
                    """,
                    (now, method, order["order_id"], total, now, tab_id),
                )
                closed = cur.fetchone()
                write_audit_event(
                    cur,
                    actor,
                    "tab.close",
                    "tabs",
                    tab_id,
                    before=tab,
                    after=closed,
                    metadata={"payment_method": method, "order_id": order["order_id"], "total_amount": total},
                )

    if failure:
        index, item, exc = failure
        name = item.get("item_name") or "item"
        raise TabCloseFailed(
            f"tab close failed at item {name}; items before {name} were already sold",
            cause=exc,
            data={
                "tab_id": str(tab_id),
                "order_id": order["order_id"],
                "failed_index": index,
                "failed_item": name,
                "cause": exc.to_dict(),
                "sold": sold,
            },
        )
    return {"tab": closed, "order": order, "sales": sold, "items": len(items)}


def list_tabs(cur, status: Optional[str] = None) -> list:
    sql = f"SELECT {TAB_COLUMNS} FROM tabs"
    params: list = []
    if status:
        sql += " WHERE status = %s"
        params.append(status)
    sql += " ORDER BY opened_at DESC, id DESC"
    cur.execute(sql, params)
    return cur.fetchall()


def get_tab(cur, tab_id: str) -> dict:
    cur.execute(f"SELECT {TAB_COLUMNS} FROM tabs WHERE id = %s", (tab_id,))
    tab = cur.fetchone()
    if not tab:
        raise NotFound("tab not found")
    return {"tab": tab, "items": _tab_items(cur, tab_id)}
