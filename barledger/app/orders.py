"""
Completed-order receipts.

An order is written once (at checkout or when a tab closes) and never mutated afterwards.
`items` is a JSON snapshot of what was on the bill at that moment.
"""
import json
import secrets
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from .audit_log import write_audit_event
from .errors import ValidationError
from .sale_ledger import q_money, staff_name_for
from .schema import SchemaCapabilities
from .validation import PAYMENT_METHODS

ORDER_COLUMNS = "id, order_id, staff_name, items, total_amount, payment_method, status, created_at"
SPLIT_COLUMNS = "id, order_id, split_mode, split_index, party_label, party_detail, amount, created_at"
SPLIT_MODES = ("BY_ITEM", "EQUAL", "BY_GUEST")


def generate_code(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def normalize_payment_method(raw: Optional[str]) -> str:
    method = (raw or "").strip().upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    return method


def normalize_split(split: Optional[dict], total: Decimal) -> Optional[dict]:
    """
    Validate a split-bill allocation against the order total.

    Entries are `{label, detail, amount}`; a split may leave at most a cent per party
    unallocated (equal shares of an odd total) and never more.
    """
    if not split:
        return None
    mode = str(split.get("mode") or "").strip().upper()
    if mode in ("", "NONE"):
        return None
    if mode not in SPLIT_MODES:
        raise ValidationError(f"split_bill.mode must be one of: {', '.join(SPLIT_MODES)}")
    entries = split.get("entries") or []
    if not isinstance(entries, list) or not entries:
        raise ValidationError("split_bill.entries must be a non-empty array")

    parts = []
    for index, entry in enumerate(entries):
        try:
            amount = Decimal(str((entry or {}).get("amount")))
        except (InvalidOperation, ValueError):
            amount = None
        if amount is None or not amount.is_finite() or amount < 0:
            raise ValidationError(
                f"split_bill.entries[{index}] has invalid amount",
                data={"index": index, "reason": "amount must be a number >= 0"},
            )
        parts.append(
            {
                "split_index": index,
                "party_label": str(entry.get("label") or "").strip() or f"Guest {index + 1}",
                "party_detail": str(entry.get("detail") or "").strip() or None,
                "amount": q_money(amount),
            }
        )

    allocated = sum((p["amount"] for p in parts), Decimal("0"))
    if abs(allocated - total) > Decimal("0.01") * len(parts):
        raise ValidationError(
            "split_bill entries must add up to the order total",
            data={"allocated": allocated, "total": total},
        )
    return {"mode": mode, "parts": parts}


def record_order_splits(cur, order_code: str, split: dict, now: datetime) -> list:
    rows = []
    for part in split["parts"]:
        cur.execute(
            f"""
            INSERT INTO order_splits
              (order_id, split_mode, split_index, party_label, party_detail, amount, created_at)
            VALUES
              (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {SPLIT_COLUMNS}
            """,
            (
                order_code,
                split["mode"],
                part["split_index"],
                part["party_label"],
                part["party_detail"],
                part["amount"],
                now,
            ),
        )
        rows.append(cur.fetchone())
    return rows


def create_order(
    cur,
    capabilities: SchemaCapabilities,
    *,
    items: list,
    total_amount,
    payment_method: Optional[str],
    actor: Optional[dict],
    now: datetime,
    order_code: Optional[str] = None,
    code_prefix: str = "BAR",
    split_bill: Optional[dict] = None,
) -> dict:
    if not items:
        raise ValidationError("items must be a non-empty array")
    method = normalize_payment_method(payment_method)
    total = q_money(total_amount)
    if total < 0:
        raise ValidationError("total must be >= 0")
    split = normalize_split(split_bill, total)
    code = (order_code or "").strip() or generate_code(code_prefix, now)

    columns = ["order_id", "staff_name", "items", "total_amount", "payment_method", "status", "created_at"]
    params = [
        code,
        staff_name_for(actor),
        json.dumps(items, default=str),
        total,
        method,
        "completed",
        now,
    ]
    if capabilities.orders_created_by:
        columns.append("created_by")
        params.append((actor or {}).get("actor_id"))

    placeholders = ", ".join("%s::jsonb" if c == "items" else "%s" for c in columns)
    cur.execute(
        f"""
        INSERT INTO orders ({", ".join(columns)})
        VALUES ({placeholders})
        RETURNING {ORDER_COLUMNS}
        """,
        params,
    )
    order = cur.fetchone()
    if split:
        order["splits"] = record_order_splits(cur, order["order_id"], split, now)
    write_audit_event(
        cur,
        actor,
        "order.create",
        "orders",
        order["order_id"],
        after=order,
        metadata={
            "payment_method": method,
            "total_amount": total,
            "item_count": len(items),
            "split_mode": split["mode"] if split else None,
        },
    )
    return order


def order_total(items: list) -> Decimal:
    return q_money(sum((Decimal(str(it.get("line_total") or 0)) for it in items), Decimal("0")))
