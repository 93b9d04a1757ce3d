"""
Month-end closure and the analytics window it bounds.

Closing a month is irreversible: it retires every still-open tab and snapshots the month's
order totals. The newest closure's `created_at` becomes the earliest instant any report
window may start at, unless archived data is explicitly requested.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .audit_log import write_audit_event
from .clock import Clock, TimeZoneOffset, day_utc_range, month_key, month_utc_range
from .errors import MonthAlreadyClosed, ValidationError
from .sale_ledger import q_money

CLOSURE_COLUMNS = """
    id, month_key, period_start, period_end, total_sales, total_orders,
    top_item_name, top_item_quantity, cancelled_open_tabs_count, cancelled_open_tabs_amount,
    closed_by_user_id, closed_by_email, metadata, created_at
"""

REPORT_RANGES = ("today", "week", "month")


@dataclass(frozen=True)
class AnalyticsWindow:
    start: datetime
    end: datetime
    natural_start: datetime
    cutoff: Optional[datetime]


def as_decimal(value) -> Decimal:
    try:
        parsed = Decimal(str(value if value is not None else 0))
    except Exception:
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def aggregate_top_items(orders: list) -> list:
    """Group order line snapshots by item, ordered by quantity sold (highest first)."""
    grouped: dict = {}
    for order in orders:
        order_amount = as_decimal(order.get("total_amount"))
        lines = order.get("items")
        if isinstance(lines, str):
            lines = json.loads(lines)
        if not isinstance(lines, list):
            continue
        for line in lines:
            if not isinstance(line, dict):
                continue
            qty = as_decimal(line.get("quantity"))
            if qty <= 0:
                continue
            item_id = str(line.get("item_id") or line.get("id") or line.get("name") or "unknown")
            entry = grouped.setdefault(
                item_id,
                {
                    "item_id": item_id,
                    "item_name": str(line.get("name") or line.get("item_name") or item_id),
                    "count": Decimal("0"),
                    "revenue": Decimal("0"),
                },
            )
            entry["count"] += qty
            line_total = as_decimal(line.get("line_total"))
            if line_total > 0:
                entry["revenue"] += line_total
            else:
                unit_price = as_decimal(line.get("unit_price"))
                entry["revenue"] += unit_price * qty if unit_price > 0 else order_amount
    out = []
    for entry in grouped.values():
        entry["count"] = int(entry["count"]) if entry["count"] == entry["count"].to_integral_value() else entry["count"]
        entry["revenue"] = q_money(entry["revenue"])
        out.append(entry)
    out.sort(key=lambda e: e["count"], reverse=True)
    return out


def get_closure(cur, key: str) -> Optional[dict]:
    cur.execute(f"SELECT {CLOSURE_COLUMNS} FROM month_closures WHERE month_key = %s", (key,))
    return cur.fetchone()


def list_closures(cur) -> list:
    cur.execute(f"SELECT {CLOSURE_COLUMNS} FROM month_closures ORDER BY created_at DESC")
    return cur.fetchall()


def close_month(cur, clock: Clock, tz: TimeZoneOffset, actor: Optional[dict]) -> dict:
    key = month_key(clock, tz)
    bounds = month_utc_range(clock, tz)

    existing = get_closure(cur, key)
    if existing:
        raise MonthAlreadyClosed(f"month {key} is already closed", data=existing)

    now = clock.now()
    cur.execute(
        """
        UPDATE tabs
        SET status = 'cancelled',
            closed_at = %s,
            updated_at = %s
        WHERE status = 'open'
        RETURNING id, total_amount
        """,
        (now, now),
    )
    cancelled = cur.fetchall()
    cancelled_amount = q_money(sum((as_decimal(r.get("total_amount")) for r in cancelled), Decimal("0")))

    cur.execute(
        """
        SELECT order_id, total_amount, created_at, items
        FROM orders
        WHERE created_at >= %s AND created_at < %s
        ORDER BY created_at DESC
        """,
        (bounds.start, bounds.end),
    )
    orders = cur.fetchall()
    total_sales = q_money(sum((as_decimal(o.get("total_amount")) for o in orders), Decimal("0")))
    top_items = aggregate_top_items(orders)
    top = top_items[0] if top_items else None

    cur.execute(
        f"""
        INSERT INTO month_closures
          (month_key, period_start, period_end, total_sales, total_orders,
           top_item_name, top_item_quantity, cancelled_open_tabs_count, cancelled_open_tabs_amount,
           closed_by_user_id, closed_by_email, metadata, created_at)
        VALUES
          (%s, %s, %s, %s, %s,
           %s, %s, %s, %s,
           %s, %s, %s::jsonb, %s)
        ON CONFLICT (month_key) DO NOTHING
        RETURNING {CLOSURE_COLUMNS}
        """,
        (
            key,
            bounds.start,
            bounds.end,
            total_sales,
            len(orders),
            top["item_name"] if top else None,
            top["count"] if top else 0,
            len(cancelled),
            cancelled_amount,
            (actor or {}).get("actor_id"),
            (actor or {}).get("email"),
            json.dumps({"top_item_id": top["item_id"] if top else None, "timezone_offset_minutes": tz.minutes}),
            now,
        ),
    )
    closure = cur.fetchone()
    if not closure:
        # Lost a race with a concurrent close; raising rolls back the tab cancellations.
        raise MonthAlreadyClosed(f"month {key} is already closed", data=get_closure(cur, key))

    write_audit_event(
        cur,
        actor,
        "month.close",
        "month_closures",
        closure["id"],
        after=closure,
        metadata={
            "month_key": key,
            "total_sales": total_sales,
            "total_orders": len(orders),
            "cancelled_open_tabs_count": len(cancelled),
        },
    )
    return closure


def latest_closure_cutoff(cur) -> Optional[datetime]:
    cur.execute("SELECT created_at FROM month_closures ORDER BY created_at DESC LIMIT 1")
    row = cur.fetchone()
    return row["created_at"] if row else None


def natural_range_start(range_name: str, clock: Clock, tz: TimeZoneOffset) -> datetime:
    if range_name == "today":
        return day_utc_range(clock, tz).start
    if range_name == "week":
        return day_utc_range(clock, tz).start - timedelta(days=7)
    if range_name == "month":
        return month_utc_range(clock, tz).start
    raise ValidationError(f"range must be one of: {', '.join(REPORT_RANGES)}")


def analytics_window(
    cur,
    range_name: str,
    clock: Clock,
    tz: TimeZoneOffset,
    *,
    show_archived: bool = False,
) -> AnalyticsWindow:
    natural_start = natural_range_start(range_name, clock, tz)
    end = clock.now()
    if show_archived:
        return AnalyticsWindow(start=natural_start, end=end, natural_start=natural_start, cutoff=None)
    cutoff = latest_closure_cutoff(cur)
    start = max(natural_start, cutoff) if cutoff else natural_start
    return AnalyticsWindow(start=start, end=end, natural_start=natural_start, cutoff=cutoff)


def reporting_since(
    cur,
    range_name: Optional[str],
    since: Optional[datetime],
    clock: Clock,
    tz: TimeZoneOffset,
    *,
    show_archived: bool = False,
) -> Optional[datetime]:
    """
    Lower bound for a listing query.

    With a range it is that range's window start; without one, only the closure cutoff
    applies. An explicit `since` can narrow the result but never reach behind either bound.
    """
    if range_name:
        bound = analytics_window(cur, range_name, clock, tz, show_archived=show_archived).start
    else:
        bound = None if show_archived else latest_closure_cutoff(cur)
    if since and bound:
        return max(since, bound)
    return since or bound
