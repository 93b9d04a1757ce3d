from decimal import Decimal

from .month_closure import AnalyticsWindow, as_decimal, aggregate_top_items
from .sale_ledger import q_money

TOP_ITEMS_LIMIT = 5


def build_sales_report(cur, window: AnalyticsWindow) -> dict:
    cur.execute(
        """
        SELECT order_id, total_amount, created_at, items
        FROM orders
        WHERE created_at >= %s AND created_at <= %s
        ORDER BY created_at DESC
        """,
        (window.start, window.end),
    )
    orders = cur.fetchall()

    cur.execute(
        "SELECT COUNT(*) AS n FROM void_logs WHERE created_at >= %s AND created_at <= %s",
        (window.start, window.end),
    )
    voided = cur.fetchone()

    total_revenue = q_money(sum((as_decimal(o.get("total_amount")) for o in orders), Decimal("0")))
    total_transactions = len(orders)
    top_items = [
        {"name": it["item_name"], "count": it["count"], "revenue": it["revenue"]}
        for it in aggregate_top_items(orders)[:TOP_ITEMS_LIMIT]
    ]
    return {
        "total_revenue": total_revenue,
        "total_transactions": total_transactions,
        "total_voided": int((voided or {}).get("n") or 0),
        "avg_transaction": q_money(total_revenue / total_transactions) if total_transactions else Decimal("0.00"),
        "top_items": top_items,
        "window": {
            "start": window.start,
            "end": window.end,
            "natural_start": window.natural_start,
            "closure_cutoff": window.cutoff,
        },
    }
