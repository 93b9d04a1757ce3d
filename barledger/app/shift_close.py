"""
Per-staff shift close.

A shift runs from the staff member's previous close (or local midnight for a first close)
until now, and never reaches behind the latest month closure. Closing records the expected
takings by payment method against the cash actually counted in the drawer.
"""
import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from .audit_log import write_audit_event
from .clock import Clock, TimeZoneOffset, day_utc_range
from .errors import ValidationError
from .month_closure import as_decimal, latest_closure_cutoff
from .sale_ledger import q_money

SHIFT_COLUMNS = """
    id, staff_id, staff_email, shift_start, shift_end, total_sales,
    cash_expected, card_expected, upi_expected, complimentary_amount,
    cash_counted, difference, metadata, created_at
"""

PAYMENT_BUCKETS = {
    "CASH": "cash_expected",
    "CARD": "card_expected",
    "UPI": "upi_expected",
    "COMPLIMENTARY": "complimentary_amount",
}


def payment_breakdown(orders: list) -> dict:
    totals = {"total_sales": Decimal("0")}
    totals.update({bucket: Decimal("0") for bucket in PAYMENT_BUCKETS.values()})
    for order in orders:
        amount = as_decimal(order.get("total_amount"))
        if amount <= 0:
            continue
        totals["total_sales"] += amount
        bucket = PAYMENT_BUCKETS.get(str(order.get("payment_method") or "").upper())
        if bucket:
            totals[bucket] += amount
    return {k: q_money(v) for k, v in totals.items()}


def shift_start(cur, actor: Optional[dict], clock: Clock, tz: TimeZoneOffset) -> datetime:
    cur.execute(
        "SELECT shift_end FROM shift_logs WHERE staff_id = %s ORDER BY shift_end DESC LIMIT 1",
        ((actor or {}).get("actor_id"),),
    )
    row = cur.fetchone()
    start = row["shift_end"] if row else day_utc_range(clock, tz).start
    cutoff = latest_closure_cutoff(cur)
    return max(start, cutoff) if cutoff else start


def preview_shift(cur, actor: Optional[dict], clock: Clock, tz: TimeZoneOffset) -> dict:
    start = shift_start(cur, actor, clock, tz)
    end = clock.now()
    cur.execute(
        """
        SELECT total_amount, payment_method
        FROM orders
        WHERE created_at >= %s AND created_at <= %s
        ORDER BY created_at ASC
        """,
        (start, end),
    )
    return {"shift_start": start, "shift_end": end, **payment_breakdown(cur.fetchall())}


def close_shift(cur, actor: Optional[dict], cash_counted, clock: Clock, tz: TimeZoneOffset) -> dict:
    try:
        counted = Decimal(str(cash_counted))
    except (InvalidOperation, ValueError):
        counted = None
    if counted is None or not counted.is_finite() or counted < 0:
        raise ValidationError("cash_counted must be a non-negative number")
    counted = q_money(counted)

    summary = preview_shift(cur, actor, clock, tz)
    difference = q_money(counted - summary["cash_expected"])
    cur.execute(
        f"""
        INSERT INTO shift_logs
          (staff_id, staff_email, shift_start, shift_end, total_sales,
           cash_expected, card_expected, upi_expected, complimentary_amount,
           cash_counted, difference, metadata, created_at)
        VALUES
          (%s, %s, %s, %s, %s,
           %s, %s, %s, %s,
           %s, %s, %s::jsonb, %s)
        RETURNING {SHIFT_COLUMNS}
        """,
        (
            (actor or {}).get("actor_id"),
            (actor or {}).get("email"),
            summary["shift_start"],
            summary["shift_end"],
            summary["total_sales"],
            summary["cash_expected"],
            summary["card_expected"],
            summary["upi_expected"],
            summary["complimentary_amount"],
            counted,
            difference,
            json.dumps({"timezone_offset_minutes": tz.minutes}),
            summary["shift_end"],
        ),
    )
    shift = cur.fetchone()
    write_audit_event(
        cur,
        actor,
        "shift.close",
        "shift_logs",
        shift["id"],
        after=shift,
        metadata={
            "total_sales": summary["total_sales"],
            "cash_expected": summary["cash_expected"],
            "cash_counted": counted,
            "difference": difference,
        },
    )
    return shift
