from contextlib import nullcontext
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from barledger.app.day_register import (
    compute_register_row,
    get_register,
    list_day_locks,
    lock_day,
    save_register,
    to_count,
    unlock_day,
)
from barledger.app.errors import DayLocked, NotFound, ValidationError


NOW = datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc)
DAY = date(2026, 3, 10)
WHISKY_ID = "aaaaaaaa-0000-0000-0000-000000000001"


class _RegisterCursor:
    def __init__(self):
        self.connection = self
        self.items = {
            WHISKY_ID: {
                "id": WHISKY_ID,
                "name": "Whisky",
                "brand_name": "Glen",
                "selling_price": Decimal("2400"),
                "bottle_size_ml": Decimal("750"),
                "stock_quantity": 0,
                "current_stock_ml": Decimal("0"),
            }
        }
        self.register = {}
        self.locks = {}
        self.audit = []
        self.stock_writes = []
        self.rows = []

    def transaction(self):
        return nullcontext()

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        p = list(params or [])
        self.rows = []
        if text.startswith("insert into audit_logs"):
            self.audit.append(p[4])
            return
        if text.startswith("delete from stock_register_day_locks"):
            lock = self.locks.pop(p[0], None)
            self.rows = [lock] if lock else []
            return
        if text.startswith("insert into stock_register_day_locks"):
            if p[0] not in self.locks:
                self.locks[p[0]] = {"id": f"lock-{p[0]}", "date": p[0], "month": p[1], "year": p[2],
                                    "locked_by_user_id": p[3], "locked_by_email": p[4], "created_at": p[5]}
                self.rows = [self.locks[p[0]]]
            return
        if "from stock_register_day_locks where date = %s" in text:
            lock = self.locks.get(p[0])
            self.rows = [lock] if lock else []
            return
        if "from stock_register_day_locks where year = %s and month = %s" in text:
            self.rows = [lk for lk in self.locks.values() if lk["year"] == p[0] and lk["month"] == p[1]]
            return
        if text.startswith("select id, selling_price from inventory_items where id = any(%s)"):
            self.rows = [self.items[i] for i in p[0] if i in self.items]
            return
        if "from inventory_items where is_active = true" in text:
            self.rows = list(self.items.values())
            return
        if text.startswith("insert into stock_register"):
            keys = ["item_id", "date", "month", "year", "opening_balance", "received", "total", "sale",
                    "closing_balance", "amount", "created_by", "updated_at"]
            row = dict(zip(keys, p))
            row["id"] = f"reg-{row['item_id']}-{row['date']}"
            self.register[(row["item_id"], row["date"])] = row
            self.rows = [row]
            return
        if text.startswith("update inventory_items set stock_quantity = %s"):
            count, _, now, item_id = p
            item = self.items[item_id]
            item["stock_quantity"] = count
            item["current_stock_ml"] = count * item["bottle_size_ml"]
            self.stock_writes.append((item_id, count))
            self.rows = [item]
            return
        if "from stock_register where date = %s" in text:
            self.rows = [r for (_, d), r in self.register.items() if d == p[0]]
            return
        if text.startswith("select distinct on (item_id) item_id, closing_balance from stock_register where date < %s"):
            prior = sorted((r for (_, d), r in self.register.items() if d < p[0]), key=lambda r: r["date"], reverse=True)
            seen = {}
            for r in prior:
                seen.setdefault(r["item_id"], r)
            self.rows = list(seen.values())
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")


def test_compute_register_row_math():
    row = compute_register_row(5, 3, 6, Decimal("2400"))
    assert row["total"] == 8
    assert row["sale"] == 2
    assert row["amount"] == Decimal("4800.00")

    # Closing defaults to total; sale never goes negative.
    assert compute_register_row(5, 0, None, 100)["closing_balance"] == 5
    assert compute_register_row(2, 0, 9, 100)["sale"] == 0


def test_to_count_coerces_to_non_negative_integers():
    assert to_count("4.9") == 4
    assert to_count(-3) == 0
    assert to_count("abc") == 0
    assert to_count(None) == 0


def test_register_opening_carries_forward_prior_closing():
    cur = _RegisterCursor()
    cur.register[(WHISKY_ID, date(2026, 3, 8))] = {"item_id": WHISKY_ID, "date": date(2026, 3, 8), "closing_balance": 9}
    cur.register[(WHISKY_ID, date(2026, 3, 9))] = {"item_id": WHISKY_ID, "date": date(2026, 3, 9), "closing_balance": 5}

    out = get_register(cur, DAY)

    row = out["rows"][0]
    assert row["opening_balance"] == 5
    assert row["closing_balance"] == 5
    assert row["sale"] == 0
    assert row["id"] is None
    assert out["is_day_locked"] is False
    assert out["summary"] == {"total_sold": 0, "total_revenue": Decimal("0.00"), "remaining_stock": 5}


def test_save_mirrors_closing_into_stock():
    cur = _RegisterCursor()

    saved = save_register(
        cur,
        DAY,
        [{"item_id": WHISKY_ID, "opening_balance": 5, "received": "3", "closing_balance": 6}],
        {"actor_id": "owner-1", "email": "owner@bar.test", "role": "owner"},
        NOW,
    )

    assert saved[0]["total"] == 8
    assert saved[0]["sale"] == 2
    assert saved[0]["amount"] == Decimal("4800.00")
    assert cur.items[WHISKY_ID]["stock_quantity"] == 6
    assert cur.items[WHISKY_ID]["current_stock_ml"] == Decimal("4500")
    assert cur.audit == ["stock_register.save"]

    view = get_register(cur, DAY)
    assert view["rows"][0]["received"] == 3
    assert view["summary"]["total_revenue"] == Decimal("4800.00")


def test_save_carries_opening_forward_and_defaults_closing_to_total():
    cur = _RegisterCursor()
    owner = {"actor_id": "owner-1", "email": "owner@bar.test", "role": "owner"}
    save_register(cur, date(2026, 3, 9), [{"item_id": WHISKY_ID, "opening_balance": 12, "closing_balance": 10}],
                  owner, NOW)

    saved = save_register(cur, DAY, [{"item_id": WHISKY_ID, "received": 5, "closing_balance": 3}], owner, NOW)
    assert saved[0]["opening_balance"] == 10
    assert saved[0]["total"] == 15
    assert saved[0]["sale"] == 12

    # No closing count given: nothing sold, and live stock is not zeroed.
    untouched = save_register(cur, date(2026, 3, 11), [{"item_id": WHISKY_ID}], owner, NOW)
    assert untouched[0]["opening_balance"] == 3
    assert untouched[0]["closing_balance"] == 3
    assert untouched[0]["sale"] == 0
    assert cur.items[WHISKY_ID]["stock_quantity"] == 3


def test_locked_day_rejects_save_until_unlocked():
    cur = _RegisterCursor()
    actor = {"actor_id": "owner-1", "email": "owner@bar.test", "role": "owner"}
    rows = [{"item_id": WHISKY_ID, "opening_balance": 5, "received": 0, "closing_balance": 4}]

    first = lock_day(cur, DAY, actor, NOW)
    again = lock_day(cur, DAY, actor, NOW)
    assert first["already_locked"] is False
    assert again["already_locked"] is True

    with pytest.raises(DayLocked) as excinfo:
        save_register(cur, DAY, rows, actor, NOW)
    assert excinfo.value.kind == "conflict"
    assert cur.register == {}
    assert cur.stock_writes == []

    assert unlock_day(cur, DAY, actor)["already_unlocked"] is False
    assert unlock_day(cur, DAY, actor)["already_unlocked"] is True

    save_register(cur, DAY, rows, actor, NOW)
    assert cur.stock_writes == [(WHISKY_ID, 4)]
    assert cur.audit == ["stock_register.lock_day", "stock_register.unlock_day", "stock_register.save"]


def test_save_validates_rows():
    cur = _RegisterCursor()
    with pytest.raises(ValidationError):
        save_register(cur, DAY, [], None, NOW)
    with pytest.raises(ValidationError):
        save_register(cur, DAY, [{"item_id": ""}], None, NOW)
    with pytest.raises(NotFound):
        save_register(cur, DAY, [{"item_id": "bbbbbbbb-0000-0000-0000-000000000002"}], None, NOW)


def test_list_day_locks_for_month():
    cur = _RegisterCursor()
    lock_day(cur, DAY, None, NOW)
    lock_day(cur, date(2026, 4, 1), None, NOW)

    locks = list_day_locks(cur, 2026, 3)

    assert [lk["date"] for lk in locks] == [DAY]
    with pytest.raises(ValidationError):
        list_day_locks(cur, 2026, 13)
