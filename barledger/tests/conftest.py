import copy
import json
import math
import os
import sys
import uuid
from contextlib import contextmanager
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `barledger/`.
# Tests import `barledger.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


class FakeLedgerDB:
    """
    In-memory stand-in for the handful of tables the sale/void/tab paths touch.

    Statements are matched on normalized SQL text. `transaction()` snapshots every table
    and restores it if the block raises, which is how savepoints behave for these tests.
    """

    def __init__(self):
        self.tables = {
            "inventory_items": {},
            "inventory_sizes": {},
            "sales": {},
            "void_logs": [],
            "tabs": {},
            "tab_items": [],
            "orders": [],
            "audit_logs": [],
            "month_closures": [],
            "order_splits": [],
            "shift_logs": [],
            "stock_register": [],
        }
        self.statements = []
        self.fail_audit_insert = False

    # -- seeding -------------------------------------------------------------------
    def add_item(self, name="Vodka", category="Vodka", bottle_size_ml="750", current_stock_ml="1500",
                 selling_price="150", is_active=True):
        item_id = str(uuid.uuid4())
        ml = Decimal(str(current_stock_ml))
        bottle = Decimal(str(bottle_size_ml))
        self.tables["inventory_items"][item_id] = {
            "id": item_id,
            "name": name,
            "brand_name": None,
            "category": category,
            "bottle_size_ml": bottle,
            "cost_price": Decimal("0"),
            "selling_price": Decimal(str(selling_price)),
            "stock_quantity": max(0, math.floor(ml / bottle)),
            "current_stock_ml": ml,
            "low_stock_alert": 0,
            "is_active": is_active,
            "created_at": None,
            "updated_at": None,
        }
        return item_id

    def add_size(self, item_id, size_ml="60", selling_price="150", label=None, is_active=True):
        size_id = str(uuid.uuid4())
        self.tables["inventory_sizes"][size_id] = {
            "id": size_id,
            "inventory_id": item_id,
            "size_label": label or f"{size_ml} ml",
            "size_ml": Decimal(str(size_ml)),
            "selling_price": Decimal(str(selling_price)),
            "is_active": is_active,
        }
        return size_id

    def item(self, item_id):
        return self.tables["inventory_items"][item_id]

    def audit_actions(self):
        return [(r["action"], r["outcome"]) for r in self.tables["audit_logs"]]

    # -- connection surface --------------------------------------------------------
    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield self
        except BaseException:
            self.tables.clear()
            self.tables.update(snapshot)
            raise

    def cursor(self):
        return FakeLedgerCursor(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeLedgerCursor:
    def __init__(self, db: FakeLedgerDB):
        self.db = db
        self.connection = db
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetchone(self):
        return copy.deepcopy(self.rows[0]) if self.rows else None

    def fetchall(self):
        return copy.deepcopy(self.rows)

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        p = list(params or [])
        db = self.db
        t = db.tables
        db.statements.append(text)
        self.rows = []

        if text.startswith("insert into audit_logs"):
            if db.fail_audit_insert:
                raise RuntimeError("audit_logs unavailable")
            t["audit_logs"].append(
                {"id": len(t["audit_logs"]) + 1, "action": p[4], "resource": p[5], "resource_id": p[6], "outcome": p[7],
                 "metadata": json.loads(p[8]) if p[8] else None}
            )
            return

        if text.startswith("update inventory_items set current_stock_ml = current_stock_ml + %s"):
            delta, _, now, item_id, _ = p
            item = t["inventory_items"].get(str(item_id))
            if item and item["current_stock_ml"] + delta >= 0:
                item["current_stock_ml"] += delta
                item["stock_quantity"] = max(0, math.floor(item["current_stock_ml"] / item["bottle_size_ml"]))
                item["updated_at"] = now
                self.rows = [dict(item)]
            return

        if text.startswith("select") and "from inventory_items where id = %s" in text:
            item = t["inventory_items"].get(str(p[0]))
            self.rows = [dict(item)] if item else []
            return

        if text.startswith("select id, name, is_active from inventory_items where id = any(%s)"):
            self.rows = [dict(t["inventory_items"][i]) for i in p[0] if i in t["inventory_items"]]
            return

        if "from inventory_sizes where id = %s and inventory_id = %s and is_active = true" in text:
            size = t["inventory_sizes"].get(str(p[0]))
            ok = size and size["inventory_id"] == p[1] and size["is_active"]
            self.rows = [dict(size)] if ok else []
            return

        if "from inventory_sizes where inventory_id = %s and is_active = true order by size_ml asc limit 1" in text:
            sizes = [s for s in t["inventory_sizes"].values() if s["inventory_id"] == p[0] and s["is_active"]]
            sizes.sort(key=lambda s: s["size_ml"])
            self.rows = [dict(sizes[0])] if sizes else []
            return

        if text.startswith("insert into inventory_sizes"):
            item_id, label, size_ml, price = p[:4]
            for s in t["inventory_sizes"].values():
                if s["inventory_id"] == item_id and s["size_ml"] == size_ml:
                    s.update({"size_label": label, "selling_price": price, "is_active": True})
                    return
            db.add_size(item_id, size_ml=size_ml, selling_price=price, label=label)
            return

        if "from inventory_sizes where inventory_id = %s and size_ml = %s" in text:
            sizes = [s for s in t["inventory_sizes"].values() if s["inventory_id"] == p[0] and s["size_ml"] == p[1]]
            self.rows = [dict(sizes[0])] if sizes else []
            return

        if text.startswith("select inventory_id from inventory_sizes where id = %s"):
            size = t["inventory_sizes"].get(str(p[0]))
            self.rows = [{"inventory_id": size["inventory_id"]}] if size else []
            return

        if text.startswith("insert into sales"):
            sale_id = str(uuid.uuid4())
            row = {
                "id": sale_id,
                "inventory_id": p[0],
                "item_name": p[1],
                "inventory_size_id": p[2],
                "size_ml": p[3],
                "quantity": p[4],
                "unit_price": p[5],
                "amount": p[6],
                "staff_name": p[7],
                "order_id": p[8],
                "is_voided": False,
                "void_reason": None,
                "voided_at": None,
                "voided_by": None,
                "created_at": p[9],
            }
            t["sales"][sale_id] = row
            self.rows = [dict(row)]
            return

        if text.startswith("insert into inventory_items"):
            keys = ["name", "brand_name", "category", "bottle_size_ml", "cost_price", "selling_price",
                    "stock_quantity", "current_stock_ml", "low_stock_alert", "created_at", "updated_at"]
            row = dict(zip(keys, p))
            row.update({"id": str(uuid.uuid4()), "is_active": True})
            t["inventory_items"][row["id"]] = row
            self.rows = [dict(row)]
            return

        if text.startswith("update inventory_items set ") and " where id = %s returning id, name, brand_name," in text:
            assignments = text.split(" set ", 1)[1].split(" where ", 1)[0]
            columns = [part.split("=")[0].strip() for part in assignments.split(",")]
            item = t["inventory_items"].get(str(p[-1]))
            if item:
                item.update(dict(zip(columns, p[:-1])))
                self.rows = [dict(item)]
            return

        if text.startswith("select 1 from "):
            table, column = text.split()[3], text.split()[5]
            rows = t[table].values() if isinstance(t[table], dict) else t[table]
            self.rows = [{"?column?": 1} for r in rows if str(r.get(column)) == str(p[0])][:1]
            return

        if text.startswith("delete from inventory_items where id = %s"):
            t["inventory_items"].pop(str(p[0]), None)
            return

        if text.startswith("insert into order_splits"):
            keys = ["order_id", "split_mode", "split_index", "party_label", "party_detail", "amount", "created_at"]
            row = dict(zip(keys, p))
            row["id"] = str(uuid.uuid4())
            t["order_splits"].append(row)
            self.rows = [dict(row)]
            return

        if text.startswith("select shift_end from shift_logs where staff_id = %s"):
            mine = sorted((s for s in t["shift_logs"] if s["staff_id"] == p[0]), key=lambda s: s["shift_end"],
                          reverse=True)
            self.rows = [{"shift_end": s["shift_end"]} for s in mine[:1]]
            return

        if text.startswith("insert into shift_logs"):
            keys = ["staff_id", "staff_email", "shift_start", "shift_end", "total_sales", "cash_expected",
                    "card_expected", "upi_expected", "complimentary_amount", "cash_counted", "difference",
                    "metadata", "created_at"]
            row = dict(zip(keys, p))
            row["id"] = str(uuid.uuid4())
            row["metadata"] = json.loads(row["metadata"])
            t["shift_logs"].append(row)
            self.rows = [dict(row)]
            return

        if text.startswith("select total_amount, payment_method from orders where created_at >= %s and created_at <= %s"):
            self.rows = [dict(o) for o in t["orders"] if p[0] <= o["created_at"] <= p[1]]
            return

        if text.startswith("select created_at from month_closures order by created_at desc limit 1"):
            closures = sorted(t["month_closures"], key=lambda c: c["created_at"], reverse=True)
            self.rows = [dict(c) for c in closures[:1]]
            return

        if "from sales where 1=1" in text or "from void_logs where 1=1" in text:
            rows = list(t["sales"].values()) if "from sales" in text else list(t["void_logs"])
            values = iter(p)
            if "staff_name = %s" in text:
                staff = next(values)
                rows = [r for r in rows if r["staff_name"] == staff]
            if "is_voided = %s" in text:
                voided = next(values)
                rows = [r for r in rows if r["is_voided"] == voided]
            if "created_at >= %s" in text:
                since = next(values)
                rows = [r for r in rows if r["created_at"] >= since]
            rows.sort(key=lambda r: r["created_at"], reverse=True)
            self.rows = [dict(r) for r in rows]
            return

        if "from sales where id = %s for update" in text:
            sale = t["sales"].get(str(p[0]))
            self.rows = [dict(sale)] if sale else []
            return

        if text.startswith("update sales set is_voided = true"):
            reason, now, by, sale_id = p
            sale = t["sales"].get(str(sale_id))
            if sale and not sale["is_voided"]:
                sale.update({"is_voided": True, "void_reason": reason, "voided_at": now, "voided_by": by})
                self.rows = [dict(sale)]
            return

        if text.startswith("insert into void_logs"):
            if "'cart_void'" in text:
                staff, reason, amount, now = p
                row = {"id": str(uuid.uuid4()), "sale_id": None, "mode": "cart_void", "staff_name": staff,
                       "void_reason": reason, "voided_amount": amount, "restored_ml": None, "created_at": now}
                self.rows = [dict(row)]
            else:
                sale_id, staff, reason, amount, restored, now = p
                row = {"id": str(uuid.uuid4()), "sale_id": sale_id, "mode": "sale_void", "staff_name": staff,
                       "void_reason": reason, "voided_amount": amount, "restored_ml": restored, "created_at": now}
            t["void_logs"].append(row)
            return

        if text.startswith("insert into tabs"):
            tab_id = str(uuid.uuid4())
            row = {
                "id": tab_id,
                "tab_code": p[0],
                "status": "open",
                "customer_name": p[1],
                "table_label": p[2],
                "total_amount": Decimal("0"),
                "opened_by": p[3],
                "opened_by_user_id": p[4],
                "opened_at": p[5],
                "closed_at": None,
                "payment_method": None,
                "order_id": None,
                "updated_at": p[6],
            }
            t["tabs"][tab_id] = row
            self.rows = [dict(row)]
            return

        if "from tabs where id = %s" in text:
            tab = t["tabs"].get(str(p[0]))
            self.rows = [dict(tab)] if tab else []
            return

        if "from tab_items where tab_id = %s" in text:
            self.rows = [dict(r) for r in t["tab_items"] if r["tab_id"] == p[0]]
            return

        if text.startswith("insert into tab_items"):
            keys = ["tab_id", "item_name", "inventory_id", "inventory_size_id", "size_label", "size_ml",
                    "quantity", "unit_price", "line_total", "added_by", "added_at"]
            row = dict(zip(keys, p))
            row["id"] = str(uuid.uuid4())
            t["tab_items"].append(row)
            self.rows = [dict(row)]
            return

        if text.startswith("update tabs set total_amount = total_amount + %s"):
            added, now, tab_id = p
            tab = t["tabs"][tab_id]
            tab["total_amount"] += added
            tab["updated_at"] = now
            self.rows = [dict(tab)]
            return

        if text.startswith("update tabs set status = 'closed'"):
            now, method, order_id, total, _, tab_id = p
            tab = t["tabs"][tab_id]
            tab.update({"status": "closed", "closed_at": now, "payment_method": method, "order_id": order_id,
                        "total_amount": total, "updated_at": now})
            self.rows = [dict(tab)]
            return

        if text.startswith("insert into orders"):
            columns = text.split("(", 1)[1].split(")", 1)[0].replace(" ", "").split(",")
            row = dict(zip(columns, p))
            row["items"] = json.loads(row["items"])
            row["id"] = str(uuid.uuid4())
            t["orders"].append(row)
            self.rows = [dict(row)]
            return

        raise AssertionError(f"unexpected SQL in test cursor: {text}")


@pytest.fixture
def ledger_db():
    return FakeLedgerDB()


@pytest.fixture
def owner():
    return {"actor_id": "11111111-1111-1111-1111-111111111111", "email": "owner@bar.test", "role": "owner",
            "request_id": "req-1"}


@pytest.fixture
def staff():
    return {"actor_id": "22222222-2222-2222-2222-222222222222", "email": "staff@bar.test", "role": "staff",
            "request_id": "req-2"}
