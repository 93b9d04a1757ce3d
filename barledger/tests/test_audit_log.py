from contextlib import nullcontext
from datetime import datetime, timedelta, timezone

import pytest

from barledger.app import audit_log
from barledger.app.audit_log import decode_cursor, encode_cursor, list_audit_events, write_audit_event
from barledger.app.clock import TimeZoneOffset
from barledger.app.errors import ValidationError


BASE = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class _AuditCursor:
    def __init__(self, rows=None):
        self.connection = self
        self.rows = rows or []
        self.executed = []
        self.inserted = []

    def transaction(self):
        return nullcontext()

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, list(params or [])))
        if text.startswith("insert into audit_logs"):
            self.inserted.append(list(params))

    def fetchall(self):
        limit = self.executed[-1][1][-1]
        return self.rows[:limit]


def _events(n):
    return [
        {"id": n - i, "action": "sale.create", "created_at": BASE - timedelta(minutes=i)}
        for i in range(n)
    ]


def test_cursor_round_trips_and_rejects_garbage():
    token = encode_cursor(BASE, 42)
    assert "=" not in token
    assert decode_cursor(token) == (BASE, 42)

    for bad in ("not-base64!", encode_cursor(BASE, 1)[:-3], "eyJmb28iOjF9"):
        with pytest.raises(ValidationError):
            decode_cursor(bad)


def test_list_pages_with_limit_plus_one():
    cur = _AuditCursor(_events(3))

    page = list_audit_events(cur, limit=2)

    assert [r["id"] for r in page["audit_logs"]] == [3, 2]
    assert page["page"]["has_more"] is True
    assert decode_cursor(page["page"]["next_cursor"]) == (BASE - timedelta(minutes=1), 2)
    sql, params = cur.executed[-1]
    assert "order by created_at desc, id desc limit %s" in sql
    assert params[-1] == 3


def test_last_page_has_no_cursor():
    cur = _AuditCursor(_events(2))

    page = list_audit_events(cur, limit=5)

    assert page["page"] == {"limit": 5, "next_cursor": None, "has_more": False}


def test_filters_and_keyset_predicate():
    cur = _AuditCursor([])
    token = encode_cursor(BASE, 7)

    list_audit_events(
        cur, actor=" owner ", action="void.create", date_from="2026-03-01", date_to="2026-03-10", cursor=token
    )

    sql, params = cur.executed[-1]
    assert "actor_email ilike %s" in sql
    assert "action = %s" in sql
    assert "(created_at, id) < (%s, %s)" in sql
    assert params[0] == "%owner%"
    assert params[1] == "void.create"
    assert params[3] == datetime(2026, 3, 11, tzinfo=timezone.utc)
    assert params[4:6] == [BASE, 7]


def test_date_filters_follow_caller_local_day():
    cur = _AuditCursor([])

    list_audit_events(cur, date_from="2026-03-10", date_to="2026-03-10", tz=TimeZoneOffset(-330))

    _, params = cur.executed[-1]
    # IST midnight is 18:30 UTC on the previous calendar day.
    assert params[:2] == [
        datetime(2026, 3, 9, 18, 30, tzinfo=timezone.utc),
        datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc),
    ]
    assert params[-1] == 51


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 0},
        {"limit": 201},
        {"date_from": "10/03/2026"},
        {"date_from": "2026-03-10", "date_to": "2026-03-01"},
        {"cursor": "%%%"},
    ],
)
def test_list_rejects_bad_queries(kwargs):
    with pytest.raises(ValidationError):
        list_audit_events(_AuditCursor([]), **kwargs)


def test_write_event_persists_json_columns(owner):
    cur = _AuditCursor()

    write_audit_event(cur, owner, "inventory.update", "inventory_items", "abc", before={"a": 1}, after={"a": 2})

    params = cur.inserted[0]
    assert params[0] == "req-1"
    assert params[4:8] == ["inventory.update", "inventory_items", "abc", "success"]
    assert params[8] is None
    assert params[9] == '{"a": 1}'
    assert params[10] == '{"a": 2}'


def test_write_event_can_skip_database(monkeypatch, owner):
    monkeypatch.setattr(audit_log.settings, "audit_log_to_db", False)
    cur = _AuditCursor()

    write_audit_event(cur, owner, "month.close", "month_closures", "x")

    assert cur.inserted == []
