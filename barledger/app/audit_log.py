"""
Append-only audit trail.

Every mutating ledger operation reports here after it succeeds (and, for tab closes, after
a partial failure). Events are always emitted as structured JSON log lines; persistence to
`audit_logs` happens inside a savepoint so that a failing insert is logged and swallowed
instead of aborting the business transaction that produced it.
"""
import base64
import json
from datetime import date, datetime, timezone
from typing import Optional

from .clock import TimeZoneOffset, local_day_range
from .config import settings
from .errors import ValidationError
from .jsonlog import json_log

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def _actor_field(actor: Optional[dict], key: str):
    if not actor:
        return None
    v = actor.get(key)
    return str(v) if v is not None else None


def _jsonb(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def write_audit_event(
    cur,
    actor: Optional[dict],
    action: str,
    resource: str,
    resource_id=None,
    *,
    outcome: str = "success",
    before=None,
    after=None,
    metadata: Optional[dict] = None,
) -> None:
    event = {
        "request_id": _actor_field(actor, "request_id"),
        "actor_id": _actor_field(actor, "actor_id"),
        "actor_email": _actor_field(actor, "email"),
        "actor_role": _actor_field(actor, "role"),
        "action": action,
        "resource": resource,
        "resource_id": str(resource_id) if resource_id is not None else None,
        "outcome": outcome,
        "metadata": metadata or None,
    }
    json_log("info", "audit_event", **event)

    if not settings.audit_log_to_db:
        return

    try:
        with cur.connection.transaction():
            cur.execute(
                """
                INSERT INTO audit_logs
                  (request_id, actor_id, actor_email, actor_role, action, resource, resource_id,
                   outcome, metadata, before_state, after_state)
                VALUES
                  (%s, %s, %s, %s, %s, %s, %s,
                   %s, %s::jsonb, %s::jsonb, %s::jsonb)
                """,
                (
                    event["request_id"],
                    event["actor_id"],
                    event["actor_email"],
                    event["actor_role"],
                    action,
                    resource,
                    event["resource_id"],
                    outcome,
                    _jsonb(metadata),
                    _jsonb(before),
                    _jsonb(after),
                ),
            )
    except Exception as exc:
        json_log(
            "warning",
            "audit_event_persist_failed",
            request_id=event["request_id"],
            action=action,
            error=str(exc),
        )


def encode_cursor(created_at: datetime, event_id: int) -> str:
    raw = json.dumps({"created_at": created_at.isoformat(), "id": int(event_id)}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(raw: str) -> tuple[datetime, int]:
    try:
        padded = raw + "=" * (-len(raw) % 4)
        parsed = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        created_at = datetime.fromisoformat(str(parsed["created_at"]))
        event_id = parsed["id"]
    except Exception:
        raise ValidationError("cursor is invalid")
    if not isinstance(event_id, int) or isinstance(event_id, bool) or event_id <= 0:
        raise ValidationError("cursor is invalid")
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, event_id


def _parse_day(value: Optional[str], field_name: str) -> Optional[date]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{field_name} must be YYYY-MM-DD")


def list_audit_events(
    cur,
    *,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
    tz: TimeZoneOffset = TimeZoneOffset(),
) -> dict:
    """Filter days are the caller's local days, expressed through `tz`."""
    if limit < 1 or limit > MAX_LIMIT:
        raise ValidationError(f"limit must be an integer between 1 and {MAX_LIMIT}")
    start_day = _parse_day(date_from, "date_from")
    end_day = _parse_day(date_to, "date_to")
    if start_day and end_day and start_day > end_day:
        raise ValidationError("date_from must be before or equal to date_to")
    after = decode_cursor(cursor.strip()) if (cursor or "").strip() else None

    sql = """
        SELECT id, request_id, actor_id, actor_email, actor_role,
               action, resource, resource_id, outcome,
               metadata, before_state, after_state, created_at
        FROM audit_logs
        WHERE 1=1
    """
    params: list = []
    actor = (actor or "").strip()
    action = (action or "").strip()
    if actor:
        sql += " AND actor_email ILIKE %s"
        params.append(f"%{actor}%")
    if action:
        sql += " AND action = %s"
        params.append(action)
    if start_day:
        sql += " AND created_at >= %s"
        params.append(local_day_range(tz, start_day).start)
    if end_day:
        sql += " AND created_at < %s"
        params.append(local_day_range(tz, end_day).end)
    if after:
        # Keyset: strictly older than the last row of the previous page, ties broken on id.
        sql += " AND (created_at, id) < (%s, %s)"
        params.extend([after[0], after[1]])
    sql += " ORDER BY created_at DESC, id DESC LIMIT %s"
    params.append(limit + 1)

    cur.execute(sql, params)
    rows = cur.fetchall()
    has_more = len(rows) > limit
    page = rows[:limit]
    next_cursor = None
    if has_more and page:
        last = page[-1]
        next_cursor = encode_cursor(last["created_at"], last["id"])
    return {
        "audit_logs": page,
        "page": {"limit": limit, "next_cursor": next_cursor, "has_more": has_more},
    }
