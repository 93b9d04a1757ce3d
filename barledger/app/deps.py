from fastapi import Cookie, Depends, Header, HTTPException, Query, Request
from .clock import Clock, SystemClock, TimeZoneOffset
from .db import get_conn
from .schema import SchemaCapabilities, get_schema_capabilities
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "barledger_session"
ROLES = ("owner", "staff")


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, u.role, u.is_active AS user_active,
                       s.expires_at, s.is_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "role": row["role"],
            }


def get_actor(request: Request, session=Depends(get_session)) -> dict:
    """Who is acting, in the shape the ledger uses for attribution and audit rows."""
    return {
        "actor_id": str(session["user_id"]),
        "email": session["email"],
        "role": session["role"],
        "request_id": getattr(request.state, "request_id", None),
    }


def require_role(*roles: str):
    allowed = set(roles or ROLES)

    def _dep(actor=Depends(get_actor)):
        if actor.get("role") not in allowed:
            raise HTTPException(status_code=403, detail="permission denied")
        return actor

    return _dep


def get_clock() -> Clock:
    return SystemClock()


def get_tz_offset(tz_offset: Optional[str] = Query(None)) -> TimeZoneOffset:
    return TimeZoneOffset.parse(tz_offset)


def get_capabilities() -> SchemaCapabilities:
    return get_schema_capabilities()
