from __future__ import annotations

from typing import Annotated, Literal, Optional
from uuid import UUID

from pydantic import BeforeValidator

from .errors import ValidationError


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_title_str(v):
    if v is None:
        return v
    return str(v).strip().title()


# Canonical codes mirror the CHECK constraints in `barledger/db/migrations/001_init.sql`.
PaymentMethod = Annotated[Literal["CASH", "CARD", "UPI", "COMPLIMENTARY"], BeforeValidator(_to_upper_str)]
Category = Annotated[Literal["Beer", "Whisky", "Rum", "Vodka", "Food"], BeforeValidator(_to_title_str)]
TabStatus = Annotated[Literal["open", "closed", "cancelled"], BeforeValidator(_to_lower_str)]
ReportRange = Annotated[Literal["today", "week", "month"], BeforeValidator(_to_lower_str)]

PAYMENT_METHODS = ("CASH", "CARD", "UPI", "COMPLIMENTARY")
FOOD_CATEGORY = "Food"


def parse_uuid(value: Optional[str], field_name: str) -> str:
    raw = (value or "").strip()
    try:
        return str(UUID(raw))
    except Exception:
        raise ValidationError(f"{field_name} must be a valid UUID")


def parse_uuid_optional(value: Optional[str], field_name: str) -> Optional[str]:
    if not (value or "").strip():
        return None
    return parse_uuid(value, field_name)
