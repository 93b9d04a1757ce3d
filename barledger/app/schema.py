from dataclasses import dataclass
from typing import Optional

from .jsonlog import json_log


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional columns that older databases may not have yet."""

    orders_created_by: bool = False


_capabilities: Optional[SchemaCapabilities] = None


def resolve_schema_capabilities(cur) -> SchemaCapabilities:
    cur.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema()
          AND table_name = 'orders'
          AND column_name = 'created_by'
        """
    )
    caps = SchemaCapabilities(orders_created_by=bool(cur.fetchone()))
    json_log("info", "schema_capabilities", orders_created_by=caps.orders_created_by)
    return caps


def set_schema_capabilities(caps: SchemaCapabilities) -> None:
    global _capabilities
    _capabilities = caps


def get_schema_capabilities() -> SchemaCapabilities:
    # Before startup has inspected the database, assume the oldest layout.
    return _capabilities or SchemaCapabilities()
