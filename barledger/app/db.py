"""
Postgres access for the ledger.

Every session runs in UTC so `timestamptz` values round-trip unchanged; local business days
are computed in Python from the caller's offset, never by the server's zone.
"""
from contextlib import contextmanager

from psycopg.rows import dict_row
# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .jsonlog import json_log

APPLICATION_NAME = "barledger"


def connection_kwargs(cfg=settings) -> dict:
    options = ["-c timezone=UTC"]
    if cfg.db_statement_timeout_ms > 0:
        options.append(f"-c statement_timeout={cfg.db_statement_timeout_ms}")
    return {
        "row_factory": dict_row,
        "application_name": APPLICATION_NAME,
        "options": " ".join(options),
    }


def build_pool(cfg=settings) -> ConnectionPool:
    # open=False: importing the app for tests never touches the network.
    max_size = max(cfg.db_pool_max_size, 1)
    return ConnectionPool(
        conninfo=cfg.db_url,
        min_size=min(cfg.db_pool_min_size, max_size),
        max_size=max_size,
        kwargs=connection_kwargs(cfg),
        open=False,
        name=APPLICATION_NAME,
    )


_pool = build_pool()


def open_pool() -> None:
    _pool.open()


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # Commit on success, rollback on exception, then hand the connection back.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def pool_stats(pool: ConnectionPool = None) -> dict:
    pool = pool if pool is not None else _pool
    stats = pool.get_stats()
    return {
        "size": stats.get("pool_size", 0),
        "available": stats.get("pool_available", 0),
        "waiting": stats.get("requests_waiting", 0),
        "max_size": pool.max_size,
    }


def close_pool(pool: ConnectionPool = None) -> None:
    # Shutdown keeps going even if the pool is already broken.
    try:
        (pool if pool is not None else _pool).close()
    except Exception as exc:
        json_log("warning", "db.pool_close_failed", error=str(exc))
