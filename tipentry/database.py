"""
Database connection helpers.

Confirmed tip entries are stored in Postgres via psycopg. The parse graph is
stateless, so there is no checkpointer; this module only hands out
connections.

Usage:
    from tipentry.database import ensure_db_ready, get_connection
    ensure_db_ready()  # fails fast when Postgres is unreachable
    with get_connection() as conn:
        ...
"""

from __future__ import annotations

import os

from dotenv import load_dotenv
from psycopg import connect
from psycopg.errors import OperationalError


def _load_env() -> None:
    load_dotenv(override=False)


def get_database_url() -> str:
    _load_env()
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set in environment/.env")
    return url


def is_database_configured() -> bool:
    _load_env()
    return bool(os.getenv("DATABASE_URL"))


def get_connection(**kwargs):
    """Return a psycopg connection with server-side prepared statements off.

    Transaction-mode poolers multiplex backends, so a statement prepared on
    one is not visible on the next.

    All keyword arguments are forwarded to psycopg.connect().
    """
    dsn = get_database_url()
    return connect(dsn, prepare_threshold=None, **kwargs)


def ensure_db_ready(timeout_seconds: int = 10) -> None:
    """Round-trip a SELECT 1 so an unreachable server fails before any write.

    Raises RuntimeError when DATABASE_URL is missing or the server cannot be
    reached within timeout_seconds.
    """
    try:
        with get_connection(connect_timeout=timeout_seconds, autocommit=True) as conn:
            conn.execute("SELECT 1").fetchone()
    except OperationalError as e:
        raise RuntimeError(f"Postgres is not reachable: {e}") from e
