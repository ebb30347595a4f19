"""
Persistence for user-confirmed tip entries.

Nothing produced by the parse graph or the vision extractor is written here
directly: the UI shows the result, the user confirms or edits it, and only
then does a ConfirmedTipEntry arrive. The bounds check is run again before
the insert so the output validator stays the single gate for what reaches
the tip_entries table.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from psycopg.errors import IntegrityError, OperationalError
from psycopg.types.json import Jsonb

from tipentry.database import ensure_db_ready, get_connection
from tipentry.graph.state import AuditEvent, ConfirmedTipEntry
from tipentry.security import mask_amount, validate_parsed_ai_output

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when tip entry persistence fails."""


class EntryRejected(ValueError):
    """Raised when a confirmed entry fails the bounds check."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tip_entries (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    entry_date DATE NOT NULL,
    tips_earned NUMERIC(10, 2) NOT NULL CHECK (tips_earned >= 0),
    hours_worked NUMERIC(5, 2) NOT NULL CHECK (hours_worked > 0 AND hours_worked <= 24),
    shift_type TEXT,
    notes TEXT,
    job_id TEXT,
    position_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS tip_entries_user_date_idx ON tip_entries (user_id, entry_date);
CREATE TABLE IF NOT EXISTS tip_entry_audit_logs (
    entry_id UUID NOT NULL REFERENCES tip_entries (id) ON DELETE CASCADE,
    ts TIMESTAMPTZ NOT NULL,
    node TEXT NOT NULL,
    message TEXT NOT NULL,
    details JSONB
);
"""


def ensure_schema() -> None:
    """Check connectivity, then create the tip entry tables if they do not exist."""
    try:
        ensure_db_ready()
        with get_connection(autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
        logger.info("tip_entries schema ready")
    except (OperationalError, RuntimeError) as e:
        logger.error("Database error creating schema: %s", e)
        raise PersistenceError(f"Failed to create schema: {e}")


def check_entry(entry: ConfirmedTipEntry) -> None:
    """Run the output validator over a confirmed entry; raise EntryRejected."""
    verdict = validate_parsed_ai_output(
        {"tips_earned": entry.tips_earned, "hours_worked": entry.hours_worked}
    )
    if not verdict.valid:
        raise EntryRejected(verdict.errors)


def save_tip_entry(
    entry: ConfirmedTipEntry,
    audit_log: Optional[List[AuditEvent]] = None,
) -> str:
    """
    Insert a confirmed tip entry and return its generated id.

    Args:
        entry: The entry the user reviewed and confirmed
        audit_log: Optional pipeline events that produced the entry

    Raises:
        EntryRejected: If the amounts fail the bounds check
        PersistenceError: If the database operation fails
    """
    check_entry(entry)
    entry_id = str(uuid4())

    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO tip_entries (
                        id, user_id, entry_date, tips_earned, hours_worked,
                        shift_type, notes, job_id, position_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    entry_id,
                    entry.user_id,
                    entry.entry_date,
                    Decimal(str(entry.tips_earned)),
                    Decimal(str(entry.hours_worked)),
                    entry.shift_type.value if entry.shift_type else None,
                    entry.notes,
                    entry.job_id,
                    entry.position_id,
                ))

                for event in audit_log or []:
                    cur.execute("""
                        INSERT INTO tip_entry_audit_logs (entry_id, ts, node, message, details)
                        VALUES (%s, %s, %s, %s, %s)
                    """, (
                        entry_id,
                        event.timestamp,
                        event.node,
                        event.message,
                        Jsonb(_jsonable(event.details)) if event.details else None,
                    ))

                conn.commit()
        logger.info(
            "Saved tip entry %s for %s: %s over %sh",
            entry_id,
            entry.entry_date,
            mask_amount(entry.tips_earned),
            entry.hours_worked,
        )
        return entry_id

    except (OperationalError, IntegrityError) as e:
        logger.error("Database error saving tip entry: %s", e)
        raise PersistenceError(f"Failed to save tip entry: {e}")
    except Exception as e:
        logger.error("Unexpected error saving tip entry: %s", e)
        raise PersistenceError(f"Unexpected error saving tip entry: {e}")


def _jsonable(details: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v if isinstance(v, (str, int, float, bool, type(None))) else str(v) for k, v in details.items()}
