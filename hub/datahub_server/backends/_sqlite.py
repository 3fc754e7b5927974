"""
Shared SQLite plumbing for the DataHub backends.

Connections are opened per operation and closed afterwards; concurrent
access is handled by SQLite in WAL mode with a busy timeout.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .base import SCOPE_FIELD, BackendError, SearchRecord

# Doc-ids use '_' and '~' as ordinary characters; keep them inside tokens.
FTS_TOKENIZE = "unicode61 tokenchars '_~'"

FTS_COLUMNS = f"{SCOPE_FIELD}, content"


@contextmanager
def connect(
    db_path: Path,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Iterator[sqlite3.Connection]:
    """Open a configured connection to a database file.

    Yields:
        SQLite connection in autocommit mode
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        timeout=busy_timeout_ms / 1000.0,
        isolation_level=None,  # Autocommit by default, explicit transactions
    )
    conn.row_factory = sqlite3.Row

    try:
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
        if wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

        yield conn
    finally:
        conn.close()


def record_columns(record: SearchRecord) -> tuple[str, str]:
    """Split a record into its FTS scope text and content text."""
    scope = ""
    content: list[str] = []
    for f in record.fields:
        if f.name == SCOPE_FIELD:
            scope = f.text()
        else:
            content.append(f.text())
    return scope, "\n".join(content)


def is_query_error(error: sqlite3.OperationalError) -> bool:
    """Whether an OperationalError was caused by the MATCH expression."""
    message = str(error).lower()
    return any(
        marker in message
        for marker in ("fts5", "no such column", "malformed match", "unterminated string")
    )


@contextmanager
def backend_errors(action: str) -> Iterator[None]:
    """Raise SQLite failures inside the block as BackendError."""
    try:
        yield
    except sqlite3.Error as e:
        raise BackendError(f"{action} failed: {e}") from e
