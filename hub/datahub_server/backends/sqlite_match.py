"""
SQLite implementation of the persistent query (match) backend.

Subscriptions are stored per topic. Matching a record evaluates every
active subscription's query against a one-row FTS5 table built in memory
for that record, using the same tokenizer and columns as the search
backend, so a query matches a record here exactly when a search for it
would return that record.

Invariants:
    - (topic, sub_id) is unique; subscribe replaces an existing entry
    - A subscription with expires_at = 0 never expires
    - An expired subscription never matches
    - Queries are validated when subscribed
    - SQLite failures are raised as BackendError

How to change safely:
    - Keep the scratch table definition in step with the search backend
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ._sqlite import FTS_COLUMNS, FTS_TOKENIZE, backend_errors, connect, is_query_error, record_columns
from .base import BackendError, MatchFieldType, MatchHandler, SearchRecord, Subscription

logger = logging.getLogger(__name__)

_SCRATCH_SCHEMA = f'CREATE VIRTUAL TABLE scratch USING fts5({FTS_COLUMNS}, tokenize="{FTS_TOKENIZE}")'


@contextmanager
def _scratch(record: SearchRecord | None = None) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(":memory:", isolation_level=None)
    try:
        conn.execute(_SCRATCH_SCHEMA)
        if record is not None:
            conn.execute(f"INSERT INTO scratch ({FTS_COLUMNS}) VALUES (?, ?)", record_columns(record))
        yield conn
    finally:
        conn.close()


class SqliteMatchBackend:
    """Subscription registry that matches records against stored queries.

    Example:
        >>> backend = SqliteMatchBackend("/var/lib/datahub")
        >>> await backend.initialize()
        >>> await backend.subscribe("ROOT", "ep-->8--ROOT-->8--q", 60, "q", {})
        >>> ids = await backend.match("ROOT", record)
    """

    def __init__(
        self,
        data_dir: str,
        db_name: str = "subscriptions.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = Path(data_dir) / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._handler: MatchHandler | None = None
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        with connect(self.db_path, self.wal_mode, self.busy_timeout_ms) as conn:
            yield conn

    async def initialize(self) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS subscriptions (
                        topic TEXT NOT NULL,
                        sub_id TEXT NOT NULL,
                        query TEXT NOT NULL,
                        schema_json TEXT NOT NULL DEFAULT '{}',
                        expires_at INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (topic, sub_id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_subscriptions_expiry
                        ON subscriptions(topic, expires_at);
                """)
        logger.info(f"Initialized match backend: {self.db_path}")

    def set_match_handler(self, handler: MatchHandler | None) -> None:
        self._handler = handler

    async def subscribe(
        self,
        topic: str,
        sub_id: str,
        duration: int,
        query: str,
        schema: dict[str, MatchFieldType],
    ) -> None:
        self._validate_query(query)
        expires_at = 0 if duration == 0 else int(time.time()) + duration
        schema_json = json.dumps({name: t.value for name, t in schema.items()})

        async with self._lock:
            with backend_errors(f"Subscribing {sub_id}"), self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO subscriptions (topic, sub_id, query, schema_json, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(topic, sub_id) DO UPDATE SET
                        query = excluded.query,
                        schema_json = excluded.schema_json,
                        expires_at = excluded.expires_at
                    """,
                    (topic, sub_id, query, schema_json, expires_at),
                )

        logger.debug("Subscribed", extra={"topic": topic, "sub_id": sub_id, "expires_at": expires_at})

    def _validate_query(self, query: str) -> None:
        with backend_errors("Validating query"), _scratch() as conn:
            try:
                conn.execute("SELECT 1 FROM scratch WHERE scratch MATCH ?", (query,)).fetchall()
            except sqlite3.OperationalError as e:
                if is_query_error(e):
                    raise BackendError(f"Invalid subscription query: {e}") from e
                raise

    async def unsubscribe(self, topic: str, sub_id: str) -> None:
        async with self._lock:
            with backend_errors(f"Unsubscribing {sub_id}"), self._get_connection() as conn:
                conn.execute(
                    "DELETE FROM subscriptions WHERE topic = ? AND sub_id = ?",
                    (topic, sub_id),
                )
        logger.debug("Unsubscribed", extra={"topic": topic, "sub_id": sub_id})

    async def list_subscriptions(
        self,
        topic: str,
        start_id: str = "",
        limit: int = 100,
        expires_before: int = 0,
    ) -> list[Subscription]:
        sql = "SELECT * FROM subscriptions WHERE topic = ? AND sub_id >= ?"
        params: list[Any] = [topic, start_id]
        if expires_before > 0:
            sql += " AND expires_at > 0 AND expires_at < ?"
            params.append(expires_before)
        sql += " ORDER BY sub_id LIMIT ?"
        params.append(limit)

        with backend_errors(f"Listing subscriptions of {topic}"), self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            Subscription(
                topic=row["topic"],
                sub_id=row["sub_id"],
                query=row["query"],
                expires_at=row["expires_at"],
                schema={k: MatchFieldType(v) for k, v in json.loads(row["schema_json"]).items()},
            )
            for row in rows
        ]

    async def match(self, topic: str, record: SearchRecord) -> list[str]:
        now = int(time.time())
        with backend_errors(f"Matching in {topic}"), self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT sub_id, query FROM subscriptions
                WHERE topic = ? AND (expires_at = 0 OR expires_at > ?)
                ORDER BY sub_id
                """,
                (topic, now),
            ).fetchall()

        matched: list[str] = []
        with _scratch(record) as scratch:
            for row in rows:
                try:
                    hit = scratch.execute(
                        "SELECT 1 FROM scratch WHERE scratch MATCH ?", (row["query"],)
                    ).fetchone()
                except sqlite3.OperationalError as e:
                    logger.warning(f"Skipping unmatchable subscription {row['sub_id']!r}: {e}")
                    continue
                if hit is not None:
                    matched.append(row["sub_id"])

        if matched and self._handler is not None:
            result = self._handler(topic, matched, record)
            if inspect.isawaitable(result):
                await result

        return matched
