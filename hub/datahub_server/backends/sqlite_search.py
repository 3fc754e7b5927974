"""
SQLite FTS5 implementation of the tokenized search backend.

Every index shares one database file; rows are partitioned by index name.
A record is kept twice: its typed fields as JSON in the documents table,
and its tokenizable text in the fts_documents virtual table, split into
the scope column (ancestor doc-ids) and a content column.

Invariants:
    - (index_name, doc_id) is unique; add replaces an existing record
    - documents and fts_documents are written in the same transaction
    - Query text is passed to FTS5 unchanged
    - SQLite failures are raised as BackendError

How to change safely:
    - Tokenizer changes require rebuilding fts_documents
    - The scope column name is part of the query syntax clients see

Table schema:
    documents:
        - index_name TEXT
        - doc_id TEXT
        - fields_json TEXT
        - PRIMARY KEY (index_name, doc_id)

    fts_documents (FTS5):
        - index_name UNINDEXED
        - doc_id UNINDEXED
        - INTERNAL__QUERY__FIELD__path
        - content
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ._sqlite import FTS_COLUMNS, FTS_TOKENIZE, backend_errors, connect, is_query_error, record_columns
from .base import BackendError, FieldType, ScoredRecord, SearchField, SearchRecord

logger = logging.getLogger(__name__)


def fields_to_json(fields: list[SearchField]) -> str:
    return json.dumps([{"name": f.name, "type": f.type.value, "value": f.value} for f in fields])


def fields_from_json(data: str) -> list[SearchField]:
    return [SearchField(f["name"], FieldType(f["type"]), f["value"]) for f in json.loads(data)]


class SqliteSearchBackend:
    """Full-text search backend on SQLite FTS5.

    Example:
        >>> backend = SqliteSearchBackend("/var/lib/datahub")
        >>> await backend.initialize()
        >>> await backend.add("ROOT", record)
        >>> hits = await backend.search("ROOT", 'content : "hello"')
    """

    def __init__(
        self,
        data_dir: str,
        db_name: str = "search.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = Path(data_dir) / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        with connect(self.db_path, self.wal_mode, self.busy_timeout_ms) as conn:
            yield conn

    async def initialize(self) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript(f"""
                    CREATE TABLE IF NOT EXISTS documents (
                        index_name TEXT NOT NULL,
                        doc_id TEXT NOT NULL,
                        fields_json TEXT NOT NULL DEFAULT '[]',
                        PRIMARY KEY (index_name, doc_id)
                    );

                    CREATE VIRTUAL TABLE IF NOT EXISTS fts_documents USING fts5(
                        index_name UNINDEXED,
                        doc_id UNINDEXED,
                        {FTS_COLUMNS},
                        tokenize="{FTS_TOKENIZE}"
                    );
                """)
        logger.info(f"Initialized search backend: {self.db_path}")

    async def add(self, index_name: str, record: SearchRecord) -> None:
        scope, content = record_columns(record)

        async with self._lock:
            with backend_errors(f"Indexing {record.doc_id} in {index_name}"), self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    self._remove(conn, index_name, [record.doc_id])
                    conn.execute(
                        "INSERT INTO documents (index_name, doc_id, fields_json) VALUES (?, ?, ?)",
                        (index_name, record.doc_id, fields_to_json(record.fields)),
                    )
                    conn.execute(
                        f"""
                        INSERT INTO fts_documents (index_name, doc_id, {FTS_COLUMNS})
                        VALUES (?, ?, ?, ?)
                        """,
                        (index_name, record.doc_id, scope, content),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug("Indexed record", extra={"index": index_name, "doc_id": record.doc_id})

    async def remove(self, index_name: str, *doc_ids: str) -> None:
        if not doc_ids:
            return

        async with self._lock:
            with backend_errors(f"Removing from {index_name}"), self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    self._remove(conn, index_name, list(doc_ids))
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug("Removed records", extra={"index": index_name, "count": len(doc_ids)})

    def _remove(self, conn: sqlite3.Connection, index_name: str, doc_ids: list[str]) -> None:
        rows = [(index_name, doc_id) for doc_id in doc_ids]
        conn.executemany("DELETE FROM documents WHERE index_name = ? AND doc_id = ?", rows)
        conn.executemany("DELETE FROM fts_documents WHERE index_name = ? AND doc_id = ?", rows)

    async def get(self, index_name: str, doc_id: str) -> SearchRecord | None:
        with backend_errors(f"Reading {doc_id} from {index_name}"), self._get_connection() as conn:
            row = conn.execute(
                "SELECT fields_json FROM documents WHERE index_name = ? AND doc_id = ?",
                (index_name, doc_id),
            ).fetchone()
        if row is None:
            return None
        return SearchRecord(doc_id, fields_from_json(row["fields_json"]))

    async def search(
        self,
        index_name: str,
        query: str,
        offset: int = 0,
        limit: int = 10,
    ) -> list[ScoredRecord]:
        sql = """
            SELECT d.doc_id, d.fields_json, f.rank
            FROM fts_documents f
            JOIN documents d ON d.index_name = f.index_name AND d.doc_id = f.doc_id
            WHERE fts_documents MATCH ? AND f.index_name = ?
            ORDER BY f.rank LIMIT ? OFFSET ?
        """
        params: list[Any] = [query, index_name, limit, offset]

        with backend_errors(f"Searching {index_name}"):
            try:
                with self._get_connection() as conn:
                    rows = conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                if is_query_error(e):
                    raise BackendError(f"Invalid search query: {e}") from e
                raise

        return [
            ScoredRecord(SearchRecord(row["doc_id"], fields_from_json(row["fields_json"])), row["rank"])
            for row in rows
        ]

    async def list_ids(
        self,
        index_name: str,
        start_after: str | None = None,
        limit: int = 100,
    ) -> list[str]:
        sql = "SELECT doc_id FROM documents WHERE index_name = ?"
        params: list[Any] = [index_name]
        if start_after is not None:
            sql += " AND doc_id > ?"
            params.append(start_after)
        sql += " ORDER BY doc_id LIMIT ?"
        params.append(limit)

        with backend_errors(f"Listing {index_name}"), self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row["doc_id"] for row in rows]
