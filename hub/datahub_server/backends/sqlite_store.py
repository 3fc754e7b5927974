"""
SQLite implementation of the keyed entity store.

All entities live in one database file. An entity row is addressed by its
key token; its properties are stored as tagged JSON (see
encode_properties), so nested EmbeddedEntity values, Key references and
explicit None values survive a round trip.

Invariants:
    - Serial ids come from a single monotonic sequence shared by all kinds
    - An id is never reused, even after the entity is deleted
    - Rows keep their insertion position when updated in place

How to change safely:
    - Schema changes must keep the key_token column stable
    - Use transactions for all write operations

Table schema:
    entities:
        - entity_id INTEGER PRIMARY KEY AUTOINCREMENT (insertion order)
        - key_token TEXT UNIQUE
        - kind TEXT
        - properties_json TEXT
        - updated_at INTEGER (Unix ms)

    id_sequence:
        - name TEXT PRIMARY KEY
        - value INTEGER
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ._sqlite import connect
from .base import (
    KEY_TAG,
    Entity,
    EntityNotFoundError,
    Key,
    decode_properties,
    encode_properties,
)

logger = logging.getLogger(__name__)

_SEQUENCE = "entity"


class SqliteKeyedStore:
    """Keyed entity store on a single SQLite file.

    Example:
        >>> store = SqliteKeyedStore("/var/lib/datahub")
        >>> await store.initialize()
        >>> key = await store.put(Entity(Key("path", parent=root_key), {"a": 1}))
    """

    def __init__(
        self,
        data_dir: str,
        db_name: str = "objects.db",
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
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS entities (
                        entity_id INTEGER PRIMARY KEY AUTOINCREMENT,
                        key_token TEXT NOT NULL UNIQUE,
                        kind TEXT NOT NULL,
                        properties_json TEXT NOT NULL DEFAULT '{}',
                        updated_at INTEGER NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_entities_kind ON entities(kind, entity_id);

                    CREATE TABLE IF NOT EXISTS id_sequence (
                        name TEXT PRIMARY KEY,
                        value INTEGER NOT NULL
                    );
                """)
                conn.execute(
                    "INSERT OR IGNORE INTO id_sequence (name, value) VALUES (?, 0)",
                    (_SEQUENCE,),
                )
        logger.info(f"Initialized keyed store: {self.db_path}")

    async def get(self, key: Key) -> Entity:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT properties_json FROM entities WHERE key_token = ?",
                (key.to_token(),),
            ).fetchone()
        if row is None:
            raise EntityNotFoundError(key)
        return Entity(key, decode_properties(row["properties_json"]))

    async def exists(self, key: Key) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM entities WHERE key_token = ?",
                (key.to_token(),),
            ).fetchone()
        return row is not None

    async def put(self, entity: Entity) -> Key:
        properties_json = encode_properties(entity.properties)
        now = int(time.time() * 1000)

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    key = entity.key
                    if not key.is_complete:
                        key = key.with_id(self._next_id(conn))
                    conn.execute(
                        """
                        INSERT INTO entities (key_token, kind, properties_json, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(key_token) DO UPDATE SET
                            properties_json = excluded.properties_json,
                            updated_at = excluded.updated_at
                        """,
                        (key.to_token(), key.kind, properties_json, now),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug("Put entity", extra={"key": key.to_token()})
        return key

    def _next_id(self, conn: sqlite3.Connection) -> int:
        conn.execute(
            "UPDATE id_sequence SET value = value + 1 WHERE name = ?",
            (_SEQUENCE,),
        )
        row = conn.execute(
            "SELECT value FROM id_sequence WHERE name = ?",
            (_SEQUENCE,),
        ).fetchone()
        return int(row["value"])

    async def delete(self, *keys: Key) -> None:
        if not keys:
            return
        tokens = [(key.to_token(),) for key in keys]

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.executemany("DELETE FROM entities WHERE key_token = ?", tokens)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug("Deleted entities", extra={"count": len(tokens)})

    async def query(
        self,
        kind: str | None,
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Entity]:
        sql = "SELECT key_token, properties_json FROM entities WHERE 1 = 1"
        params: list[Any] = []
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind)

        for name, value in (filters or {}).items():
            if '"' in name:
                raise ValueError(f"Unsupported property name in filter: {name}")
            if isinstance(value, Key):
                sql += " AND json_extract(properties_json, ?) = ?"
                params.extend([f'$."{name}".{KEY_TAG}', value.to_token()])
            elif value is None:
                sql += " AND json_type(properties_json, ?) = 'null'"
                params.append(f'$."{name}"')
            else:
                sql += " AND json_extract(properties_json, ?) = ?"
                params.extend([f'$."{name}"', value])

        sql += " ORDER BY entity_id LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            Entity(Key.from_token(row["key_token"]), decode_properties(row["properties_json"]))
            for row in rows
        ]
