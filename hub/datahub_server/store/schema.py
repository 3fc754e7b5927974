"""
Field-type schemas for searchable collections.

A schema maps field names to the index field types seen for documents
stored under a collection path. Persistent queries are registered with
the schema of the collection they watch, converted to match-backend
types.

Schemas are stored in the keyed store under the "schema" kind, one
top-level entity per collection, named by the collection's doc-id.

Invariants:
    - Schemas only grow; a field keeps the type it was last seen with
    - A document updates the schema of every ancestor collection
    - Every initialized schema includes the scope field as TEXT
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..backends.base import (
    SCOPE_FIELD,
    Entity,
    EntityNotFoundError,
    FieldType,
    Key,
    KeyedStore,
    MatchFieldType,
    SearchRecord,
)
from .path import SCHEMA_KIND, Path

logger = logging.getLogger(__name__)

MATCH_FIELD_TYPES = {
    FieldType.ATOM: MatchFieldType.STRING,
    FieldType.DATE: MatchFieldType.DOUBLE,
    FieldType.HTML: MatchFieldType.TEXT,
    FieldType.NUMBER: MatchFieldType.DOUBLE,
    FieldType.TEXT: MatchFieldType.TEXT,
}


def field_type(value: Any) -> FieldType:
    """Index field type for a JSON value."""
    if value is None or isinstance(value, bool):
        return FieldType.ATOM
    if isinstance(value, (int, float)):
        return FieldType.NUMBER
    return FieldType.TEXT


def schema_key(collection: Path) -> Key:
    return Key(SCHEMA_KIND, collection.to_doc_id())


class SchemaManager:
    """Tracks the field types of documents per collection."""

    def __init__(self, keyed_store: KeyedStore) -> None:
        self.keyed_store = keyed_store
        self._lock = asyncio.Lock()

    async def get_schema(self, collection: Path) -> dict[str, FieldType]:
        try:
            entity = await self.keyed_store.get(schema_key(collection))
        except EntityNotFoundError:
            return {}
        return {name: FieldType(value) for name, value in entity.properties.items()}

    async def get_match_schema(self, collection: Path) -> dict[str, MatchFieldType]:
        schema = await self.get_schema(collection)
        return {name: MATCH_FIELD_TYPES[t] for name, t in schema.items()}

    async def init_schema(self, collection: Path) -> None:
        """Make sure collection has a schema containing the scope field."""
        await self._merge(collection, {SCOPE_FIELD: FieldType.TEXT})

    async def update_schema(self, path: Path, record: SearchRecord) -> None:
        """Record the field types of the document at path in the schemas of
        all its ancestor collections."""
        types = {f.name: f.type for f in record.fields}
        cur = path
        while not cur.is_root:
            cur = cur.get_parent()
            await self._merge(cur, types)

    async def _merge(self, collection: Path, types: dict[str, FieldType]) -> None:
        async with self._lock:
            schema = await self.get_schema(collection)
            if all(schema.get(name) == t for name, t in types.items()):
                return
            schema.update(types)
            await self.keyed_store.put(
                Entity(schema_key(collection), {name: t.value for name, t in schema.items()})
            )
        logger.debug(f"saveSchema: collection({collection}) fields({sorted(schema)})")
