"""
Authoritative document store addressed by paths.

Documents are stored as entities in a KeyedStore under their path's key
chain. Every document entity carries an internal back-reference to its
parent key, which is how a path's immediate children are listed.

Invariants:
    - ROOT always has an entity once initialize() has run
    - create() requires an entity at the parent path; update() is an upsert
      and does not check the parent
    - Internal properties are never returned to callers
    - JSON null values are preserved; nested objects become EmbeddedEntity
    - delete() checks every path exists before deleting any

How to change safely:
    - INTERNAL_PARENT_PROP is persisted in every document; never rename it
    - Acting users are only logged here; access checks live in acl.py
"""

from __future__ import annotations

import logging
from typing import Any

from ..backends.base import SCOPE_FIELD, EmbeddedEntity, Entity, EntityNotFoundError, Key, KeyedStore
from ..errors import NotFoundError
from ..users import User
from .path import PATH_KIND, ROOT_KEY, Path, Segment

logger = logging.getLogger(__name__)

# Property holding the parent key of every document entity.
INTERNAL_PARENT_PROP = "##PARENT##"

DEFAULT_LIMIT = 10


def doc_to_properties(doc: dict[str, Any]) -> dict[str, Any]:
    """Convert a JSON document to entity properties."""
    return {name: _to_property(value) for name, value in doc.items()}


def _to_property(value: Any) -> Any:
    if isinstance(value, dict):
        return EmbeddedEntity(doc_to_properties(value))
    if isinstance(value, list):
        return [_to_property(v) for v in value]
    return value


def properties_to_doc(properties: dict[str, Any]) -> dict[str, Any]:
    """Convert entity properties back to a JSON document, dropping internal ones."""
    return {
        name: _from_property(value)
        for name, value in properties.items()
        if name != INTERNAL_PARENT_PROP and not name.startswith(SCOPE_FIELD)
    }


def _from_property(value: Any) -> Any:
    if isinstance(value, EmbeddedEntity):
        return {name: _from_property(v) for name, v in value.items()}
    if isinstance(value, list):
        return [_from_property(v) for v in value]
    if isinstance(value, Key):
        return str(Path.from_key(value))
    return value


class ObjectStore:
    """Path-addressed JSON document store.

    Example:
        >>> store = ObjectStore(SqliteKeyedStore("/var/lib/datahub"))
        >>> await store.initialize()
        >>> path = await store.create(ROOT, {"title": "hello"}, user)
        >>> await store.retrieve(path, user)
        {'title': 'hello'}
    """

    def __init__(self, keyed_store: KeyedStore) -> None:
        self.keyed_store = keyed_store

    async def initialize(self) -> None:
        """Prepare the keyed store and make sure ROOT has an entity."""
        await self.keyed_store.initialize()
        if not await self.keyed_store.exists(ROOT_KEY):
            await self.keyed_store.put(Entity(ROOT_KEY, {}))
            logger.info("Created ROOT entity")

    async def create(
        self,
        parent: Path,
        doc: dict[str, Any],
        user: User,
        name: str | None = None,
    ) -> Path:
        """Store doc as a new child of parent.

        Args:
            parent: Existing parent path
            doc: Document to store
            user: Acting user
            name: Child name, "name" or "kind(name)"; a serial id is
                allocated when None. An existing named child is overwritten.

        Returns:
            Path of the stored document

        Raises:
            NotFoundError: If parent has no document
            MalformedPathError: If name is not a valid path segment
        """
        logger.debug(f"create: parent={parent} name={name} user={user}")
        parent_key = parent.to_key()
        if name is None:
            key = Key(PATH_KIND, parent=parent_key)
        else:
            segment = Segment.parse(name)
            key = Key(segment.kind, segment.name, segment.id, parent_key)

        await self.assert_exists(parent)
        stored_key = await self.keyed_store.put(Entity(key, self._properties(key, doc)))
        return Path.from_key(stored_key)

    async def retrieve(self, path: Path, user: User) -> dict[str, Any]:
        """Fetch the document at exactly path.

        Raises:
            NotFoundError: If no document is stored at path
        """
        logger.debug(f"retrieve: path={path} user={user}")
        try:
            entity = await self.keyed_store.get(path.to_key())
        except EntityNotFoundError as e:
            raise NotFoundError(path) from e
        return properties_to_doc(entity.properties)

    async def list(
        self,
        path: Path,
        user: User,
        offset: int = 0,
        limit: int = DEFAULT_LIMIT,
        fields: list[str] | None = None,
        order: list[int] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Immediate children of path, keyed by their last segment.

        fields and order are accepted for interface compatibility and ignored.
        """
        logger.debug(f"list: path={path} offset={offset} limit={limit} user={user}")
        entities = await self.keyed_store.query(
            None,
            {INTERNAL_PARENT_PROP: path.to_key()},
            offset=offset,
            limit=limit,
        )
        return {
            Path.from_key(entity.key).filename: properties_to_doc(entity.properties)
            for entity in entities
        }

    async def update(self, path: Path, doc: dict[str, Any], user: User) -> None:
        """Store doc at exactly path, creating or replacing it."""
        logger.debug(f"update: path={path} user={user}")
        key = path.to_key()
        await self.keyed_store.put(Entity(key, self._properties(key, doc)))

    async def delete(self, user: User, *paths: Path) -> None:
        """Delete the documents at the given paths.

        Raises:
            NotFoundError: If any path has no document; nothing is deleted
        """
        logger.debug(f"delete: paths={[str(p) for p in paths]} user={user}")
        for path in paths:
            await self.assert_exists(path)
        await self.keyed_store.delete(*(path.to_key() for path in paths))

    async def exists(self, path: Path) -> bool:
        return await self.keyed_store.exists(path.to_key())

    async def assert_exists(self, path: Path) -> None:
        if not await self.exists(path):
            raise NotFoundError(path)

    @staticmethod
    def _properties(key: Key, doc: dict[str, Any]) -> dict[str, Any]:
        properties = doc_to_properties(doc)
        properties[INTERNAL_PARENT_PROP] = key.parent
        return properties
