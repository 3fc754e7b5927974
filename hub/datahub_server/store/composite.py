"""
Composite store: authoritative documents plus their search projection.

Writes go to the SecureObjectStore first and are mirrored into the
SearchIndex only once the authoritative write succeeded. Reads and
listings are served by the object store; searches and persistent queries
by the search index.

Invariants:
    - A rejected authoritative write never touches the search index
    - Search failures on create and update surface as ServiceError
    - Search failures on delete are logged, never raised or rolled back
    - Index administration requires an administrator
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import OperationRestrictedError, ServiceError
from ..users import User
from .acl import AccessControl, Op, SecureObjectStore
from .object_store import DEFAULT_LIMIT
from .path import Path
from .query_id import QueryId
from .search_index import DURATION_UNDEFINED, SearchIndex

logger = logging.getLogger(__name__)


class CompositeStore:
    """Fan-out store over one SecureObjectStore and one SearchIndex."""

    def __init__(self, objects: SecureObjectStore, search: SearchIndex) -> None:
        self.objects = objects
        self.search_index = search

    @property
    def corpus_path(self) -> Path:
        return self.search_index.corpus_path

    @property
    def access(self) -> AccessControl:
        return self.objects.access

    async def create(
        self,
        parent: Path,
        doc: dict[str, Any],
        user: User,
        name: str | None = None,
    ) -> Path:
        path = await self.objects.create(parent, doc, user, name=name)
        await self.search_index.create(path, doc, user)
        return path

    async def retrieve(self, path: Path, user: User) -> dict[str, Any]:
        return await self.objects.retrieve(path, user)

    async def list(
        self,
        path: Path,
        user: User,
        offset: int = 0,
        limit: int = DEFAULT_LIMIT,
        fields: list[str] | None = None,
        order: list[int] | None = None,
    ) -> dict[str, dict[str, Any]]:
        return await self.objects.list(path, user, offset=offset, limit=limit, fields=fields, order=order)

    async def update(self, path: Path, doc: dict[str, Any], user: User) -> None:
        await self.objects.update(path, doc, user)
        if self.corpus_path.is_parent_of(path):
            await self.search_index.update(path, doc, user)
        else:
            logger.debug(f"update: path({path}) is not indexed by corpus({self.corpus_path})")

    async def delete(self, user: User, *paths: Path) -> None:
        await self.objects.delete(user, *paths)
        try:
            await self.search_index.delete(user, *paths)
        except ServiceError as e:
            logger.warning(
                f"Search delete failed, index may be stale: {e}",
                extra={"paths": [str(p) for p in paths]},
            )

    async def search(
        self,
        path: Path,
        query: str | None,
        user: User,
        offset: int = 0,
        limit: int = DEFAULT_LIMIT,
        fields: list[str] | None = None,
        order: list[int] | None = None,
        endpoint_id: str | None = None,
        duration: int = DURATION_UNDEFINED,
    ) -> dict[str, Any]:
        await self.access.assert_allowed(path, user, Op.READ)
        return await self.search_index.search(
            path,
            query,
            user,
            offset=offset,
            limit=limit,
            fields=fields,
            order=order,
            endpoint_id=endpoint_id,
            duration=duration,
        )

    async def retrieve_queries(
        self,
        user: User,
        path: Path,
        start_id: str | None = None,
        limit: int = 100,
        expires_before: int = 0,
    ) -> dict[str, dict[str, Any]]:
        await self.access.assert_allowed(path, user, Op.READ)
        return await self.search_index.retrieve_queries(
            user, start_id=start_id, limit=limit, expires_before=expires_before
        )

    async def delete_queries(self, user: User, *query_ids: str) -> None:
        """Unsubscribe query ids; non-administrators may only remove their own."""
        if not user.is_admin:
            for query_id in query_ids:
                if QueryId.from_string(query_id).endpoint_id != user.effective_id:
                    raise OperationRestrictedError(self.corpus_path, user, Op.DELETE)
        await self.search_index.delete_queries(user, *query_ids)

    async def delete_indexes(self, path: Path, user: User) -> None:
        if not user.is_admin:
            raise OperationRestrictedError(path, user, Op.DELETE)
        await self.search_index.delete_indexes(path, user)

    async def get_index_map(self, path: Path, user: User) -> dict[str, str]:
        if not user.is_admin:
            raise OperationRestrictedError(path, user, Op.READ)
        return self.search_index.get_index_map(path, user)
