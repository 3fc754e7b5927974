"""
Search projection of documents with persistent queries.

A SearchIndex serves one corpus: a subtree of paths with its own tokenized
index and its own subscription topic, both named by the corpus path's
doc-id. Corpora form a tree: documents added to a corpus are also added
to its parent corpus, recursively, so they can be found from every
enclosing corpus.

Every indexed record carries the scope field, the doc-ids of the
document's path and all its ancestors. Searches at a path are restricted
to records whose scope contains that path's doc-id.

Invariants:
    - A corpus is constructed after its parent corpus is registered
    - Only strict sub-paths of the corpus path may be written
    - A persistent query is subscribed before its initial search runs,
      so no match can fall between the two
    - The internal default subscription sorts before every endpoint's
      queries and is never removed by delete_indexes()
    - Backend failures surface as ServiceError

How to change safely:
    - Index and topic names are doc-ids; changing the path encoding
      orphans existing indexes
    - Keep scope_query() in step with the backends' query syntax
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from typing import Any

from ..backends.base import (
    SCOPE_FIELD,
    BackendError,
    FieldType,
    MatchBackend,
    SearchBackend,
    SearchField,
    SearchRecord,
)
from ..errors import InvalidSubPathError, ServiceError, UnknownParentCorpusError
from ..tasks import TaskQueue, iterate_pages
from ..users import User
from .path import Path, path_tokens
from .query_id import QueryId, endpoint_prefix, validate_endpoint_id
from .schema import SchemaManager, field_type

logger = logging.getLogger(__name__)

INTERNAL_PREFIX = "INTERNAL__"

# Leading space (0x20) sorts this id before every endpoint's query ids.
INTERNAL_DEFAULT_SUBID = " " + INTERNAL_PREFIX + "DEFAULT_SUBID"

EMPTY_QUERY = ""

# A query no document can match.
UNSATISFIABLE_QUERY = "(a OR b) NOT (a OR b)"

DEFAULT_LIMIT = 10
DURATION_UNDEFINED = -1
DURATION_UNLIMITED = 0
MAX_DURATION = 3600

# Smallest id after the internal ones.
_FIRST_ENDPOINT_ID = "!"

# Errors of a backend call; raw SQLite errors count as backend failures.
BACKEND_FAILURES = (BackendError, sqlite3.Error)


def doc_to_record(path: Path, doc: dict[str, Any]) -> SearchRecord:
    """Typed search record for the document at path, scope field included."""
    fields = [
        SearchField(name, field_type(value), value)
        for name, value in doc.items()
        if not name.startswith(SCOPE_FIELD)
    ]
    fields.append(SearchField(SCOPE_FIELD, FieldType.TEXT, path_tokens(path)))
    return SearchRecord(path.to_doc_id(), fields)


def record_to_doc(record: SearchRecord) -> dict[str, Any]:
    """Original document values of a record, internal fields removed."""
    return {f.name: f.value for f in record.fields if not f.name.startswith(SCOPE_FIELD)}


def check_grouping(query: str) -> None:
    """Reject queries whose parentheses or quotes do not pair up.

    Raises:
        ValueError: If a ")" closes a group the query did not open, a "("
            is left open, or a quoted string is unterminated
    """
    depth = 0
    quoted = False
    for char in query:
        if char == '"':
            quoted = not quoted
        elif quoted:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced ')' in query: {query}")
    if quoted:
        raise ValueError(f"Unterminated string in query: {query}")
    if depth:
        raise ValueError(f"Unbalanced '(' in query: {query}")


def scope_query(path: Path, query: str | None) -> str:
    """Restrict query to records at or below path.

    Raises:
        ValueError: If query could close the scope's group (see check_grouping)
    """
    query = (query or EMPTY_QUERY).strip()
    scoped = f'{SCOPE_FIELD} : "{path.to_doc_id()}"'
    if query == EMPTY_QUERY:
        return scoped
    check_grouping(query)
    return f"{scoped} AND ({query})"


class CorpusRegistry:
    """Corpora by corpus path.

    Registration is append-only and expected to happen once per corpus at
    startup, parents before children.
    """

    def __init__(self) -> None:
        self._corpora: dict[Path, SearchIndex] = {}

    def register(self, index: SearchIndex) -> None:
        if index.corpus_path in self._corpora:
            raise ValueError(f"Corpus already registered: {index.corpus_path}")
        self._corpora[index.corpus_path] = index

    def get(self, corpus_path: Path) -> SearchIndex | None:
        return self._corpora.get(corpus_path)

    def find(self, path: Path) -> SearchIndex | None:
        """Deepest corpus at or above path."""
        for cur in path.ancestors():
            index = self._corpora.get(cur)
            if index is not None:
                return index
        return None

    def __contains__(self, corpus_path: Path) -> bool:
        return corpus_path in self._corpora

    def __iter__(self) -> Iterator[SearchIndex]:
        return iter(self._corpora.values())

    def __len__(self) -> int:
        return len(self._corpora)


class SearchIndex:
    """Tokenized index and query registry for one corpus.

    Example:
        >>> root = SearchIndex(ROOT, registry, search, match, schemas, tasks)
        >>> await root.initialize()
        >>> child = SearchIndex(Path.from_string("/a"), registry, search, match,
        ...                     schemas, tasks, parent_corpus_path=ROOT)
        >>> await child.initialize()
        >>> await child.create(Path.from_string("/a/b"), {"t": "hello"}, user)
        >>> await root.search(ROOT, "hello", user)  # finds /a/b
    """

    def __init__(
        self,
        corpus_path: Path,
        registry: CorpusRegistry,
        search_backend: SearchBackend,
        match_backend: MatchBackend,
        schema_manager: SchemaManager,
        task_queue: TaskQueue,
        parent_corpus_path: Path | None = None,
        max_duration: int = MAX_DURATION,
        batch_size: int = 100,
        page_size: int = 100,
    ) -> None:
        """
        Raises:
            UnknownParentCorpusError: If parent_corpus_path is not registered
        """
        parent = None
        if parent_corpus_path is not None:
            parent = registry.get(parent_corpus_path)
            if parent is None:
                raise UnknownParentCorpusError(corpus_path, parent_corpus_path)

        self.corpus_path = corpus_path
        self.parent = parent
        self.registry = registry
        self.search_backend = search_backend
        self.match_backend = match_backend
        self.schema_manager = schema_manager
        self.task_queue = task_queue
        self.max_duration = max_duration
        self.batch_size = batch_size
        self.page_size = page_size

        self.index_name = corpus_path.to_doc_id()
        self.topic = corpus_path.to_doc_id()
        self.default_query_id = QueryId(INTERNAL_DEFAULT_SUBID, self.topic, UNSATISFIABLE_QUERY)

        self._delete_docs_processor = f"delete-index:{self.index_name}"
        self._delete_queries_processor = f"delete-queries:{self.topic}"
        task_queue.register(self._delete_docs_processor, self._remove_batch)
        task_queue.register(self._delete_queries_processor, self._unsubscribe_batch)

        registry.register(self)

    def __repr__(self) -> str:
        return f"SearchIndex(corpus_path={str(self.corpus_path)!r})"

    async def initialize(self) -> None:
        """Seed the corpus schema and its default subscription."""
        await self.schema_manager.init_schema(self.corpus_path)
        schema = await self.schema_manager.get_match_schema(self.corpus_path)
        try:
            await self.match_backend.subscribe(
                self.topic,
                str(self.default_query_id),
                DURATION_UNLIMITED,
                UNSATISFIABLE_QUERY,
                schema,
            )
        except BACKEND_FAILURES as e:
            raise ServiceError(f"Failed to initialize topic {self.topic}: {e}") from e
        logger.info(
            "Initialized corpus",
            extra={"corpus_path": str(self.corpus_path), "index": self.index_name},
        )

    async def create(self, path: Path, doc: dict[str, Any], user: User) -> Path:
        """Index doc at path in this corpus and every ancestor corpus.

        Raises:
            InvalidSubPathError: If path is not strictly under the corpus path
            ServiceError: If a backend fails
        """
        if not self.corpus_path.is_parent_of(path):
            raise InvalidSubPathError(path, self.corpus_path)
        logger.debug(f"{self}.create: path({path}) user({user})")
        await self._add(path, doc_to_record(path, doc))
        return path

    async def update(self, path: Path, doc: dict[str, Any], user: User) -> None:
        """Replace the indexed record at path."""
        await self.create(path, doc, user)

    async def _add(self, path: Path, record: SearchRecord) -> None:
        try:
            await self.search_backend.add(self.index_name, record)
            await self.schema_manager.update_schema(path, record)
            await self.match_backend.match(self.topic, record)
        except BACKEND_FAILURES as e:
            raise ServiceError(f"Failed to index {path} in {self.index_name}: {e}") from e

        if self.parent is not None:
            await self.parent._add(path, record)

    async def delete(self, user: User, *paths: Path) -> None:
        """Remove paths from this corpus and every ancestor corpus."""
        doc_ids = [path.to_doc_id() for path in paths]
        try:
            await self.search_backend.remove(self.index_name, *doc_ids)
        except BACKEND_FAILURES as e:
            raise ServiceError(f"Failed to remove from {self.index_name}: {e}") from e
        if self.parent is not None:
            await self.parent.delete(user, *paths)

    async def delete_queries(self, user: User, *query_ids: str) -> None:
        """Unsubscribe the given query ids.

        Raises:
            ValueError: If a query id is malformed
        """
        for query_id in query_ids:
            parsed = QueryId.from_string(query_id)
            try:
                await self.match_backend.unsubscribe(parsed.topic, str(parsed))
            except BACKEND_FAILURES as e:
                raise ServiceError(f"Failed to unsubscribe {query_id}: {e}") from e

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
        """Search records at or below path.

        With an endpoint_id and a non-negative duration, the scoped query
        is first registered as a persistent query for that endpoint, for
        at most max_duration seconds (0 for no expiry). fields and order
        are ignored.

        Returns:
            {"results": [{path: doc}], "offset", "limit", "query_id"?}
        """
        try:
            scoped = scope_query(path, query)
        except ValueError as e:
            raise ServiceError(f"Invalid search query: {e}") from e
        logger.debug(f"{self}.search: path({path}) query({scoped}) duration({duration})")

        query_id = None
        if endpoint_id is not None and duration >= 0:
            duration = min(duration, self.max_duration)
            schema = await self.schema_manager.get_match_schema(path)
            query_id = await self._subscribe(endpoint_id, duration, scoped, schema)

        try:
            hits = await self.search_backend.search(self.index_name, scoped, offset, limit)
        except BACKEND_FAILURES as e:
            raise ServiceError(f"Search failed in {self.index_name}: {e}") from e

        response: dict[str, Any] = {
            "results": [
                {str(Path.from_doc_id(hit.record.doc_id)): record_to_doc(hit.record)}
                for hit in hits
            ],
            "offset": offset,
            "limit": min(len(hits), limit),
        }
        if query_id is not None:
            response["query_id"] = str(query_id)
        return response

    async def _subscribe(self, endpoint_id: str, duration: int, query: str, schema: dict) -> QueryId:
        validate_endpoint_id(endpoint_id)
        query_id = QueryId(endpoint_id, self.topic, query)
        try:
            await self.match_backend.subscribe(self.topic, str(query_id), duration, query, schema)
        except BACKEND_FAILURES as e:
            raise ServiceError(f"Failed to subscribe {query_id}: {e}") from e
        logger.debug(f"{self}.subscribe: topic({self.topic}) query_id({query_id})")
        return query_id

    async def retrieve_queries(
        self,
        user: User,
        start_id: str | None = None,
        limit: int = 100,
        expires_before: int = 0,
    ) -> dict[str, dict[str, Any]]:
        """Persistent queries by id.

        Args:
            start_id: First query id to list; when None, lists only the
                queries of the user's own endpoint
            expires_before: Only queries expiring before this time (Unix
                seconds), 0 for all

        Raises:
            ValueError: If start_id would list internal queries
        """
        prefix = None
        if start_id is None:
            prefix = start_id = endpoint_prefix(user.effective_id)
        validate_endpoint_id(start_id)

        try:
            subscriptions = await self.match_backend.list_subscriptions(
                self.topic, start_id, limit, expires_before
            )
        except BACKEND_FAILURES as e:
            raise ServiceError(f"Failed to list queries of {self.topic}: {e}") from e
        return {
            sub.sub_id: {"topic": sub.topic, "query": sub.query, "expires_at": sub.expires_at}
            for sub in subscriptions
            if prefix is None or sub.sub_id.startswith(prefix)
        }

    def get_index_map(self, path: Path, user: User) -> dict[str, str]:
        return {"search_index": self.index_name, "match_topic": self.topic}

    async def delete_indexes(self, path: Path, user: User) -> None:
        """Schedule removal of every record and every endpoint query of
        this corpus. Returns before the sweep completes."""

        async def doc_page(last: str | None) -> list[str]:
            return await self.search_backend.list_ids(self.index_name, last, self.page_size)

        async def query_page(last: str | None) -> list[str]:
            start = _FIRST_ENDPOINT_ID if last is None else last + "\x00"
            subs = await self.match_backend.list_subscriptions(self.topic, start, self.page_size)
            return [sub.sub_id for sub in subs]

        self.task_queue.enqueue_process(
            iterate_pages(doc_page), self.batch_size, self._delete_docs_processor
        )
        self.task_queue.enqueue_process(
            iterate_pages(query_page), self.batch_size, self._delete_queries_processor
        )
        logger.info(
            "Scheduled index deletion",
            extra={"corpus_path": str(self.corpus_path), "user": user.effective_id},
        )

    async def _remove_batch(self, doc_ids: list[str]) -> None:
        await self.search_backend.remove(self.index_name, *doc_ids)

    async def _unsubscribe_batch(self, query_ids: list[str]) -> None:
        for query_id in query_ids:
            await self.match_backend.unsubscribe(self.topic, query_id)
