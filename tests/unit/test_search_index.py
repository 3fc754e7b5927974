"""
Unit tests for search corpora and persistent queries.

Tests cover:
- Corpus registration and cascade to parent corpora
- Scoped search and response shape
- Persistent query registration, listing, deletion and delivery
- Asynchronous index deletion
"""

import time

import pytest

from hub.datahub_server.backends.base import FieldType
from hub.datahub_server.errors import (
    InvalidSubPathError,
    ServiceError,
    UnknownParentCorpusError,
)
from hub.datahub_server.store.path import ROOT, Path
from hub.datahub_server.store.query_id import QueryId
from hub.datahub_server.store.search_index import (
    INTERNAL_DEFAULT_SUBID,
    MAX_DURATION,
    SearchIndex,
    scope_query,
)


def result_paths(response):
    return sorted(path for hit in response["results"] for path in hit)


class TestScopeQuery:
    """Tests for scope_query."""

    def test_with_query(self):
        assert (
            scope_query(Path.from_string("/a"), "hello")
            == 'INTERNAL__QUERY__FIELD__path : "ROOTa" AND (hello)'
        )

    def test_empty_query(self):
        assert scope_query(ROOT, "  ") == 'INTERNAL__QUERY__FIELD__path : "ROOT"'
        assert scope_query(ROOT, None) == scope_query(ROOT, "")

    @pytest.mark.parametrize(
        "query",
        ["a) OR (b", "a)", "(a", '"a', "x) OR INTERNAL__QUERY__FIELD__path : ROOT OR (y"],
    )
    def test_unbalanced_query_rejected(self, query):
        """A query cannot close the scope's group."""
        with pytest.raises(ValueError):
            scope_query(ROOT, query)

    def test_grouped_query_accepted(self):
        query = '(a OR b) AND "c)" AND NEAR(d e)'
        assert scope_query(ROOT, query).endswith(f"AND ({query})")


class TestCorpora:
    """Tests for corpus registration and cascade."""

    @pytest.mark.asyncio
    async def test_unknown_parent(self, hub):
        with pytest.raises(UnknownParentCorpusError):
            SearchIndex(
                Path.from_string("/a"),
                hub.registry,
                hub.search_backend,
                hub.match_backend,
                hub.schemas,
                hub.task_queue,
                parent_corpus_path=ROOT,
            )

    @pytest.mark.asyncio
    async def test_duplicate_corpus(self, hub):
        await hub.add_corpus("/")
        with pytest.raises(ValueError):
            await hub.add_corpus("/")

    @pytest.mark.asyncio
    async def test_find(self, hub):
        root = await hub.add_corpus("/")
        foo = await hub.add_corpus("/foo", "/")
        assert hub.registry.find(Path.from_string("/foo/bar/baz")) is foo.search_index
        assert hub.registry.find(Path.from_string("/foo")) is foo.search_index
        assert hub.registry.find(Path.from_string("/other")) is root.search_index
        assert len(hub.registry) == 2

    @pytest.mark.asyncio
    async def test_cascade(self, hub, alice):
        """A document added to a child corpus is found from its parent."""
        root = await hub.add_corpus("/")
        foo = await hub.add_corpus("/foo", "/")
        path = Path.from_string("/foo/bar")
        await foo.search_index.create(path, {"t": "hello"}, alice)

        from_foo = await foo.search_index.search(Path.from_string("/foo"), "hello", alice)
        from_root = await root.search_index.search(ROOT, "hello", alice)
        assert result_paths(from_foo) == ["/foo/bar"]
        assert result_paths(from_root) == ["/foo/bar"]

    @pytest.mark.asyncio
    async def test_delete_cascades(self, hub, alice):
        root = await hub.add_corpus("/")
        foo = await hub.add_corpus("/foo", "/")
        path = Path.from_string("/foo/bar")
        await foo.search_index.create(path, {"t": "hello"}, alice)
        await foo.search_index.delete(alice, path)

        assert (await root.search_index.search(ROOT, "hello", alice))["results"] == []

    @pytest.mark.asyncio
    async def test_writes_must_be_sub_paths(self, hub, alice):
        await hub.add_corpus("/")
        foo = await hub.add_corpus("/foo", "/")
        with pytest.raises(InvalidSubPathError):
            await foo.search_index.create(Path.from_string("/foo"), {}, alice)
        with pytest.raises(InvalidSubPathError):
            await foo.search_index.create(Path.from_string("/bar/x"), {}, alice)

    @pytest.mark.asyncio
    async def test_index_map(self, hub, admin):
        await hub.add_corpus("/")
        foo = await hub.add_corpus("/foo", "/")
        assert foo.search_index.get_index_map(foo.corpus_path, admin) == {
            "search_index": "ROOTfoo",
            "match_topic": "ROOTfoo",
        }

    @pytest.mark.asyncio
    async def test_schema_updated(self, hub, alice):
        root = await hub.add_corpus("/")
        await root.search_index.create(Path.from_string("/a/x"), {"n": 1, "t": "s"}, alice)
        schema = await hub.schemas.get_schema(Path.from_string("/a"))
        assert schema["n"] == FieldType.NUMBER
        assert schema["t"] == FieldType.TEXT


class TestSearch:
    """Tests for SearchIndex.search."""

    @pytest.fixture
    async def index(self, hub):
        return (await hub.add_corpus("/")).search_index

    @pytest.mark.asyncio
    async def test_scoped_to_path(self, index, alice):
        await index.create(Path.from_string("/a/x"), {"t": "hello"}, alice)
        await index.create(Path.from_string("/b/x"), {"t": "hello"}, alice)

        response = await index.search(Path.from_string("/a"), "hello", alice)
        assert response["results"] == [{"/a/x": {"t": "hello"}}]
        assert response["offset"] == 0
        assert response["limit"] == 1
        assert "query_id" not in response

    @pytest.mark.asyncio
    async def test_empty_query_lists_subtree(self, index, alice):
        await index.create(Path.from_string("/a/x"), {"t": "one"}, alice)
        await index.create(Path.from_string("/a/y/z"), {"t": "two"}, alice)
        await index.create(Path.from_string("/b"), {"t": "three"}, alice)

        response = await index.search(Path.from_string("/a"), None, alice)
        assert result_paths(response) == ["/a/x", "/a/y/z"]

    @pytest.mark.asyncio
    async def test_update_replaces(self, index, alice):
        path = Path.from_string("/a")
        await index.create(path, {"t": "old"}, alice)
        await index.update(path, {"t": "new"}, alice)
        assert (await index.search(ROOT, "old", alice))["results"] == []
        assert result_paths(await index.search(ROOT, "new", alice)) == ["/a"]

    @pytest.mark.asyncio
    async def test_invalid_query(self, index, alice):
        with pytest.raises(ServiceError):
            await index.search(ROOT, "AND AND", alice)

    @pytest.mark.asyncio
    async def test_unbalanced_query(self, index, alice):
        await index.create(Path.from_string("/b/doc"), {"t": "classified"}, alice)
        with pytest.raises(ServiceError):
            await index.search(Path.from_string("/a"), "classified) OR (classified", alice)


class TestPersistentQueries:
    """Tests for persistent queries."""

    @pytest.fixture
    async def index(self, hub):
        return (await hub.add_corpus("/")).search_index

    @pytest.mark.asyncio
    async def test_default_subscription(self, hub, index):
        subs = await hub.match_backend.list_subscriptions(index.topic)
        assert [s.sub_id for s in subs] == [str(index.default_query_id)]
        assert subs[0].sub_id.startswith(INTERNAL_DEFAULT_SUBID)

    @pytest.mark.asyncio
    async def test_no_subscription_without_duration(self, hub, index, alice):
        response = await index.search(ROOT, "hello", alice, endpoint_id="alice")
        assert "query_id" not in response
        assert await index.retrieve_queries(alice) == {}

    @pytest.mark.asyncio
    async def test_subscribe_and_deliver(self, hub, index, alice):
        """A persistent query reports later writes to its endpoint."""
        response = await index.search(ROOT, "hello", alice, endpoint_id="alice", duration=60)
        query_id = response["query_id"]
        assert QueryId.from_string(query_id) == QueryId("alice", "ROOT", scope_query(ROOT, "hello"))

        await index.create(Path.from_string("/x"), {"t": "hello there"}, alice)
        await index.create(Path.from_string("/y"), {"t": "unrelated"}, alice)

        assert hub.delivery.drain("alice") == [
            {"object": {"t": "hello there", "path": "/x"}, "query_ids": [query_id]}
        ]

    @pytest.mark.asyncio
    async def test_duration_clamped(self, hub, index, alice):
        await index.search(ROOT, "a", alice, endpoint_id="alice", duration=10 * MAX_DURATION)
        await index.search(ROOT, "b", alice, endpoint_id="alice", duration=0)

        queries = await index.retrieve_queries(alice)
        expiry = {q["query"]: q["expires_at"] for q in queries.values()}
        assert 0 < expiry[scope_query(ROOT, "a")] <= time.time() + MAX_DURATION + 1
        assert expiry[scope_query(ROOT, "b")] == 0

    @pytest.mark.asyncio
    async def test_retrieve_own_queries(self, index, alice, bob):
        await index.search(ROOT, "a", alice, endpoint_id="alice", duration=60)
        await index.search(ROOT, "b", alice, endpoint_id="alice", duration=60)
        await index.search(ROOT, "c", bob, endpoint_id="bob", duration=60)

        queries = await index.retrieve_queries(alice)
        assert len(queries) == 2
        assert all(QueryId.from_string(q).endpoint_id == "alice" for q in queries)
        assert all(q["topic"] == "ROOT" for q in queries.values())

    @pytest.mark.asyncio
    async def test_retrieve_from_start_id(self, index, alice, bob):
        await index.search(ROOT, "a", alice, endpoint_id="alice", duration=60)
        await index.search(ROOT, "c", bob, endpoint_id="bob", duration=60)

        queries = await index.retrieve_queries(alice, start_id="!")
        assert len(queries) == 2

    @pytest.mark.asyncio
    async def test_internal_start_id_rejected(self, index, alice):
        with pytest.raises(ValueError):
            await index.retrieve_queries(alice, start_id=" ")

    @pytest.mark.asyncio
    async def test_invalid_endpoint(self, index, alice):
        with pytest.raises(ValueError):
            await index.search(ROOT, "a", alice, endpoint_id=" sneaky", duration=60)

    @pytest.mark.asyncio
    async def test_delete_queries(self, index, alice):
        response = await index.search(ROOT, "a", alice, endpoint_id="alice", duration=60)
        await index.delete_queries(alice, response["query_id"])
        assert await index.retrieve_queries(alice) == {}


class TestDeleteIndexes:
    """Tests for asynchronous index deletion."""

    @pytest.mark.asyncio
    async def test_wipes_records_and_queries(self, hub, alice, admin):
        index = (await hub.add_corpus("/")).search_index
        index.page_size = 2
        index.batch_size = 2
        for i in range(5):
            await index.create(Path.from_string(f"/n{i}"), {"t": "hello"}, alice)
        await index.search(ROOT, "hello", alice, endpoint_id="alice", duration=60)
        await index.search(ROOT, "world", alice, endpoint_id="bob", duration=60)

        await index.delete_indexes(ROOT, admin)
        await hub.task_queue.join()

        assert (await index.search(ROOT, "hello", alice))["results"] == []
        subs = await hub.match_backend.list_subscriptions(index.topic)
        assert [s.sub_id for s in subs] == [str(index.default_query_id)]
