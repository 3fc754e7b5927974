"""
Integration tests for the DataHub HTTP API.

Tests cover:
- Document CRUD over the resource tree
- Search and persistent queries with match delivery
- ACL and index administration special files
- Error mapping
- Corpus routing
"""

import pytest
from aiohttp import test_utils

from hub.datahub_server.api import create_http_app

ALICE = {"X-Actor": "alice"}
BOB = {"X-Actor": "bob"}
ADMIN = {"X-Actor": "root", "X-Actor-Admin": "true"}


@pytest.fixture
async def client(hub):
    """HTTP client over a hub with corpora / and /chat."""
    await hub.add_corpus("/")
    await hub.add_corpus("/chat", "/")
    app = create_http_app(hub.stores.values(), hub.delivery, default_limit=10)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


class TestDocuments:
    """Tests for document CRUD."""

    @pytest.mark.asyncio
    async def test_post_creates_serial_child(self, client):
        resp = await client.post("/", json={"t": "hello"}, headers=ALICE)
        assert resp.status == 201
        location = resp.headers["Location"]
        assert location.startswith("/__") and location.endswith("__")
        assert (await resp.json())["path"] == location

        resp = await client.get(location, headers=ALICE)
        assert resp.status == 200
        assert await resp.json() == {"t": "hello"}

    @pytest.mark.asyncio
    async def test_put_get_list_delete(self, client):
        resp = await client.put("/foo", json={"n": 1, "meta": {"x": None}}, headers=ALICE)
        assert resp.status == 200

        resp = await client.get("/foo", headers=ALICE)
        assert await resp.json() == {"n": 1, "meta": {"x": None}}

        resp = await client.get("/", headers=ALICE)
        assert (await resp.json())["foo"] == {"n": 1, "meta": {"x": None}}

        resp = await client.delete("/foo", headers=ALICE)
        assert resp.status == 200
        resp = await client.get("/foo", headers=ALICE)
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_list_with_trailing_slash(self, client):
        await client.put("/foo", json={}, headers=ALICE)
        await client.put("/foo/a", json={"i": 1}, headers=ALICE)
        await client.put("/foo/b", json={"i": 2}, headers=ALICE)

        resp = await client.get("/foo/", params={"limit": "1", "offset": "1"}, headers=ALICE)
        assert await resp.json() == {"b": {"i": 2}}

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        resp = await client.get("/missing", headers=ALICE)
        assert resp.status == 404
        body = await resp.json()
        assert body["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_post_under_missing_parent(self, client):
        resp = await client.post("/missing", json={}, headers=ALICE)
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_malformed_path(self, client):
        resp = await client.get("/a(b", headers=ALICE)
        assert resp.status == 400
        assert (await resp.json())["error_code"] == "MALFORMED_PATH"

    @pytest.mark.asyncio
    async def test_bad_json(self, client):
        resp = await client.post("/", data="{not json", headers=ALICE)
        assert resp.status == 400
        resp = await client.post("/", json=[1, 2], headers=ALICE)
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_bad_integer(self, client):
        resp = await client.get("/", params={"limit": "many"}, headers=ALICE)
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unknown_special_file(self, client):
        resp = await client.get("/__nothing__", headers=ALICE)
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_cors_headers(self, client):
        resp = await client.options("/foo", headers={"Origin": "http://example.com"})
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "http://example.com"


class TestSearch:
    """Tests for search and persistent queries."""

    @pytest.mark.asyncio
    async def test_search(self, client):
        await client.post("/", json={"t": "hello world"}, headers=ALICE)
        await client.post("/", json={"t": "goodbye"}, headers=ALICE)

        resp = await client.get("/", params={"q": "hello"}, headers=ALICE)
        assert resp.status == 200
        body = await resp.json()
        assert len(body["results"]) == 1
        assert list(body["results"][0].values()) == [{"t": "hello world"}]
        assert "query_id" not in body

    @pytest.mark.asyncio
    async def test_invalid_query(self, client):
        resp = await client.get("/", params={"q": "AND AND"}, headers=ALICE)
        assert resp.status == 502

    @pytest.mark.asyncio
    async def test_persistent_query_delivery(self, client):
        resp = await client.get("/", params={"q": "hello", "duration": "60"}, headers=ALICE)
        query_id = (await resp.json())["query_id"]
        assert query_id.startswith("alice-->8--ROOT-->8--")

        await client.post("/", json={"t": "hello again"}, headers=BOB)

        resp = await client.get("/__matches__", headers=ALICE)
        matches = (await resp.json())["matches"]
        assert len(matches) == 1
        assert matches[0]["object"]["t"] == "hello again"
        assert matches[0]["query_ids"] == [query_id]

        resp = await client.get("/__matches__", headers=ALICE)
        assert (await resp.json())["matches"] == []

    @pytest.mark.asyncio
    async def test_queries_listed_and_deleted(self, client):
        resp = await client.get("/", params={"q": "hello", "duration": "60"}, headers=ALICE)
        query_id = (await resp.json())["query_id"]

        resp = await client.get("/__index__", params={"queries": ""}, headers=ALICE)
        assert list(await resp.json()) == [query_id]

        resp = await client.delete("/__index__", params={"query_id": query_id}, headers=BOB)
        assert resp.status == 403

        resp = await client.delete("/__index__", params={"query_id": query_id}, headers=ALICE)
        assert resp.status == 200
        resp = await client.get("/__index__", params={"queries": ""}, headers=ALICE)
        assert await resp.json() == {}

    @pytest.mark.asyncio
    async def test_corpus_routing(self, client):
        """Writes under /chat are indexed by /chat and by /."""
        await client.put("/chat", json={}, headers=ALICE)
        resp = await client.post("/chat", json={"t": "hi there"}, headers=ALICE)
        location = resp.headers["Location"]
        assert location.startswith("/chat/__")

        for scope in ("/chat", "/"):
            resp = await client.get(scope, params={"q": "hi"}, headers=ALICE)
            results = (await resp.json())["results"]
            assert [list(r) for r in results] == [[location]]


class TestAdministration:
    """Tests for the __acl__ and __index__ special files."""

    @pytest.mark.asyncio
    async def test_acl_requires_admin(self, client):
        resp = await client.put(
            "/__acl__", params={"user": "alice", "op": "read"}, headers=ALICE
        )
        assert resp.status == 403

    @pytest.mark.asyncio
    async def test_restrict_and_clear(self, client):
        await client.put("/foo", json={"n": 1}, headers=ALICE)

        resp = await client.put(
            "/foo/__acl__", params={"user": "alice", "op": "read"}, headers=ADMIN
        )
        assert resp.status == 200
        assert (await resp.json())["control"] == "restrict"

        resp = await client.get("/foo", headers=ALICE)
        assert resp.status == 403
        assert (await resp.json())["error_code"] == "OPERATION_RESTRICTED"
        resp = await client.get("/foo", headers=BOB)
        assert resp.status == 200

        resp = await client.get(
            "/foo/__acl__", params={"user": "alice", "op": "read"}, headers=BOB
        )
        assert (await resp.json())["status"] == "restricted"

        await client.put(
            "/foo/__acl__", params={"user": "alice", "op": "read", "clear": ""}, headers=ADMIN
        )
        resp = await client.get("/foo", headers=ALICE)
        assert resp.status == 200

    @pytest.mark.asyncio
    async def test_allow_overrides(self, client):
        await client.put("/foo", json={}, headers=ALICE)
        await client.put("/__acl__", params={"user": "alice", "op": "read"}, headers=ADMIN)
        await client.put(
            "/foo/__acl__",
            params={"user": "alice", "op": "read", "allow": "true"},
            headers=ADMIN,
        )

        assert (await client.get("/foo", headers=ALICE)).status == 200
        assert (await client.get("/", headers=ALICE)).status == 403

    @pytest.mark.asyncio
    async def test_acl_bad_op(self, client):
        resp = await client.get("/__acl__", params={"user": "alice", "op": "fly"}, headers=ALICE)
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_index_map(self, client):
        resp = await client.get("/chat/__index__", headers=ALICE)
        assert resp.status == 403

        resp = await client.get("/chat/__index__", headers=ADMIN)
        assert await resp.json() == {"search_index": "ROOTchat", "match_topic": "ROOTchat"}

    @pytest.mark.asyncio
    async def test_delete_indexes(self, client, hub):
        await client.post("/", json={"t": "hello"}, headers=ALICE)

        resp = await client.delete("/__index__", headers=ALICE)
        assert resp.status == 403

        resp = await client.delete("/__index__", headers=ADMIN)
        assert resp.status == 202
        await hub.task_queue.join()

        resp = await client.get("/", params={"q": "hello"}, headers=ALICE)
        assert (await resp.json())["results"] == []
