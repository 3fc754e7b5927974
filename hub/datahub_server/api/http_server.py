"""
HTTP server implementation for DataHub.

This module exposes the composite stores as a REST resource tree. The
request path is the resource path:

    GET    /a/b/             list the children of /a/b
    GET    /a/b?q=...        search at /a/b (optionally a persistent query)
    GET    /a/b              retrieve /a/b
    POST   /a/b              create a serial child of /a/b (201 + Location)
    PUT    /a/b              create or replace /a/b
    DELETE /a/b              delete /a/b

Special filenames address metadata of their parent path:

    GET    /a/__acl__?user=u&op=read           restricted or allowed
    PUT    /a/__acl__?user=u&op=read[&clear][&allow=true]
    GET    /a/__index__[?queries]              index map, or the actor's queries
    DELETE /a/__index__[?query_id=...]         wipe indexes, or delete queries
    GET    /__matches__                        drain the actor's query matches

Invariants:
    - The actor comes from X-Actor (anonymous when absent); X-Actor-Admin:
      true marks an administrator
    - Each request is served by the deepest corpus at or above its path
    - Errors map to statuses in error_middleware and always have a JSON body

How to change safely:
    - Keep special filenames stable, clients address them directly
    - Add query parameters, never repurpose existing ones
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from ..errors import (
    DataHubError,
    MalformedPathError,
    NotFoundError,
    OperationRestrictedError,
    ServiceError,
)
from ..store.acl import Op
from ..store.composite import CompositeStore
from ..store.matches import MatchDelivery
from ..store.path import PATH_KIND, Path
from ..store.search_index import DURATION_UNDEFINED
from ..users import ANONYMOUS_ID, User

logger = logging.getLogger(__name__)

ACL_FILENAME = "__acl__"
INDEX_FILENAME = "__index__"
MATCHES_FILENAME = "__matches__"

_SPECIAL_NAME = re.compile(r"^__.+__$")

JSON_CONTENT_TYPE = "application/json"


@dataclass
class HubContext:
    """Everything request handlers need."""

    stores: dict[Path, CompositeStore]
    delivery: MatchDelivery
    default_limit: int = 10

    def store_for(self, path: Path) -> CompositeStore:
        """Store of the deepest corpus at or above path.

        Raises:
            NotFoundError: If no corpus covers path
        """
        for cur in path.ancestors():
            store = self.stores.get(cur)
            if store is not None:
                return store
        raise NotFoundError(path)


def create_http_app(
    stores: Iterable[CompositeStore],
    delivery: MatchDelivery,
    default_limit: int = 10,
    cors_origins: tuple[str, ...] = ("*",),
) -> web.Application:
    """Create an HTTP application for DataHub.

    Args:
        stores: One composite store per corpus
        delivery: Match delivery queues drained by /__matches__
        default_limit: Page size when a request gives no limit
        cors_origins: Origins allowed by CORS, "*" for any

    Returns:
        aiohttp Application instance
    """
    ctx = HubContext({store.corpus_path: store for store in stores}, delivery, default_limit)
    app = web.Application()

    app.router.add_get("/{tail:.*}", lambda r: handle_get(r, ctx))
    app.router.add_post("/{tail:.*}", lambda r: handle_post(r, ctx))
    app.router.add_put("/{tail:.*}", lambda r: handle_put(r, ctx))
    app.router.add_delete("/{tail:.*}", lambda r: handle_delete(r, ctx))

    # Add CORS middleware
    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        def add_cors_headers(response: web.StreamResponse) -> None:
            origin = request.headers.get("Origin", "*")
            if "*" in cors_origins or origin in cors_origins:
                response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor, X-Actor-Admin"
            response.headers["Access-Control-Expose-Headers"] = "Location"

        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                add_cors_headers(e)
                raise

        add_cors_headers(response)
        return response

    app.middlewares.append(cors_middleware)

    # Add error handler
    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except NotFoundError as e:
            return error_response(e, 404)
        except OperationRestrictedError as e:
            logger.info(f"Restricted: {e}")
            return error_response(e, 403)
        except ServiceError as e:
            logger.warning(f"Backing service failed: {e}", exc_info=True)
            return error_response(e, 502)
        except (MalformedPathError, ValueError) as e:
            return error_response(e, 400)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.insert(0, error_middleware)

    return app


def error_response(error: Exception, status: int) -> web.Response:
    code = error.code if isinstance(error, DataHubError) else "BAD_REQUEST"
    return web.json_response({"error": str(error), "error_code": code}, status=status)


def bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message, "error_code": "BAD_REQUEST"}),
        content_type=JSON_CONTENT_TYPE,
    )


def extract_user(request: web.Request) -> User:
    """The acting user from the identity headers."""
    actor = request.headers.get("X-Actor") or ANONYMOUS_ID
    is_admin = request.headers.get("X-Actor-Admin", "false").lower() == "true"
    return User(actor, is_admin=is_admin)


def special_filename(path: Path) -> str | None:
    """The filename of path when it names a special file, otherwise None."""
    if path.is_root:
        return None
    last = path.segments[-1]
    if last.kind != PATH_KIND or last.name is None or not _SPECIAL_NAME.match(last.name):
        return None
    return last.name


def int_param(request: web.Request, name: str, default: int) -> int:
    value = request.query.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise bad_request(f"{name} must be an integer value")


def required_param(request: web.Request, name: str) -> str:
    value = request.query.get(name)
    if not value:
        raise bad_request(f"{name} parameter is required")
    return value


def op_param(request: web.Request) -> Op:
    op = required_param(request, "op")
    try:
        return Op(op.lower())
    except ValueError:
        raise bad_request(f"Unknown op: {op}")


async def read_json_object(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise bad_request("The request must include a JSON-encoded object.")
    if not isinstance(body, dict):
        raise bad_request("The request must include a JSON-encoded object.")
    return body


async def handle_get(request: web.Request, ctx: HubContext) -> web.Response:
    """Handle GET - list, search, retrieve, or a special file."""
    path = Path.from_string(request.path)
    user = extract_user(request)

    filename = special_filename(path)
    if filename == ACL_FILENAME:
        return await handle_get_acl(request, ctx, path.get_parent())
    if filename == INDEX_FILENAME:
        return await handle_get_index(request, ctx, path.get_parent(), user)
    if filename == MATCHES_FILENAME and path.get_parent().is_root:
        return web.json_response({"matches": ctx.delivery.drain(user.effective_id)})
    if filename is not None:
        raise NotFoundError(path)

    offset = abs(int_param(request, "offset", 0))
    limit = abs(int_param(request, "limit", ctx.default_limit))
    duration = int_param(request, "duration", DURATION_UNDEFINED)
    store = ctx.store_for(path)

    if "q" in request.query:
        result = await store.search(
            path,
            request.query["q"],
            user,
            offset=offset,
            limit=limit,
            endpoint_id=user.effective_id,
            duration=duration,
        )
    elif request.path.endswith("/"):
        result = await store.list(path, user, offset=offset, limit=limit)
    else:
        result = await store.retrieve(path, user)

    return web.json_response(result)


async def handle_get_acl(request: web.Request, ctx: HubContext, target: Path) -> web.Response:
    """Handle GET .../__acl__ - Check a user's access to the parent path."""
    subject = User(required_param(request, "user"))
    op = op_param(request)
    restricted = await ctx.store_for(target).access.is_restricted(target, subject, op)
    return web.json_response(
        {
            "path": str(target),
            "user": subject.effective_id,
            "op": op.value,
            "status": "restricted" if restricted else "allowed",
        }
    )


async def handle_get_index(
    request: web.Request, ctx: HubContext, target: Path, user: User
) -> web.Response:
    """Handle GET .../__index__ - Index map, or the actor's persistent queries."""
    store = ctx.store_for(target)
    if "queries" not in request.query:
        return web.json_response(await store.get_index_map(target, user))
    queries = await store.retrieve_queries(
        user,
        target,
        limit=abs(int_param(request, "limit", 100)),
        expires_before=int_param(request, "expires_before", 0),
    )
    return web.json_response(queries)


async def handle_post(request: web.Request, ctx: HubContext) -> web.Response:
    """Handle POST - Create a serial child of the request path."""
    parent = Path.from_string(request.path)
    user = extract_user(request)
    if special_filename(parent) is not None:
        raise NotFoundError(parent)

    doc = await read_json_object(request)
    path = await ctx.store_for(parent).create(parent, doc, user)
    return web.json_response(
        {"path": str(path)},
        status=201,
        headers={"Location": str(path)},
    )


async def handle_put(request: web.Request, ctx: HubContext) -> web.Response:
    """Handle PUT - Store a document, or change an ACL."""
    path = Path.from_string(request.path)
    user = extract_user(request)

    filename = special_filename(path)
    if filename == ACL_FILENAME:
        return await handle_put_acl(request, ctx, path.get_parent(), user)
    if filename is not None:
        raise NotFoundError(path)

    doc = await read_json_object(request)
    await ctx.store_for(path).update(path, doc, user)
    return web.json_response({"path": str(path)})


async def handle_put_acl(
    request: web.Request, ctx: HubContext, target: Path, user: User
) -> web.Response:
    """Handle PUT .../__acl__ - Set or clear a control on the parent path."""
    if not user.is_admin:
        raise OperationRestrictedError(target, user, Op.UPDATE)

    subject = User(required_param(request, "user"))
    op = op_param(request)
    clear = "clear" in request.query
    allow = request.query.get("allow", "false").lower() == "true"
    access = ctx.store_for(target).access

    if allow:
        if clear:
            await access.clear_allowed(target, subject, op)
        else:
            await access.set_allowed(target, subject, op)
    elif clear:
        await access.clear_restricted(target, subject, op)
    else:
        await access.set_restricted(target, subject, op)

    return web.json_response(
        {
            "path": str(target),
            "user": subject.effective_id,
            "op": op.value,
            "control": "allow" if allow else "restrict",
            "cleared": clear,
        }
    )


async def handle_delete(request: web.Request, ctx: HubContext) -> web.Response:
    """Handle DELETE - Delete a document, indexes or persistent queries."""
    path = Path.from_string(request.path)
    user = extract_user(request)

    filename = special_filename(path)
    if filename == INDEX_FILENAME:
        target = path.get_parent()
        store = ctx.store_for(target)
        query_ids = request.query.getall("query_id", [])
        if query_ids:
            await store.delete_queries(user, *query_ids)
            return web.json_response({"deleted": query_ids})
        await store.delete_indexes(target, user)
        return web.json_response({"path": str(target), "status": "scheduled"}, status=202)
    if filename is not None:
        raise NotFoundError(path)

    await ctx.store_for(path).delete(user, path)
    return web.json_response({"path": str(path)})


async def run_http_server(
    app: web.Application,
    host: str = "0.0.0.0",
    port: int = 8080,
) -> web.AppRunner:
    """Start serving app; the caller owns the returned runner.

    Args:
        app: Application from create_http_app
        host: Host to bind to
        port: Port to listen on

    Returns:
        The started runner, stop it with ``await runner.cleanup()``
    """
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server running on http://{host}:{port}")
    return runner
