"""
Delivery of persistent query matches to endpoints.

The match backend reports, per matched record, the ids of every matching
query. MatchDelivery groups those ids by endpoint and queues one message
per endpoint, which the endpoint later drains.

Message format:
    {"object": {<document fields>, "path": "/a/b"}, "query_ids": [...]}

Invariants:
    - An endpoint receives at most one message per matched record
    - Queues are bounded per endpoint; the oldest message is dropped first
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from ..backends.base import SearchRecord
from .path import Path
from .query_id import QueryId
from .search_index import record_to_doc

logger = logging.getLogger(__name__)


class MatchDelivery:
    """Per-endpoint queues of match messages.

    Example:
        >>> delivery = MatchDelivery()
        >>> match_backend.set_match_handler(delivery.handle_match)
        >>> ...
        >>> delivery.drain("alice")
        [{'object': {'t': 'hi', 'path': '/a/b'}, 'query_ids': [...]}]
    """

    def __init__(self, max_pending_per_endpoint: int = 100) -> None:
        self.max_pending_per_endpoint = max_pending_per_endpoint
        self._queues: dict[str, deque[dict[str, Any]]] = {}

    async def handle_match(self, topic: str, query_ids: list[str], record: SearchRecord) -> None:
        matched = record_to_doc(record)
        matched["path"] = str(Path.from_doc_id(record.doc_id))

        by_endpoint: dict[str, list[str]] = {}
        for query_id in query_ids:
            try:
                parsed = QueryId.from_string(query_id)
            except ValueError:
                logger.warning(f"Ignoring match for malformed query id: {query_id!r}")
                continue
            by_endpoint.setdefault(parsed.endpoint_id, []).append(query_id)

        for endpoint_id, ids in by_endpoint.items():
            queue = self._queues.get(endpoint_id)
            if queue is None:
                queue = self._queues[endpoint_id] = deque(maxlen=self.max_pending_per_endpoint)
            if len(queue) == queue.maxlen:
                logger.warning(
                    "Dropping oldest match message",
                    extra={"endpoint_id": endpoint_id, "topic": topic},
                )
            queue.append({"object": dict(matched), "query_ids": ids})
            logger.debug(f"Queued match for {endpoint_id}: {ids}")

    def pending(self, endpoint_id: str) -> int:
        queue = self._queues.get(endpoint_id)
        return 0 if queue is None else len(queue)

    def drain(self, endpoint_id: str) -> list[dict[str, Any]]:
        """Return and clear the endpoint's pending messages, oldest first."""
        queue = self._queues.pop(endpoint_id, None)
        return [] if queue is None else list(queue)
