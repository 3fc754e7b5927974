"""
Persistent query identifiers.

A QueryId packs (endpoint id, topic, query text) into one string,
"endpoint-->8--topic-->8--query". Sorting ids groups every query of an
endpoint together, so an endpoint's queries can be listed or deleted by
prefix.
"""

from __future__ import annotations

from dataclasses import dataclass

DELIM = "-->8--"


def endpoint_prefix(endpoint_id: str) -> str:
    """Prefix shared by every query id of an endpoint; the smallest such id."""
    return endpoint_id + DELIM


def validate_endpoint_id(endpoint_id: str) -> None:
    """
    Raises:
        ValueError: If endpoint_id would sort with internal query ids
    """
    if not endpoint_id or endpoint_id[0] <= " ":
        raise ValueError("Endpoint IDs must start with characters after the space character (0x20).")


@dataclass(frozen=True)
class QueryId:
    endpoint_id: str
    topic: str
    query: str = ""

    def __post_init__(self) -> None:
        if DELIM in self.endpoint_id or DELIM in self.topic:
            raise ValueError(f"Endpoint id and topic may not contain {DELIM!r}")

    def __str__(self) -> str:
        return endpoint_prefix(self.endpoint_id) + self.topic + DELIM + self.query

    @classmethod
    def from_string(cls, query_id: str) -> QueryId:
        parts = query_id.split(DELIM, 2)
        if len(parts) < 2:
            raise ValueError(f"Invalid query id: {query_id}")
        return cls(parts[0], parts[1], parts[2] if len(parts) == 3 else "")
