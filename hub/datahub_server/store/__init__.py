"""
Resource storage for DataHub.

This module layers the resource model over the keyed and search backends:
- path: hierarchical paths and their key and doc-id encodings
- object_store / acl: authoritative documents guarded by access control
- schema / search_index: search corpora and persistent queries
- composite: the fan-out store the API serves

Invariants:
    - Authoritative writes happen before search writes
    - Access checks happen before any read or write
"""

from .acl import AccessControl, ControlType, Op, SecureObjectStore
from .composite import CompositeStore
from .matches import MatchDelivery
from .object_store import ObjectStore
from .path import ROOT, Path, Segment
from .query_id import QueryId
from .schema import SchemaManager
from .search_index import CorpusRegistry, SearchIndex

__all__ = [
    "AccessControl",
    "CompositeStore",
    "ControlType",
    "CorpusRegistry",
    "MatchDelivery",
    "ObjectStore",
    "Op",
    "Path",
    "QueryId",
    "ROOT",
    "SchemaManager",
    "SearchIndex",
    "SecureObjectStore",
    "Segment",
]
