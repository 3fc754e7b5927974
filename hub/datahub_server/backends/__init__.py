"""
Storage backends for DataHub.

This module provides the pluggable backend interfaces the stores run on:
- KeyedStore: authoritative keyed entity storage
- SearchBackend: tokenized full-text index
- MatchBackend: persistent queries matched against new documents

SQLite implementations of all three ship with the server.

Invariants:
    - Backends raise BackendError for their own failures
    - Backends know nothing about paths, users or ACLs

How to change safely:
    - New backends must implement the protocols in base.py
    - Keep the FTS tokenizer identical across search and match backends
"""

from .base import (
    SCOPE_FIELD,
    BackendError,
    EmbeddedEntity,
    Entity,
    EntityNotFoundError,
    FieldType,
    Key,
    KeyedStore,
    MatchBackend,
    MatchFieldType,
    MatchHandler,
    ScoredRecord,
    SearchBackend,
    SearchField,
    SearchRecord,
    Subscription,
)
from .sqlite_match import SqliteMatchBackend
from .sqlite_search import SqliteSearchBackend
from .sqlite_store import SqliteKeyedStore

__all__ = [
    # Protocols and types
    "KeyedStore",
    "SearchBackend",
    "MatchBackend",
    "MatchHandler",
    "Key",
    "Entity",
    "EmbeddedEntity",
    "FieldType",
    "MatchFieldType",
    "SearchField",
    "SearchRecord",
    "ScoredRecord",
    "Subscription",
    "SCOPE_FIELD",
    "BackendError",
    "EntityNotFoundError",
    # Implementations
    "SqliteKeyedStore",
    "SqliteSearchBackend",
    "SqliteMatchBackend",
]
