"""
Base protocols and types for the DataHub storage backends.

This module defines the three backend protocols the stores are built on,
along with the key, entity and record types passed across them:
- KeyedStore: authoritative keyed entity storage
- SearchBackend: tokenized full-text index
- MatchBackend: persistent query registry with document matching

Invariants:
    - A Key is complete when it has a name or an id, never both
    - Key tokens are stable; they are the storage identity of an entity
    - Nested documents are EmbeddedEntity values, never plain dicts
    - None property values survive a put/get round trip

How to change safely:
    - Protocol changes require updating all implementations
    - Key token format changes require a data migration
"""

from __future__ import annotations

import json
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

# Field holding the whitespace-joined doc-ids of a document's ancestors.
SCOPE_FIELD = "INTERNAL__QUERY__FIELD__path"

KEY_TAG = "__key__"
EMBEDDED_TAG = "__embedded__"

_TOKEN_SEP = "/"
_ID_MARK = "#"


class BackendError(Exception):
    """Base exception for backend failures."""

    pass


class EntityNotFoundError(BackendError):
    """No entity is stored under the requested key."""

    def __init__(self, key: Key) -> None:
        super().__init__(f"Entity not found: {key.to_token()}")
        self.key = key


@dataclass(frozen=True)
class Key:
    """Identity of an entity in the keyed store.

    Each key names its parent, so the leaf key of a path carries the
    whole chain up to the root key.

    Attributes:
        kind: Entity kind
        name: Caller-given name (None for serial keys)
        id: Allocated serial id (None for named keys)
        parent: Parent key, None for top-level keys
    """

    kind: str
    name: str | None = None
    id: int | None = None
    parent: Key | None = None

    def __post_init__(self) -> None:
        if self.name is not None and self.id is not None:
            raise ValueError("Key may have a name or an id, not both")

    @property
    def is_complete(self) -> bool:
        return self.name is not None or self.id is not None

    @property
    def name_or_id(self) -> str | int | None:
        return self.name if self.name is not None else self.id

    def with_id(self, key_id: int) -> Key:
        """Return a complete copy of this key with the given serial id."""
        return Key(self.kind, None, key_id, self.parent)

    def to_token(self) -> str:
        """Encode the key chain as a single storage string.

        Example:
            >>> Key("path", "b", parent=Key("path", "ROOT")).to_token()
            'path:ROOT/path:b'
        """
        if not self.is_complete:
            raise ValueError(f"Incomplete key has no token: {self}")
        if self.name is not None:
            element = f"{self.kind}:{self.name}"
        else:
            element = f"{self.kind}:{_ID_MARK}{self.id}"
        if self.parent is None:
            return element
        return self.parent.to_token() + _TOKEN_SEP + element

    @classmethod
    def from_token(cls, token: str) -> Key:
        """Decode a token produced by to_token."""
        key: Key | None = None
        for element in token.split(_TOKEN_SEP):
            kind, _, value = element.partition(":")
            if not kind or not value:
                raise ValueError(f"Invalid key token: {token}")
            if value.startswith(_ID_MARK):
                key = cls(kind, None, int(value[1:]), key)
            else:
                key = cls(kind, value, None, key)
        if key is None:
            raise ValueError(f"Invalid key token: {token}")
        return key


class EmbeddedEntity(dict):
    """A nested property container stored inside an entity."""


@dataclass
class Entity:
    """A keyed record in the primary store.

    Attributes:
        key: Entity key (may be incomplete before the first put)
        properties: Property values
    """

    key: Key
    properties: dict[str, Any] = field(default_factory=dict)


def encode_properties(properties: dict[str, Any]) -> str:
    """Serialize entity properties to JSON, tagging keys and embedded entities."""
    return json.dumps({name: _encode_value(value) for name, value in properties.items()})


def decode_properties(data: str) -> dict[str, Any]:
    """Reverse of encode_properties."""
    return {name: _decode_value(value) for name, value in json.loads(data).items()}


def _encode_value(value: Any) -> Any:
    if isinstance(value, Key):
        return {KEY_TAG: value.to_token()}
    if isinstance(value, EmbeddedEntity):
        return {EMBEDDED_TAG: {k: _encode_value(v) for k, v in value.items()}}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    if isinstance(value, dict):
        raise TypeError("Nested properties must be EmbeddedEntity values")
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if KEY_TAG in value:
            return Key.from_token(value[KEY_TAG])
        if EMBEDDED_TAG in value:
            return EmbeddedEntity(
                {k: _decode_value(v) for k, v in value[EMBEDDED_TAG].items()}
            )
        raise ValueError(f"Untagged nested property: {value}")
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    return value


class FieldType(Enum):
    """Field types of the tokenized index."""

    TEXT = "TEXT"
    HTML = "HTML"
    ATOM = "ATOM"
    NUMBER = "NUMBER"
    DATE = "DATE"


class MatchFieldType(Enum):
    """Field types understood by the match backend."""

    STRING = "STRING"
    TEXT = "TEXT"
    DOUBLE = "DOUBLE"


@dataclass(frozen=True)
class SearchField:
    """One typed field of an indexable record."""

    name: str
    type: FieldType
    value: Any

    def text(self) -> str:
        """Tokenizable text for this field."""
        if isinstance(self.value, str):
            return self.value
        return json.dumps(self.value)


@dataclass
class SearchRecord:
    """A document as seen by the search and match backends.

    Attributes:
        doc_id: Search-safe document id
        fields: Typed fields, including the scope field
    """

    doc_id: str
    fields: list[SearchField] = field(default_factory=list)

    def get_field(self, name: str) -> SearchField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None


@dataclass
class ScoredRecord:
    """Search hit with its relevance rank (lower is better)."""

    record: SearchRecord
    rank: float


@dataclass
class Subscription:
    """A registered persistent query.

    Attributes:
        topic: Topic the query is registered on
        sub_id: Subscription id
        query: Query text
        expires_at: Expiry (Unix seconds), 0 for none
        schema: Field types the query was registered with
    """

    topic: str
    sub_id: str
    query: str
    expires_at: int
    schema: dict[str, MatchFieldType] = field(default_factory=dict)


# Called with (topic, matching subscription ids, matched record).
MatchHandler = Callable[[str, list[str], SearchRecord], Any]


@runtime_checkable
class KeyedStore(Protocol):
    """Protocol for the authoritative keyed store.

    Consistency contract:
        - get/put/delete are strongly consistent per key
        - query results may lag behind recent writes
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create storage structures if needed."""
        ...

    @abstractmethod
    async def get(self, key: Key) -> Entity:
        """Fetch an entity.

        Raises:
            EntityNotFoundError: If no entity is stored under key
        """
        ...

    @abstractmethod
    async def exists(self, key: Key) -> bool:
        ...

    @abstractmethod
    async def put(self, entity: Entity) -> Key:
        """Store an entity, allocating a serial id for an incomplete key.

        Returns:
            The complete key the entity was stored under
        """
        ...

    @abstractmethod
    async def delete(self, *keys: Key) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        kind: str | None,
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Entity]:
        """Entities whose properties equal the given filters, in insertion order.

        Args:
            kind: Restrict to entities of this kind, or None for any kind
        """
        ...


@runtime_checkable
class SearchBackend(Protocol):
    """Protocol for the tokenized search backend."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def add(self, index_name: str, record: SearchRecord) -> None:
        """Add or replace a record."""
        ...

    @abstractmethod
    async def remove(self, index_name: str, *doc_ids: str) -> None:
        ...

    @abstractmethod
    async def get(self, index_name: str, doc_id: str) -> SearchRecord | None:
        ...

    @abstractmethod
    async def search(
        self,
        index_name: str,
        query: str,
        offset: int = 0,
        limit: int = 10,
    ) -> list[ScoredRecord]:
        """Run a query.

        Raises:
            BackendError: If the query cannot be executed
        """
        ...

    @abstractmethod
    async def list_ids(
        self,
        index_name: str,
        start_after: str | None = None,
        limit: int = 100,
    ) -> list[str]:
        """One page of doc ids in ascending order, after start_after."""
        ...


@runtime_checkable
class MatchBackend(Protocol):
    """Protocol for the persistent query (subscription) backend."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    def set_match_handler(self, handler: MatchHandler | None) -> None:
        ...

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        sub_id: str,
        duration: int,
        query: str,
        schema: dict[str, MatchFieldType],
    ) -> None:
        """Register or replace a subscription.

        Args:
            duration: Lifetime in seconds, 0 for unlimited

        Raises:
            BackendError: If the query is not valid
        """
        ...

    @abstractmethod
    async def unsubscribe(self, topic: str, sub_id: str) -> None:
        ...

    @abstractmethod
    async def list_subscriptions(
        self,
        topic: str,
        start_id: str = "",
        limit: int = 100,
        expires_before: int = 0,
    ) -> list[Subscription]:
        """Subscriptions with id >= start_id in ascending id order.

        Args:
            expires_before: Only subscriptions expiring before this time
                (Unix seconds), or 0 for no expiry filter
        """
        ...

    @abstractmethod
    async def match(self, topic: str, record: SearchRecord) -> list[str]:
        """Match a record against the topic's active subscriptions.

        Returns:
            Ids of matching subscriptions (also passed to the match handler)
        """
        ...

