"""
Shared fixtures for DataHub tests.

The hub fixture wires a complete stack on SQLite in a temporary
directory: keyed store, search and match backends, task queue, and one
CompositeStore per corpus.
"""

import tempfile
from dataclasses import dataclass, field

import pytest

from hub.datahub_server.backends import SqliteKeyedStore, SqliteMatchBackend, SqliteSearchBackend
from hub.datahub_server.store import (
    AccessControl,
    CompositeStore,
    CorpusRegistry,
    MatchDelivery,
    Path,
    SchemaManager,
    SearchIndex,
    SecureObjectStore,
)
from hub.datahub_server.tasks import TaskQueue
from hub.datahub_server.users import User


@dataclass
class Hub:
    """A wired DataHub stack."""

    keyed_store: SqliteKeyedStore
    search_backend: SqliteSearchBackend
    match_backend: SqliteMatchBackend
    task_queue: TaskQueue
    access: AccessControl
    objects: SecureObjectStore
    schemas: SchemaManager
    registry: CorpusRegistry = field(default_factory=CorpusRegistry)
    delivery: MatchDelivery = field(default_factory=MatchDelivery)
    stores: dict[str, CompositeStore] = field(default_factory=dict)

    async def add_corpus(self, corpus: str, parent: str | None = None) -> CompositeStore:
        index = SearchIndex(
            Path.from_string(corpus),
            self.registry,
            self.search_backend,
            self.match_backend,
            self.schemas,
            self.task_queue,
            parent_corpus_path=None if parent is None else Path.from_string(parent),
        )
        await index.initialize()
        store = CompositeStore(self.objects, index)
        self.stores[corpus] = store
        return store


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def alice():
    return User("alice")


@pytest.fixture
def bob():
    return User("bob")


@pytest.fixture
def admin():
    return User("root", is_admin=True)


@pytest.fixture
async def keyed_store(data_dir):
    """Initialized keyed store."""
    store = SqliteKeyedStore(data_dir, wal_mode=False)
    await store.initialize()
    return store


@pytest.fixture
async def hub(data_dir):
    """Complete stack without corpora; add them with hub.add_corpus()."""
    keyed_store = SqliteKeyedStore(data_dir, wal_mode=False)
    search_backend = SqliteSearchBackend(data_dir, wal_mode=False)
    match_backend = SqliteMatchBackend(data_dir, wal_mode=False)
    await search_backend.initialize()
    await match_backend.initialize()

    access = AccessControl(keyed_store)
    objects = SecureObjectStore(keyed_store, access)
    await objects.initialize()

    task_queue = TaskQueue(workers=2)
    await task_queue.start()

    hub = Hub(
        keyed_store=keyed_store,
        search_backend=search_backend,
        match_backend=match_backend,
        task_queue=task_queue,
        access=access,
        objects=objects,
        schemas=SchemaManager(keyed_store),
    )
    match_backend.set_match_handler(hub.delivery.handle_match)

    yield hub

    await task_queue.stop()
