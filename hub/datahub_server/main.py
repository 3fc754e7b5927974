"""
DataHub Server - Main entry point.

This module starts the DataHub server with all components:
- SQLite keyed store (documents, ACLs, schemas)
- SQLite FTS5 search and match backends
- One search corpus per configured CORPORA entry
- Background task queue (index deletion sweeps)
- HTTP server

Usage:
    python -m hub.datahub_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Corpora are created parents first, so cascades always find a parent
    - The HTTP server starts only after every store is initialized
    - Graceful shutdown stops accepting requests before stopping workers

How to change safely:
    - Add new backends behind the protocols in backends/base.py
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path as FsPath

import json_log_formatter
from aiohttp import web

from .api import create_http_app, run_http_server
from .backends import SqliteKeyedStore, SqliteMatchBackend, SqliteSearchBackend
from .config import ServerConfig
from .store import (
    AccessControl,
    CompositeStore,
    CorpusRegistry,
    MatchDelivery,
    Path,
    SchemaManager,
    SearchIndex,
    SecureObjectStore,
)
from .tasks import TaskQueue

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """DataHub Server orchestrator.

    Manages the lifecycle of all server components:
    - Storage backends
    - Corpora and their composite stores
    - Task queue
    - HTTP server

    Attributes:
        config: Server configuration
        keyed_store: Authoritative entity store
        registry: Corpora by root path
        stores: One composite store per corpus
        delivery: Match queues drained over HTTP

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.keyed_store: SqliteKeyedStore | None = None
        self.search_backend: SqliteSearchBackend | None = None
        self.match_backend: SqliteMatchBackend | None = None
        self.task_queue: TaskQueue | None = None
        self.registry = CorpusRegistry()
        self.stores: list[CompositeStore] = []
        self.delivery = MatchDelivery()
        self.http_runner: web.AppRunner | None = None

    async def setup(self) -> None:
        """Create and initialize every component except the HTTP server."""
        storage = self.config.storage
        data_dir = FsPath(storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        self.keyed_store = SqliteKeyedStore(
            data_dir=str(data_dir),
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.search_backend = SqliteSearchBackend(
            data_dir=str(data_dir),
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.match_backend = SqliteMatchBackend(
            data_dir=str(data_dir),
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        await self.search_backend.initialize()
        await self.match_backend.initialize()
        self.match_backend.set_match_handler(self.delivery.handle_match)

        self.task_queue = TaskQueue(
            workers=self.config.tasks.workers,
            max_pending=self.config.tasks.max_pending,
        )
        await self.task_queue.start()

        access = AccessControl(self.keyed_store)
        objects = SecureObjectStore(self.keyed_store, access)
        await objects.initialize()
        schemas = SchemaManager(self.keyed_store)

        search = self.config.search
        for corpus, parent in self.config.corpus.corpora:
            index = SearchIndex(
                Path.from_string(corpus),
                self.registry,
                self.search_backend,
                self.match_backend,
                schemas,
                self.task_queue,
                parent_corpus_path=None if parent is None else Path.from_string(parent),
                max_duration=search.max_duration,
                batch_size=search.batch_size,
                page_size=search.page_size,
            )
            await index.initialize()
            self.stores.append(CompositeStore(objects, index))

        logger.info(f"Initialized {len(self.stores)} corpora")

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting DataHub server")
        self.config.log_config()

        try:
            await self.setup()

            app = create_http_app(
                self.stores,
                self.delivery,
                default_limit=self.config.search.default_limit,
            )
            self.http_runner = await run_http_server(
                app, host=self.config.http.host, port=self.config.http.port
            )

            self._running = True
            logger.info("DataHub server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and self.http_runner is None and self.task_queue is None:
            return

        logger.info("Stopping DataHub server")

        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        if self.task_queue:
            await self.task_queue.stop()
            self.task_queue = None

        self._running = False
        logger.info("DataHub server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
