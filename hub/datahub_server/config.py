"""
Configuration management for the DataHub server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Corpora are listed parents first
    - Configuration is validated once at startup

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable, deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .errors import MalformedPathError
from .store.path import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/datahub"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/datahub"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SearchConfig:
    """Search and persistent query configuration.

    Attributes:
        default_limit: Results per search when no limit is given
        max_duration: Maximum persistent query lifetime in seconds
        batch_size: Ids per batch in index deletion sweeps
        page_size: Ids fetched per page in index deletion sweeps
    """

    default_limit: int = 10
    max_duration: int = 3600
    batch_size: int = 100
    page_size: int = 100

    @classmethod
    def from_env(cls) -> SearchConfig:
        """Load configuration from environment variables."""
        return cls(
            default_limit=int(os.getenv("SEARCH_DEFAULT_LIMIT", "10")),
            max_duration=int(os.getenv("SEARCH_MAX_DURATION", "3600")),
            batch_size=int(os.getenv("SEARCH_BATCH_SIZE", "100")),
            page_size=int(os.getenv("SEARCH_PAGE_SIZE", "100")),
        )


def parse_corpora(value: str) -> tuple[tuple[str, str | None], ...]:
    """Parse "path[=parent],..." into (path, parent) pairs.

    Example:
        >>> parse_corpora("/, /chat=/")
        (('/', None), ('/chat', '/'))
    """
    corpora = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        path, sep, parent = entry.partition("=")
        corpora.append((path.strip(), parent.strip() if sep else None))
    return tuple(corpora)


@dataclass(frozen=True)
class CorpusConfig:
    """Search corpora served by this process.

    Attributes:
        corpora: (corpus path, parent corpus path or None) pairs, parents first
    """

    corpora: tuple[tuple[str, str | None], ...] = (("/", None),)

    @classmethod
    def from_env(cls) -> CorpusConfig:
        """Load configuration from environment variables."""
        return cls(corpora=parse_corpora(os.getenv("CORPORA", "/")))


@dataclass(frozen=True)
class TaskConfig:
    """Background batch executor configuration.

    Attributes:
        workers: Number of worker tasks
        max_pending: Maximum queued batches before producers wait
    """

    workers: int = 2
    max_pending: int = 1000

    @classmethod
    def from_env(cls) -> TaskConfig:
        """Load configuration from environment variables."""
        return cls(
            workers=int(os.getenv("TASK_WORKERS", "2")),
            max_pending=int(os.getenv("TASK_MAX_PENDING", "1000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
    """

    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Local storage configuration
        search: Search configuration
        corpus: Corpus layout
        tasks: Batch executor configuration
        http: HTTP server configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    corpus: CorpusConfig = field(default_factory=CorpusConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            search=SearchConfig.from_env(),
            corpus=CorpusConfig.from_env(),
            tasks=TaskConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.corpus.corpora:
            raise ValueError("CORPORA must name at least one corpus")

        seen: set[Path] = set()
        for corpus, parent in self.corpus.corpora:
            try:
                corpus_path = Path.from_string(corpus)
                parent_path = None if parent is None else Path.from_string(parent)
            except MalformedPathError as e:
                raise ValueError(f"Invalid corpus path in CORPORA: {e}") from e
            if corpus_path in seen:
                raise ValueError(f"Duplicate corpus in CORPORA: {corpus}")
            if parent_path is not None and parent_path not in seen:
                raise ValueError(f"Parent corpus {parent} must be listed before {corpus}")
            seen.add(corpus_path)

        if self.search.max_duration < 0:
            raise ValueError("SEARCH_MAX_DURATION must not be negative")
        if self.search.batch_size <= 0 or self.search.page_size <= 0:
            raise ValueError("SEARCH_BATCH_SIZE and SEARCH_PAGE_SIZE must be positive")
        if self.tasks.workers <= 0:
            raise ValueError("TASK_WORKERS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be json or text")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "corpora": [c for c, _ in self.corpus.corpora],
                "http_bind": f"{self.http.host}:{self.http.port}",
                "task_workers": self.tasks.workers,
                "max_duration": self.search.max_duration,
                "log_level": self.observability.log_level,
            },
        )
