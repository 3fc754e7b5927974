"""
Error types for the DataHub server.

This module defines the exception taxonomy shared by the stores:
- DataHubError: Base exception
- MalformedPathError: Bad path syntax
- IncompleteKeyError: Key chain element without a name or id
- NotFoundError: Target resource absent
- OperationRestrictedError: ACL denial
- InvalidSubPathError: Search write outside its corpus
- UnknownParentCorpusError: Corpus constructed before its parent
- ServiceError: Wrapped failure from a backing service

Invariants:
    - All errors inherit from DataHubError
    - Errors carry a stable code for the HTTP layer
    - ServiceError always chains the backend failure as its cause

How to change safely:
    - New error types must inherit from DataHubError
    - Keep codes stable, clients match on them
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .store.path import Path
    from .users import User


class DataHubError(Exception):
    """Base exception for all DataHub errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DATAHUB_ERROR"
        self.details = details or {}


class MalformedPathError(DataHubError, ValueError):
    """Path string does not follow the path grammar."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="MALFORMED_PATH", details={"path": path})
        self.path = path


class IncompleteKeyError(DataHubError, ValueError):
    """A key chain element lacks a name or id."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INCOMPLETE_KEY")


class NotFoundError(DataHubError):
    """No record exists at the requested path."""

    def __init__(self, path: Path) -> None:
        super().__init__(str(path), code="NOT_FOUND", details={"path": str(path)})
        self.path = path


class OperationRestrictedError(DataHubError):
    """The ACL for a path restricts the operation for the user."""

    def __init__(self, path: Path, user: User, op: Any) -> None:
        op_name = getattr(op, "value", op)
        super().__init__(
            f"path({path}) restricts user({user.effective_id}) operation({op_name})",
            code="OPERATION_RESTRICTED",
            details={"path": str(path), "user": user.effective_id, "op": op_name},
        )
        self.path = path
        self.user = user
        self.op = op


class InvalidSubPathError(DataHubError, ValueError):
    """A search write targeted a path outside the corpus."""

    def __init__(self, path: Path, corpus_path: Path) -> None:
        super().__init__(
            f"path({path}) must be a sub-path of this corpusPath({corpus_path})",
            code="INVALID_SUB_PATH",
            details={"path": str(path), "corpus_path": str(corpus_path)},
        )
        self.path = path
        self.corpus_path = corpus_path


class UnknownParentCorpusError(DataHubError):
    """A corpus referenced a parent corpus that is not registered."""

    def __init__(self, corpus_path: Path, parent_corpus_path: Path) -> None:
        super().__init__(
            f"No such parent({parent_corpus_path}) for corpusPath({corpus_path})",
            code="UNKNOWN_PARENT_CORPUS",
            details={
                "corpus_path": str(corpus_path),
                "parent_corpus_path": str(parent_corpus_path),
            },
        )
        self.corpus_path = corpus_path
        self.parent_corpus_path = parent_corpus_path


class ServiceError(DataHubError):
    """Wraps a failure reported by a backing service."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SERVICE_ERROR")
