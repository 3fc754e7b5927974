"""
Path-scoped access control for DataHub.

This module handles access control for documents:
- ACL records: per-path allow/restrict groups of user ids per operation
- Resolution: closest-ancestor-wins evaluation up to ROOT
- SecureObjectStore: an ObjectStore that checks before every operation

An ACL record for a path is stored in the keyed store beside the
resource it governs, under the same parent key with the "acl" kind.
There is no inheritance at rest: a record only ever describes its own
path, and inheritance happens during evaluation.

Invariants:
    - A missing ACL record means no explicit control, never deny
    - The closest ancestor asserting a control decides; when both allow
      and restrict are asserted the deeper assertion wins
    - Adding an existing user id and removing a missing one are no-ops
    - Access checks never depend on whether the target resource exists
    - ACL checks are performed before data access

How to change safely:
    - ACL key layout is persisted; changing it orphans existing records
    - Keep control group and op names stable, they are stored values
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from ..backends.base import Entity, EntityNotFoundError, Key, KeyedStore
from ..errors import OperationRestrictedError
from ..users import User
from .object_store import DEFAULT_LIMIT, ObjectStore, doc_to_properties, properties_to_doc
from .path import ACL_KIND, PATH_KIND, ROOT_NAME, Path

logger = logging.getLogger(__name__)


class Op(Enum):
    """Operations governed by ACLs."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class ControlType(Enum):
    """ACL control groups."""

    ALLOW = "allow"
    RESTRICT = "restrict"


def acl_key(path: Path) -> Key:
    """Key of the ACL record governing exactly path."""
    if path.is_root:
        return Key(ACL_KIND, ROOT_NAME)
    key = path.to_key()
    segment = path.segments[-1]
    if segment.kind == PATH_KIND:
        return Key(ACL_KIND, key.name, key.id, key.parent)
    return Key(ACL_KIND, str(segment), None, key.parent)


class AccessControl:
    """Resolves and mutates path ACLs.

    Example:
        >>> access = AccessControl(keyed_store)
        >>> await access.set_restricted(Path.from_string("/a"), user, Op.READ)
        >>> await access.is_restricted(Path.from_string("/a/b"), user, Op.READ)
        True
    """

    def __init__(self, keyed_store: KeyedStore) -> None:
        self.keyed_store = keyed_store
        self._lock = asyncio.Lock()

    async def get_acl(self, path: Path) -> dict[str, Any] | None:
        """The ACL record at exactly path, or None."""
        try:
            entity = await self.keyed_store.get(acl_key(path))
        except EntityNotFoundError:
            return None
        return properties_to_doc(entity.properties)

    async def save_acl(self, path: Path, acl: dict[str, Any]) -> None:
        await self.keyed_store.put(Entity(acl_key(path), doc_to_properties(acl)))
        logger.debug(f"saveAcl: path({path}) acl({acl})")

    async def control_level(self, path: Path, control: ControlType, user: User, op: Op) -> int:
        """Length of the closest ancestor of path (or path itself) asserting
        the control for (user, op), or -1 when none does."""
        for cur in path.ancestors():
            acl = await self.get_acl(cur)
            if acl is not None and _is_asserted(acl, control, user.effective_id, op):
                return len(cur)
        return -1

    async def is_restricted(self, path: Path, user: User, op: Op) -> bool:
        allow = await self.control_level(path, ControlType.ALLOW, user, op)
        restrict = await self.control_level(path, ControlType.RESTRICT, user, op)
        return allow < restrict

    async def is_allowed(self, path: Path, user: User, op: Op) -> bool:
        return not await self.is_restricted(path, user, op)

    async def assert_allowed(self, path: Path, user: User, op: Op) -> None:
        """
        Raises:
            OperationRestrictedError: If the ACLs restrict op on path for user
        """
        logger.debug(f"path({path}) uid({user.effective_id}) operation({op.value})")
        if await self.is_restricted(path, user, op):
            raise OperationRestrictedError(path, user, op)

    async def set_allowed(self, path: Path, user: User, op: Op) -> None:
        await self._set_control(path, ControlType.ALLOW, user, op)

    async def set_restricted(self, path: Path, user: User, op: Op) -> None:
        await self._set_control(path, ControlType.RESTRICT, user, op)

    async def clear_allowed(self, path: Path, user: User, op: Op) -> None:
        await self._clear_control(path, ControlType.ALLOW, user, op)

    async def clear_restricted(self, path: Path, user: User, op: Op) -> None:
        await self._clear_control(path, ControlType.RESTRICT, user, op)

    async def _set_control(self, path: Path, control: ControlType, user: User, op: Op) -> None:
        async with self._lock:
            acl = await self.get_acl(path) or {}
            uids = acl.setdefault(control.value, {}).setdefault(op.value, [])
            if user.effective_id in uids:
                return
            uids.append(user.effective_id)
            await self.save_acl(path, acl)

    async def _clear_control(self, path: Path, control: ControlType, user: User, op: Op) -> None:
        async with self._lock:
            acl = await self.get_acl(path)
            if acl is None:
                return
            uids = acl.get(control.value, {}).get(op.value)
            if not uids or user.effective_id not in uids:
                return
            # TODO: drop the op list and control group once they are empty
            acl[control.value][op.value] = [uid for uid in uids if uid != user.effective_id]
            await self.save_acl(path, acl)


def _is_asserted(acl: dict[str, Any], control: ControlType, uid: str, op: Op) -> bool:
    uids = acl.get(control.value, {}).get(op.value)
    if uids is None:
        return False
    if not isinstance(uids, list):
        raise ValueError(f"Corrupted ACL: {acl}")
    return uid in uids


class SecureObjectStore(ObjectStore):
    """ObjectStore that checks ACLs before each operation.

    Check mapping:
        create -> CREATE on the parent path
        delete -> DELETE on every target path, all checked before any delete
        retrieve, list -> READ on the path
        update -> UPDATE on the path; the check ignores existence, so an
            update creating a new document is checked like any other
    """

    def __init__(self, keyed_store: KeyedStore, access: AccessControl | None = None) -> None:
        super().__init__(keyed_store)
        self.access = access or AccessControl(keyed_store)

    async def create(
        self,
        parent: Path,
        doc: dict[str, Any],
        user: User,
        name: str | None = None,
    ) -> Path:
        await self.access.assert_allowed(parent, user, Op.CREATE)
        return await super().create(parent, doc, user, name=name)

    async def retrieve(self, path: Path, user: User) -> dict[str, Any]:
        await self.access.assert_allowed(path, user, Op.READ)
        return await super().retrieve(path, user)

    async def list(
        self,
        path: Path,
        user: User,
        offset: int = 0,
        limit: int = DEFAULT_LIMIT,
        fields: list[str] | None = None,
        order: list[int] | None = None,
    ) -> dict[str, dict[str, Any]]:
        await self.access.assert_allowed(path, user, Op.READ)
        return await super().list(path, user, offset=offset, limit=limit, fields=fields, order=order)

    async def update(self, path: Path, doc: dict[str, Any], user: User) -> None:
        await self.access.assert_allowed(path, user, Op.UPDATE)
        await super().update(path, doc, user)

    async def delete(self, user: User, *paths: Path) -> None:
        for path in paths:
            await self.access.assert_allowed(path, user, Op.DELETE)
        await super().delete(user, *paths)
