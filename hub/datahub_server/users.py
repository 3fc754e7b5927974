"""
Acting-user identity for DataHub operations.

Session and login handling live outside the server; requests arrive with
an already-resolved identity.
"""

from __future__ import annotations

from dataclasses import dataclass

ANONYMOUS_ID = "anonymous"


@dataclass(frozen=True)
class User:
    """The user an operation is performed for.

    Attributes:
        effective_id: Identifier checked against ACL records
        is_admin: Whether the user may run administrative operations
        name: Optional display name
    """

    effective_id: str
    is_admin: bool = False
    name: str | None = None

    def __str__(self) -> str:
        return self.effective_id


ANONYMOUS = User(ANONYMOUS_ID)
