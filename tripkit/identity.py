"""
Identity lookup. Authentication itself lives upstream (the auth proxy or the
managed backend); this module only answers "who is acting".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from tripkit.types import UserRecord

USER_HEADER = "x-user-id"


class Identity(Protocol):
    def current_user(self) -> Optional[UserRecord]:
        ...


@dataclass(frozen=True)
class StaticIdentity:
    """Identity fixed at construction, e.g. from a verified request header."""

    user_id: Optional[str] = None

    def current_user(self) -> Optional[UserRecord]:
        if not self.user_id or not self.user_id.strip():
            return None
        return UserRecord(id=self.user_id.strip())


def identity_from_headers(headers) -> StaticIdentity:
    return StaticIdentity(headers.get(USER_HEADER))
