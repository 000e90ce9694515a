"""Identity boundary: the acting principal handed to every service call."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from marketplace.errors import AuthorizationError


@dataclass(frozen=True)
class Principal:
    user_id: str
    is_admin: bool = False

    @classmethod
    def from_session(
        cls,
        session_data,
        admin_user_ids: Iterable[str] = (),
    ) -> Optional["Principal"]:
        user_id = session_data.get("user_id")
        if user_id is None or str(user_id).strip() == "":
            return None
        user_id = str(user_id)
        is_admin = bool(session_data.get("is_admin")) or user_id in set(admin_user_ids)
        return cls(user_id=user_id, is_admin=is_admin)


def require_principal(actor: Optional[Principal]) -> Principal:
    if actor is None:
        raise AuthorizationError("Authentication required")
    return actor


def require_admin(actor: Optional[Principal]) -> Principal:
    actor = require_principal(actor)
    if not actor.is_admin:
        raise AuthorizationError("Admin privileges required", user_id=actor.user_id)
    return actor
