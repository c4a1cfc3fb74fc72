from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, RecordNotFound
from gatehouse.storage.models import MUTABLE_USER_FIELDS, User, utcnow


class MemoryStore:
    """In-memory account store for tests and local development.

    Returned users are copies so callers cannot mutate stored state without
    going through ``update_user``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone_number: Optional[str] = None,
        tenant_id: str = "public",
        is_verified: bool = False,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
                tenant_id=tenant_id,
                is_verified=is_verified,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if not tenant_id or u.tenant_id == tenant_id
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> User:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: str) -> None:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
