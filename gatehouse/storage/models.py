from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Columns an account owner may change after registration. Email is immutable.
MUTABLE_PROFILE_FIELDS = frozenset({"first_name", "last_name", "phone_number"})
# Columns the service itself may change (verification and login bookkeeping).
MUTABLE_USER_FIELDS = MUTABLE_PROFILE_FIELDS | {"is_verified", "is_active", "last_login_at"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    first_name: str = ""
    last_name: str = ""
    phone_number: Optional[str] = None
    tenant_id: str = "public"
    is_verified: bool = False
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
