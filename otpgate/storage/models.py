from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Roles an identity can hold."""

    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"

    @property
    def is_elevated(self) -> bool:
        return self in ELEVATED_ROLES


ELEVATED_ROLES = frozenset({Role.ADMIN, Role.SUPERADMIN})


@dataclass
class Identity:
    id: str
    email: str
    name: Optional[str] = None
    role: Role = Role.CUSTOMER
    is_verified: bool = False
    # "<code>:<expiry-epoch-millis>", see service.otp
    otp_challenge: Optional[str] = None
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def public_view(self) -> dict:
        """Projection safe to return to clients: no challenge, no stored token."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
