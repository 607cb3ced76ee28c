from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from otpgate.logging import get_logger
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import Identity, Role


class MemoryStore:
    """In-process identity store, optionally snapshotted to a JSON file.

    Reads return copies so callers never mutate stored records by accident;
    every write goes through a method that holds the data lock.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.state_dir is not None
        return self.state_dir / "identities.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _find_by_email(self, email: str) -> Optional[Identity]:
        return next((i for i in self.identities.values() if i.email == email), None)

    # identity
    def create_identity(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: Role = Role.CUSTOMER,
        is_verified: bool = False,
    ) -> Identity:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=Role(role),
                is_verified=is_verified,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return replace(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self._find_by_email(email)
            return replace(identity) if identity else None

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._data_lock:
            ordered = sorted(
                self.identities.values(), key=lambda i: i.created_at, reverse=True
            )
            return [replace(i) for i in ordered[:limit]]

    def update_profile(
        self,
        identity_id: str,
        *,
        name: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            if name is not None:
                identity.name = name
            if role is not None:
                identity.role = Role(role)
            identity.updated_at = self._now()
            self._persist_state()
            return replace(identity)

    def mark_verified(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.is_verified = True
            identity.updated_at = self._now()
            self._persist_state()
            return replace(identity)

    def set_refresh_token(self, identity_id: str, refresh_token: Optional[str]) -> bool:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return False
            identity.refresh_token = refresh_token
            identity.updated_at = self._now()
            self._persist_state()
            return True

    # otp challenge slot
    def set_otp_challenge(self, email: str, challenge: str) -> bool:
        with self._data_lock:
            identity = self._find_by_email(email)
            if not identity:
                return False
            identity.otp_challenge = challenge
            identity.updated_at = self._now()
            self._persist_state()
            return True

    def get_otp_challenge(self, email: str) -> Optional[str]:
        with self._data_lock:
            identity = self._find_by_email(email)
            return identity.otp_challenge if identity else None

    def clear_otp_challenge(self, email: str) -> None:
        with self._data_lock:
            identity = self._find_by_email(email)
            if not identity or identity.otp_challenge is None:
                return
            identity.otp_challenge = None
            identity.updated_at = self._now()
            self._persist_state()

    def consume_otp_challenge(self, email: str, expected: str) -> bool:
        """Clear the challenge only if it still equals ``expected``."""
        with self._data_lock:
            identity = self._find_by_email(email)
            if not identity or identity.otp_challenge != expected:
                return False
            identity.otp_challenge = None
            identity.updated_at = self._now()
            self._persist_state()
            return True

    # snapshot
    @staticmethod
    def _serialize_identity(identity: Identity) -> dict:
        return {
            "id": identity.id,
            "email": identity.email,
            "name": identity.name,
            "role": identity.role.value,
            "is_verified": identity.is_verified,
            "otp_challenge": identity.otp_challenge,
            "refresh_token": identity.refresh_token,
            "created_at": identity.created_at.isoformat(),
            "updated_at": identity.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_identity(data: dict) -> Identity:
        return Identity(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            role=Role(data.get("role", Role.CUSTOMER.value)),
            is_verified=bool(data.get("is_verified", False)),
            otp_challenge=data.get("otp_challenge"),
            refresh_token=data.get("refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "identities": [
                self._serialize_identity(i) for i in self.identities.values()
            ]
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist identity state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            entry["id"]: self._deserialize_identity(entry)
            for entry in data.get("identities", [])
        }
        self.logger.info("identity_state_loaded", count=len(self.identities))
        return True
