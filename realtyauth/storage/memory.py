from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from realtyauth.logging import get_logger
from realtyauth.storage.errors import ConstraintViolation, StoreUnavailable
from realtyauth.storage.models import DEFAULT_ROLE, UserAccount, normalize_email, utcnow


class MemoryStore:
    """In-process credential store with an optional JSON snapshot on disk."""

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_loaded", path=str(self._state_path()), users=len(self.users)
                )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _snapshot(user: UserAccount) -> UserAccount:
        """Detached copy so callers never mutate stored records in place."""
        return replace(
            user,
            permissions=list(user.permissions),
            metadata=dict(user.metadata) if user.metadata else user.metadata,
        )

    def verify_connection(self) -> None:
        return None

    # user accounts
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = DEFAULT_ROLE,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        metadata: Optional[Dict] = None,
    ) -> UserAccount:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = UserAccount(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role or DEFAULT_ROLE,
                permissions=list(permissions or []),
                is_active=is_active,
                is_email_verified=is_email_verified,
                created_at=now,
                updated_at=now,
                metadata=metadata.copy() if metadata else None,
            )
            self.users[user.id] = user
            try:
                self._persist_state()
            except StoreUnavailable:
                del self.users[user.id]
                raise
            self.logger.info("user_created", user_id=user.id)
            return self._snapshot(user)

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == normalized and u.is_active
                ),
                None,
            )
            return self._snapshot(user) if user else None

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        if not user_id:
            return None
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.is_active:
                return None
            return self._snapshot(user)

    def get_user_by_refresh_token(
        self, refresh_token: str, *, active_only: bool = True
    ) -> Optional[UserAccount]:
        if not refresh_token or not refresh_token.strip():
            return None
        with self._data_lock:
            for user in self.users.values():
                if user.refresh_token != refresh_token:
                    continue
                if active_only and not user.is_active:
                    continue
                return self._snapshot(user)
            return None

    def _update(self, user_id: str, **changes) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            previous = replace(user)
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            try:
                self._persist_state()
            except StoreUnavailable:
                self.users[user_id] = previous
                raise
            return True

    def update_refresh_token(
        self, user_id: str, refresh_token: str, refresh_token_expiry: datetime
    ) -> bool:
        return self._update(
            user_id,
            refresh_token=refresh_token,
            refresh_token_expiry=refresh_token_expiry,
        )

    def update_last_login(self, user_id: str) -> bool:
        return self._update(user_id, last_login=utcnow())

    def increment_failed_login_attempts(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._update(user_id, failed_login_attempts=user.failed_login_attempts + 1)
            return user.failed_login_attempts

    def reset_failed_login_attempts(self, user_id: str) -> bool:
        return self._update(user_id, failed_login_attempts=0, lockout_end=None)

    def lock_user_account(self, user_id: str, lockout_end: datetime) -> bool:
        return self._update(user_id, lockout_end=lockout_end, failed_login_attempts=0)

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        return self._update(user_id, is_active=is_active)

    def update_user_role(self, user_id: str, role: str) -> Optional[UserAccount]:
        with self._data_lock:
            if not self._update(user_id, role=role):
                return None
            return self._snapshot(self.users[user_id])

    # persistence
    def _serialize_user(self, user: UserAccount) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "permissions": list(user.permissions),
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "refresh_token": user.refresh_token,
            "refresh_token_expiry": self._serialize_datetime(user.refresh_token_expiry),
            "failed_login_attempts": user.failed_login_attempts,
            "lockout_end": self._serialize_datetime(user.lockout_end),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "metadata": user.metadata,
        }

    def _deserialize_user(self, data: dict) -> UserAccount:
        return UserAccount(
            id=data["id"],
            email=data["email"],
            password_hash=data.get("password_hash", ""),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=data.get("role", DEFAULT_ROLE),
            permissions=list(data.get("permissions") or []),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            refresh_token=data.get("refresh_token"),
            refresh_token_expiry=self._deserialize_datetime(data.get("refresh_token_expiry")),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            lockout_end=self._deserialize_datetime(data.get("lockout_end")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            metadata=data.get("metadata"),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable() from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        return True
