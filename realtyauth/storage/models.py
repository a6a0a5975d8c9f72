from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

DEFAULT_ROLE = "User"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserAccount:
    id: str
    email: str
    password_hash: str = field(default="", repr=False)
    first_name: str = ""
    last_name: str = ""
    role: str = DEFAULT_ROLE
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    is_email_verified: bool = False
    refresh_token: Optional[str] = field(default=None, repr=False)
    refresh_token_expiry: Optional[datetime] = None
    failed_login_attempts: int = 0
    lockout_end: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked_out(self, now: datetime) -> bool:
        return self.lockout_end is not None and self.lockout_end > now


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()
