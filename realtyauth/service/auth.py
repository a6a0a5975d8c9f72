from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from realtyauth.config import Settings
from realtyauth.logging import get_logger
from realtyauth.service.errors import (
    AccountConflictError,
    AuthenticationError,
    InvalidCredentialsError,
    RefreshRejectedError,
    TokenInvalidError,
)
from realtyauth.service.tokens import TokenService
from realtyauth.storage.errors import ConstraintViolation
from realtyauth.storage.models import DEFAULT_ROLE, UserAccount

logger = get_logger(__name__)


class CredentialStore(Protocol):
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
    ) -> UserAccount: ...

    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def get_user_by_refresh_token(
        self, refresh_token: str, *, active_only: bool = True
    ) -> Optional[UserAccount]: ...

    def update_refresh_token(
        self, user_id: str, refresh_token: str, refresh_token_expiry: datetime
    ) -> bool: ...

    def update_last_login(self, user_id: str) -> bool: ...

    def increment_failed_login_attempts(self, user_id: str) -> Optional[int]: ...

    def reset_failed_login_attempts(self, user_id: str) -> bool: ...

    def lock_user_account(self, user_id: str, lockout_end: datetime) -> bool: ...

    def set_user_active(self, user_id: str, is_active: bool) -> bool: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[UserAccount]: ...

    def verify_connection(self) -> None: ...


@dataclass
class UserProfile:
    """Account fields safe to hand back to clients."""

    id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    is_email_verified: bool = False
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: UserAccount) -> "UserProfile":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            full_name=account.full_name,
            role=account.role,
            permissions=list(account.permissions),
            is_active=account.is_active,
            is_email_verified=account.is_email_verified,
            last_login=account.last_login,
            created_at=account.created_at,
        )


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_token_expires_at: datetime
    user: UserProfile
    token_type: str = "bearer"


class AuthService:
    """Login, registration and refresh-token lifecycle over a credential store.

    This service is the only writer of the authentication fields on an
    account (password hash, refresh token, failed attempts, lockout).
    Store calls and argon2 work run in worker threads via ``asyncio.to_thread``.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.tokens = tokens
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: UserAccount, password: str) -> bool:
        if not account.password_hash:
            self.logger.warning("password_record_missing", user_id=account.id)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", user_id=account.id)
            return False

    # tokens
    def _issue_session(
        self,
        account: UserAccount,
        *,
        remember_me: bool,
        rejection: type[AuthenticationError] = InvalidCredentialsError,
    ) -> AuthResult:
        access_token = self.tokens.issue_access_token(account)
        refresh_token = self.tokens.issue_refresh_token()
        refresh_expiry = self.tokens.refresh_token_expiry(remember_me)
        # the account can vanish between lookup and write
        if not self.store.update_refresh_token(account.id, refresh_token, refresh_expiry):
            self.logger.warning("refresh_token_not_stored", user_id=account.id)
            raise rejection()
        account.refresh_token = refresh_token
        account.refresh_token_expiry = refresh_expiry
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self.tokens.get_token_expiration(access_token)
            or self.tokens.access_token_expiry(),
            refresh_token_expires_at=refresh_expiry,
            user=UserProfile.from_account(account),
        )

    def _record_failed_attempt(self, account: UserAccount) -> None:
        attempts = self.store.increment_failed_login_attempts(account.id)
        limit = self.settings.max_failed_login_attempts
        if not limit or attempts is None or attempts < limit:
            self.logger.info("login_failed", user_id=account.id, attempts=attempts)
            return
        lockout_end = self._now() + timedelta(minutes=self.settings.lockout_minutes)
        self.store.lock_user_account(account.id, lockout_end)
        self.logger.warning(
            "account_locked",
            user_id=account.id,
            attempts=attempts,
            lockout_end=lockout_end.isoformat(),
        )

    async def login(
        self, email: str, password: str, remember_me: bool = False
    ) -> AuthResult:
        account = await asyncio.to_thread(self.store.get_user_by_email, email)
        if not account:
            self.logger.info("login_unknown_account")
            raise InvalidCredentialsError()
        # lockout wins over a correct password and does not count as an attempt
        if account.is_locked_out(self._now()):
            self.logger.info("login_rejected_locked", user_id=account.id)
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self.verify_password, account, password):
            await asyncio.to_thread(self._record_failed_attempt, account)
            raise InvalidCredentialsError()

        await asyncio.to_thread(self.store.reset_failed_login_attempts, account.id)
        await asyncio.to_thread(self.store.update_last_login, account.id)
        account.failed_login_attempts = 0
        account.lockout_end = None
        account.last_login = self._now()
        result = await asyncio.to_thread(
            self._issue_session, account, remember_me=remember_me
        )
        self.logger.info("login_succeeded", user_id=account.id, remember_me=remember_me)
        return result

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Optional[str] = None,
    ) -> AuthResult:
        if await asyncio.to_thread(self.store.get_user_by_email, email):
            raise AccountConflictError()
        password_hash = await asyncio.to_thread(self.hash_password, password)
        try:
            account = await asyncio.to_thread(
                self.store.create_user,
                email,
                password_hash,
                first_name,
                last_name,
                role=role or DEFAULT_ROLE,
                is_active=True,
                is_email_verified=False,
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", detail=exc.detail)
            raise AccountConflictError() from exc
        self.logger.info("user_registered", user_id=account.id, role=account.role)
        return await asyncio.to_thread(self._issue_session, account, remember_me=False)

    async def refresh_token(self, refresh_token: str) -> AuthResult:
        account = await asyncio.to_thread(self.store.get_user_by_refresh_token, refresh_token)
        if not account:
            raise RefreshRejectedError()
        expiry = account.refresh_token_expiry
        if expiry is None or expiry <= self._now():
            self.logger.info("refresh_token_expired", user_id=account.id)
            raise RefreshRejectedError()
        # rotation always uses the short session window, even for remember-me logins
        result = await asyncio.to_thread(
            self._issue_session,
            account,
            remember_me=False,
            rejection=RefreshRejectedError,
        )
        self.logger.info("refresh_token_rotated", user_id=account.id)
        return result

    async def revoke_token(self, refresh_token: str) -> bool:
        if not refresh_token:
            return False
        account = await asyncio.to_thread(
            self.store.get_user_by_refresh_token, refresh_token, active_only=False
        )
        if not account:
            return False
        revoked = await asyncio.to_thread(
            self.store.update_refresh_token, account.id, "", self._now() - timedelta(days=1)
        )
        self.logger.info("refresh_token_revoked", user_id=account.id, revoked=revoked)
        return revoked

    async def get_current_user(self, user_id: str) -> Optional[UserProfile]:
        account = await asyncio.to_thread(self.store.get_user, user_id)
        return UserProfile.from_account(account) if account else None

    async def validate_token(self, token: str) -> bool:
        """True when the access token verifies and its user is still active."""
        try:
            claims = self.tokens.validate_access_token(token)
        except TokenInvalidError:
            return False
        return await asyncio.to_thread(self.store.get_user, claims.subject) is not None

    async def deactivate_user(self, user_id: str) -> bool:
        if not await asyncio.to_thread(self.store.set_user_active, user_id, False):
            return False
        await asyncio.to_thread(
            self.store.update_refresh_token, user_id, "", self._now() - timedelta(days=1)
        )
        self.logger.info("user_deactivated", user_id=user_id)
        return True

    async def activate_user(self, user_id: str) -> bool:
        activated = await asyncio.to_thread(self.store.set_user_active, user_id, True)
        if activated:
            self.logger.info("user_activated", user_id=user_id)
        return activated

    async def set_user_role(self, user_id: str, role: str) -> Optional[UserProfile]:
        account = await asyncio.to_thread(self.store.update_user_role, user_id, role)
        if not account:
            return None
        self.logger.info("user_role_updated", user_id=user_id, role=role)
        return UserProfile.from_account(account)
