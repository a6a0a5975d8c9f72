from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from realtyauth.config import Settings
from realtyauth.logging import get_logger
from realtyauth.service.errors import TokenInvalidError
from realtyauth.storage.models import UserAccount

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_REFRESH_TOKEN_BYTES = 64

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenSettings:
    secret: str
    issuer: str
    audience: str
    access_token_ttl_minutes: int = 60
    refresh_token_ttl_days: int = 7
    session_refresh_hours: int = 24

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSettings":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_token_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_token_ttl_days=settings.refresh_token_ttl_days,
            session_refresh_hours=settings.session_refresh_hours,
        )


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    email: str
    full_name: str
    role: str
    first_name: str
    last_name: str
    issuer: str
    audience: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        return cls(
            subject=str(payload.get("sub", "")),
            email=payload.get("email", ""),
            full_name=payload.get("name", ""),
            role=payload.get("role", ""),
            first_name=payload.get("given_name", ""),
            last_name=payload.get("family_name", ""),
            issuer=payload.get("iss", ""),
            audience=aud or "",
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


class TokenService:
    """Mints and checks HS256 access tokens and opaque refresh tokens.

    Holds no state beyond its settings and clock, so it is safe to share
    across requests.
    """

    def __init__(self, settings: TokenSettings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _read_payload(self, token: str) -> dict[str, Any]:
        """Decode the payload segment without checking the signature."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        return payload

    def issue_access_token(self, account: UserAccount) -> str:
        now = self._now()
        expires = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "sub": account.id,
            "email": account.email,
            "name": account.full_name,
            "role": account.role,
            "given_name": account.first_name,
            "family_name": account.last_name,
            "iss": self.settings.issuer,
            "aud": self.settings.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return self._encode_jwt(payload)

    def access_token_expiry(self) -> datetime:
        return self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)

    def issue_refresh_token(self) -> str:
        return base64.b64encode(secrets.token_bytes(_REFRESH_TOKEN_BYTES)).decode("ascii")

    def refresh_token_expiry(self, remember_me: bool) -> datetime:
        if remember_me:
            return self._now() + timedelta(days=self.settings.refresh_token_ttl_days)
        return self._now() + timedelta(hours=self.settings.session_refresh_hours)

    def validate_access_token(self, token: str) -> TokenClaims:
        """Return the claims of a valid token or raise ``TokenInvalidError``.

        Signature, algorithm header, issuer, audience and expiry are all
        checked. There is no clock skew allowance: a token whose ``exp`` equals
        the current second is already expired.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("token_validation_failed", reason="malformed")
            raise TokenInvalidError()

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.info("token_validation_failed", reason="header_decode")
            raise TokenInvalidError()
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning("token_validation_failed", reason="algorithm")
            raise TokenInvalidError()

        try:
            signature = sig_b64.encode("ascii")
        except UnicodeEncodeError:
            logger.info("token_validation_failed", reason="signature")
            raise TokenInvalidError()
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, signature):
            logger.info("token_validation_failed", reason="signature")
            raise TokenInvalidError()

        payload = self._read_payload(token)
        if payload.get("iss") != self.settings.issuer:
            logger.info("token_validation_failed", reason="issuer")
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.audience
        elif isinstance(aud, list):
            valid_aud = self.settings.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            logger.info("token_validation_failed", reason="audience")
            raise TokenInvalidError()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            logger.info("token_validation_failed", reason="missing_exp")
            raise TokenInvalidError()
        if exp <= self._now().timestamp():
            logger.info("token_validation_failed", reason="expired")
            raise TokenInvalidError()
        if not payload.get("sub"):
            logger.info("token_validation_failed", reason="missing_subject")
            raise TokenInvalidError()
        return TokenClaims.from_payload(payload)

    def get_user_id_from_token(self, token: str) -> Optional[str]:
        try:
            return self.validate_access_token(token).subject
        except TokenInvalidError:
            return None

    def get_token_expiration(self, token: str) -> Optional[datetime]:
        """Read ``exp`` without verifying the signature."""
        try:
            exp = self._read_payload(token).get("exp")
        except TokenInvalidError:
            return None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def is_token_expired(self, token: str) -> bool:
        expiration = self.get_token_expiration(token)
        return expiration is None or expiration <= self._now()
