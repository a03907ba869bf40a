# app/core/security.py
from __future__ import annotations

import hashlib
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


# -------------------------
# Password hashing
# -------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError):
        # Unknown/garbled hash format counts as a mismatch.
        return False


class CredentialVerifier(Protocol):
    def verify(self, secret: str, credential_hash: str) -> bool:
        ...


class PasswordCredentialVerifier:
    """Checks a presented password against the stored passlib hash."""

    def verify(self, secret: str, credential_hash: str) -> bool:
        return verify_password(secret, credential_hash)


# -------------------------
# JWT helpers
# -------------------------
def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    user_id: int | None
    role: str | None
    kind: str
    remember_me: bool
    expires_at: datetime
    jti: str | None


class TokenCodec:
    """
    Signs and verifies access/refresh JWTs.

    Both kinds are structurally identical JWTs; the "type" claim is what keeps
    them from being interchangeable, so callers gate on it via is_valid_as_kind().
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(minutes=25),
        remember_me_days: int = 30,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if not secret or not secret.strip():
            raise RuntimeError("JWT_SECRET must be set (auth is required).")
        self._secret = secret
        self._algorithm = algorithm
        self.access_ttl = access_ttl
        self.standard_refresh_ttl = refresh_ttl
        self.remember_me_ttl = timedelta(days=remember_me_days)
        self._clock = clock

    # -- ttl policy --
    def refresh_ttl(self, remember_me: bool) -> timedelta:
        return self.remember_me_ttl if remember_me else self.standard_refresh_ttl

    def refresh_expiry(self, remember_me: bool, issued_at: datetime | None = None) -> datetime:
        return (issued_at or self._clock()) + self.refresh_ttl(remember_me)

    # -- issuing --
    def issue_access_token(
        self,
        user_id: int,
        username: str,
        role: str,
        *,
        remember_me: bool = False,
        ttl: timedelta | None = None,
    ) -> str:
        return self._encode(ACCESS, user_id, username, role, remember_me, ttl or self.access_ttl)

    def issue_refresh_token(
        self,
        user_id: int,
        username: str,
        role: str,
        *,
        remember_me: bool = False,
        ttl: timedelta | None = None,
    ) -> str:
        return self._encode(REFRESH, user_id, username, role, remember_me, ttl or self.refresh_ttl(remember_me))

    def _encode(
        self,
        kind: str,
        user_id: int,
        username: str,
        role: str,
        remember_me: bool,
        ttl: timedelta,
    ) -> str:
        now = self._clock()
        exp = now + ttl
        payload: dict[str, Any] = {
            "sub": username,
            "userId": user_id,
            "role": role,
            "type": kind,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            # Two tokens minted for the same user in the same second must still differ.
            "jti": uuid.uuid4().hex,
        }
        if remember_me:
            payload["rememberMe"] = True
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    # -- verification --
    def verify(self, token: str | None) -> TokenClaims | None:
        """
        Returns decoded claims, or None for anything unusable (bad signature,
        expired, malformed, missing subject). Never raises.
        """
        if not token or not token.strip():
            return None
        try:
            # Expiry is judged against the codec's clock, not the system clock.
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            return None

        try:
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp <= self._clock().timestamp():
            return None

        subject = str(payload.get("sub") or "").strip()
        kind = payload.get("type")
        if not subject or kind not in {ACCESS, REFRESH}:
            return None

        raw_user_id = payload.get("userId")
        try:
            user_id = int(raw_user_id) if raw_user_id is not None else None
        except (TypeError, ValueError):
            return None

        return TokenClaims(
            subject=subject,
            user_id=user_id,
            role=payload.get("role"),
            kind=kind,
            remember_me=bool(payload.get("rememberMe", False)),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            jti=payload.get("jti"),
        )

    def is_valid_as_kind(self, token: str | None, username: str, kind: str) -> bool:
        claims = self.verify(token)
        if claims is None:
            return False
        return claims.subject == username and claims.kind == kind

    def hash_token(self, token: str) -> str:
        """
        Keyed hash used as the storage identity of a refresh token.
        HMAC keyed by the signing secret so a DB leak can't be brute-forced easily.
        """
        return hmac.new(self._secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def build_token_codec(clock: Callable[[], datetime] = _now_utc) -> TokenCodec:
    return TokenCodec(
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_ttl=timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES),
        remember_me_days=settings.REMEMBER_ME_DAYS,
        clock=clock,
    )
