# app/services/sessions.py
"""
Login / refresh / logout orchestration.

Responsibilities:
- Credential check and family creation on login
- Kind-gated refresh through TokenRotationService
- Single-token logout, logout everywhere
- Expiry sweep used by the scheduled maintenance task
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from app.core.security import (
    ACCESS,
    REFRESH,
    CredentialVerifier,
    PasswordCredentialVerifier,
    TokenClaims,
    TokenCodec,
    build_token_codec,
)
from app.models.refresh_token import as_utc
from app.models.user import User
from app.services.session_errors import InvalidCredentials, TokenNotFound, TokenRevoked
from app.services.token_rotation import RotationPolicy, TokenRotationService
from app.services.token_store import SqlAlchemyTokenStore, TokenStore, storage_errors

logger = logging.getLogger(__name__)

USER_INITIATED = "user-initiated"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    username: str
    remember_me: bool
    refresh_expires_at: datetime


@dataclass
class SessionInfo:
    active_tokens: int
    total_rotations: int


@dataclass
class SweepResult:
    revoked: int
    deleted: int


class SessionService:
    def __init__(
        self,
        db: Session,
        *,
        store: TokenStore | None = None,
        codec: TokenCodec | None = None,
        rotation: TokenRotationService | None = None,
        verifier: CredentialVerifier | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.db = db
        self._clock = clock
        self.store = store or SqlAlchemyTokenStore(db)
        self.codec = codec or build_token_codec(clock)
        self.rotation = rotation or TokenRotationService(
            self.store, self.codec, RotationPolicy.from_settings(), clock=clock
        )
        self.verifier = verifier or PasswordCredentialVerifier()

    # -----------------------------
    # Users
    # -----------------------------
    @storage_errors
    def get_user_by_username(self, username: str) -> User | None:
        return self.db.query(User).filter(User.username == username).first()

    @storage_errors
    def _get_user(self, user_id: int) -> User | None:
        return self.db.get(User, user_id)

    # -----------------------------
    # Login
    # -----------------------------
    def login(self, username: str, secret: str, remember_me: bool = False) -> TokenPair:
        normalized = (username or "").strip()
        user = self.get_user_by_username(normalized) if normalized else None

        # Same error for every failing factor.
        if not user or not user.is_active:
            raise InvalidCredentials()
        if not self.verifier.verify(secret or "", user.password_hash):
            raise InvalidCredentials()

        issued = self.rotation.issue_family_token(user.id, user.username, user.role, remember_me)
        access_token = self.codec.issue_access_token(user.id, user.username, user.role, remember_me=remember_me)

        if remember_me:
            logger.info("User %s logged in with Remember Me (%s days)", user.username, self.codec.remember_me_ttl.days)
        else:
            logger.info("User %s logged in (standard session)", user.username)

        return TokenPair(
            access_token=access_token,
            refresh_token=issued.token,
            username=user.username,
            remember_me=remember_me,
            refresh_expires_at=as_utc(issued.record.expires_at),
        )

    # -----------------------------
    # Refresh
    # -----------------------------
    def refresh(self, refresh_token: str) -> TokenPair:
        raw = (refresh_token or "").strip()
        if not raw:
            raise TokenNotFound()

        # An expired or tampered JWT still goes to the store, which knows the
        # difference between expired, rotated-away and unknown. A *valid* JWT
        # of the wrong kind never gets that far.
        claims = self.codec.verify(raw)
        if claims is not None and claims.kind != REFRESH:
            raise TokenNotFound()

        record = self.store.find_by_token(self.codec.hash_token(raw))
        if record is None:
            self.rotation.check_orphaned_replay(raw)
            raise TokenNotFound()

        user = self._get_user(record.user_id)
        if user is None or not user.is_active:
            logger.warning("Refresh for missing or disabled user_id=%s; dropping token", record.user_id)
            try:
                self.store.delete(record)
                self.store.commit()
            except Exception:
                self.store.rollback()
                raise
            raise TokenRevoked("User not found or disabled")

        if claims is not None and not self.codec.is_valid_as_kind(raw, user.username, REFRESH):
            raise TokenNotFound()

        issued = self.rotation.rotate(raw, user.id, user.username, user.role, bool(record.remember_me))
        remember_me = bool(issued.record.remember_me)
        access_token = self.codec.issue_access_token(user.id, user.username, user.role, remember_me=remember_me)

        return TokenPair(
            access_token=access_token,
            refresh_token=issued.token,
            username=user.username,
            remember_me=remember_me,
            refresh_expires_at=as_utc(issued.record.expires_at),
        )

    # -----------------------------
    # Logout
    # -----------------------------
    def logout(self, refresh_token: str | None) -> bool:
        """Revokes and deletes the presented token. Unknown tokens are a no-op."""
        raw = (refresh_token or "").strip()
        if not raw:
            return False
        record = self.store.find_by_token(self.codec.hash_token(raw))
        if record is None:
            logger.warning("Refresh token not found for logout")
            return False

        user_id = record.user_id
        try:
            self.store.revoke_if_active(record.id, self._clock())
            self.store.delete(record)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.info("Revoked and deleted refresh token for user_id=%s", user_id)
        return True

    def logout_all_devices(self, user_id: int) -> int:
        logger.info("Logging out all devices for user_id=%s", user_id)
        try:
            families = self.store.families_for_user(user_id)
            for family in families:
                self.rotation.revoke_token_family(family, USER_INITIATED, commit=False)
            deleted = self.store.delete_by_user(user_id)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.info("Revoked %s families and deleted %s tokens for user_id=%s", len(families), deleted, user_id)
        return deleted

    # -----------------------------
    # Maintenance
    # -----------------------------
    def cleanup_expired_tokens(self) -> int:
        logger.info("Cleaning up expired and revoked tokens")
        try:
            deleted = self.store.delete_expired_or_revoked(self._clock())
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.info("Deleted %s expired and revoked tokens", deleted)
        return deleted

    def sweep_expired_tokens(self) -> SweepResult:
        """Marks expired rows revoked, then hard-deletes every terminal row."""
        now = self._clock()
        try:
            revoked = self.store.revoke_expired(now)
            deleted = self.store.delete_expired_or_revoked(now)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.info("Revoked %s expired tokens and deleted %s revoked or expired tokens", revoked, deleted)
        return SweepResult(revoked=revoked, deleted=deleted)

    # -----------------------------
    # Introspection
    # -----------------------------
    def session_info(self, user_id: int) -> SessionInfo:
        return SessionInfo(
            active_tokens=self.store.count_active_for_user(user_id, self._clock()),
            total_rotations=self.rotation.user_rotation_total(user_id),
        )

    def verify_access_token(self, token: str | None) -> TokenClaims | None:
        claims = self.codec.verify(token)
        if claims is None or claims.kind != ACCESS:
            return None
        return claims
