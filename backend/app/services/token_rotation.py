# app/services/token_rotation.py
"""
Refresh token rotation with reuse detection.

Every redemption replaces the presented refresh token with a new row in the
same family, linked back through ``previous_token_hash``. If a token that
already has a successor is presented again, two parties hold the same
credential: the whole family is revoked and TokenReuseDetected is raised.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.core.config import settings
from app.core.security import TokenCodec
from app.models.refresh_token import RefreshToken
from app.services.session_errors import (
    FamilyCompromised,
    RateLimitExceeded,
    RotationLimitExceeded,
    SessionError,
    TokenExpired,
    TokenNotFound,
    TokenReuseDetected,
    TokenRevoked,
)
from app.services.token_store import TokenConflictError, TokenStore

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RotationPolicy:
    max_rotation_count: int = 100
    rate_limit_window_seconds: int = 60
    max_rotations_per_window: int = 5
    suspicious_margin: int = 10

    @classmethod
    def from_settings(cls) -> "RotationPolicy":
        return cls(
            max_rotation_count=settings.MAX_ROTATION_COUNT,
            rate_limit_window_seconds=settings.ROTATION_RATE_LIMIT_WINDOW_SECONDS,
            max_rotations_per_window=settings.MAX_ROTATIONS_PER_WINDOW,
            suspicious_margin=settings.SUSPICIOUS_ROTATION_MARGIN,
        )


@dataclass
class IssuedRefreshToken:
    """Raw token for the client plus the stored row (which only holds the hash)."""

    token: str
    record: RefreshToken


class TokenRotationService:
    def __init__(
        self,
        store: TokenStore,
        codec: TokenCodec,
        policy: RotationPolicy | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.store = store
        self.codec = codec
        self.policy = policy or RotationPolicy()
        self._clock = clock

    # -----------------------------
    # Issuing
    # -----------------------------
    @staticmethod
    def generate_token_family() -> str:
        return str(uuid.uuid4())

    def issue_family_token(
        self,
        user_id: int,
        username: str,
        role: str,
        remember_me: bool,
        *,
        commit: bool = True,
    ) -> IssuedRefreshToken:
        """First token of a brand-new family (login)."""
        now = self._clock()
        raw = self.codec.issue_refresh_token(user_id, username, role, remember_me=remember_me)
        record = RefreshToken(
            user_id=user_id,
            token_hash=self.codec.hash_token(raw),
            token_family=self.generate_token_family(),
            previous_token_hash=None,
            rotation_count=0,
            remember_me=remember_me,
            created_at=now,
            last_rotated_at=None,
            expires_at=self.codec.refresh_expiry(remember_me, issued_at=now),
            is_revoked=False,
            revoked_due_to_reuse=False,
        )
        try:
            self.store.save(record)
            if commit:
                self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        return IssuedRefreshToken(token=raw, record=record)

    # -----------------------------
    # Rotation
    # -----------------------------
    def rotate(
        self,
        old_token: str,
        user_id: int,
        username: str,
        role: str,
        remember_me: bool,
    ) -> IssuedRefreshToken:
        logger.debug("Starting token rotation for user_id=%s", user_id)
        old_hash = self.codec.hash_token(old_token)

        now = self._clock()
        try:
            old = self._load_rotatable(old_hash, user_id, now)
        except SessionError:
            # Release the row lock taken by the lookup.
            self.store.rollback()
            raise
        family = old.token_family

        # The family's own ttl policy wins over whatever the caller passed.
        remember_me = bool(old.remember_me)
        raw = self.codec.issue_refresh_token(user_id, username, role, remember_me=remember_me)
        new = RefreshToken(
            user_id=user_id,
            token_hash=self.codec.hash_token(raw),
            token_family=family,
            previous_token_hash=old_hash,
            rotation_count=old.rotation_count + 1,
            remember_me=remember_me,
            created_at=now,
            last_rotated_at=now,
            expires_at=self.codec.refresh_expiry(remember_me, issued_at=now),
            is_revoked=False,
            revoked_due_to_reuse=False,
        )

        # New row first, then revoke the old one, one transaction.
        try:
            self.store.save(new)
            if not self.store.revoke_if_active(old.id, now):
                raise TokenConflictError("predecessor already revoked")
            self.store.commit()
        except TokenConflictError:
            # A concurrent redemption of the same token got there first.
            self.store.rollback()
            logger.warning("Concurrent rotation lost for family=%s user_id=%s", family, user_id)
            raise TokenRevoked()
        except Exception:
            self.store.rollback()
            raise

        logger.info(
            "Token rotated successfully for user_id=%s (rotation count: %s)",
            user_id,
            new.rotation_count,
        )
        return IssuedRefreshToken(token=raw, record=new)

    def _load_rotatable(self, old_hash: str, user_id: int, now: datetime) -> RefreshToken:
        """Runs every gate in order; returns the row only if it may be rotated."""
        # Read before taking the row lock: a successor that shows up only after
        # the lock is granted was committed by a concurrent redemption we lost to.
        had_successor = self.store.find_by_previous_token(old_hash) is not None
        old = self.store.find_by_token(old_hash, for_update=True)
        if old is None:
            self._check_orphaned_replay(old_hash)
            raise TokenNotFound()
        if old.user_id != user_id:
            raise TokenNotFound()

        family = old.token_family
        if old.revoked_due_to_reuse or self.store.family_flagged_for_reuse(family):
            logger.warning("Rotation attempted on compromised family=%s user_id=%s", family, user_id)
            raise FamilyCompromised()

        # Reuse detection runs before the plain revoked check: a rotated-away
        # token is always revoked, and its replay must still be caught here.
        self._check_for_reuse(old_hash, family, user_id, had_successor)

        if old.is_revoked:
            raise TokenRevoked()
        if old.is_expired(now):
            raise TokenExpired()

        self._check_rate_limit(family, now)

        if old.rotation_count >= self.policy.max_rotation_count:
            logger.warning(
                "Token rotation count exceeded for user_id=%s family=%s (count: %s)",
                user_id,
                family,
                old.rotation_count,
            )
            raise RotationLimitExceeded()
        return old

    def check_orphaned_replay(self, token: str) -> None:
        """
        For a token with no row of its own: the sweep may already have deleted a
        rotated-away row, but its successor still carries the backward link.
        """
        self._check_orphaned_replay(self.codec.hash_token(token))

    def _check_orphaned_replay(self, token_hash: str) -> None:
        successor = self.store.find_by_previous_token(token_hash)
        if successor is not None:
            self._reuse_detected(successor.token_family, successor.user_id)

    def _check_for_reuse(self, token_hash: str, family: str, user_id: int, had_successor: bool) -> None:
        if self.store.find_by_previous_token(token_hash) is None:
            return
        if not had_successor:
            logger.warning("Concurrent rotation lost for family=%s user_id=%s", family, user_id)
            raise TokenRevoked()
        self._reuse_detected(family, user_id)

    def _reuse_detected(self, family: str, user_id: int) -> None:
        logger.error(
            "TOKEN REUSE DETECTED for user_id=%s family=%s - revoking entire family",
            user_id,
            family,
        )
        self.revoke_token_family(family, "Token reuse detected")
        raise TokenReuseDetected()

    def _check_rate_limit(self, family: str, now: datetime) -> None:
        window = self.policy.rate_limit_window_seconds
        since = now - timedelta(seconds=window)
        recent = self.store.count_recent_rotations_in_family(family, since)
        if recent >= self.policy.max_rotations_per_window:
            logger.warning(
                "Rate limit exceeded for token family=%s (%s rotations in %s seconds)",
                family,
                recent,
                window,
            )
            raise RateLimitExceeded()

    # -----------------------------
    # Family management
    # -----------------------------
    def revoke_token_family(self, family: str, reason: str, *, commit: bool = True) -> int:
        logger.warning("Revoking token family=%s reason=%s", family, reason)
        try:
            count = self.store.revoke_all_in_family(family, self._clock())
            if commit:
                self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        return count

    def get_token_family(self, family: str) -> list[RefreshToken]:
        return self.store.find_by_family(family)

    def prune_token_family(self, family: str, keep_count: int) -> int:
        """Delete all but the newest `keep_count` rows of a family."""
        tokens = self.store.find_by_family(family)
        if len(tokens) <= keep_count:
            return 0
        newest_first = sorted(tokens, key=lambda t: (t.rotation_count, t.created_at), reverse=True)
        stale = newest_first[max(keep_count, 0):]
        try:
            for token in stale:
                self.store.delete(token)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.debug("Cleaned up %s old tokens in family=%s", len(stale), family)
        return len(stale)

    # -----------------------------
    # Diagnostics
    # -----------------------------
    def has_multiple_active_tokens(self, family: str) -> bool:
        active = self.store.count_active_in_family(family, self._clock())
        if active > 1:
            logger.warning("Multiple active tokens detected in family=%s (count: %s)", family, active)
            return True
        return False

    def find_suspicious_tokens(self) -> list[RefreshToken]:
        return self.store.find_high_rotation_count(self.policy.max_rotation_count - self.policy.suspicious_margin)

    def recent_security_incidents(self, hours: int = 24) -> list[RefreshToken]:
        since = self._clock() - timedelta(hours=hours)
        return self.store.find_revoked_for_reuse(since)

    def user_rotation_total(self, user_id: int) -> int:
        return self.store.total_rotation_count_for_user(user_id)

    def families_with_multiple_active_tokens(self) -> list[tuple[str, int]]:
        return self.store.families_with_multiple_active(self._clock())
