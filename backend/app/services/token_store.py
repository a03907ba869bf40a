# app/services/token_store.py
"""
Persistence for refresh-token rows.

The rotation service only talks to the TokenStore protocol. The SQLAlchemy
implementation never commits: the caller owns the transaction so that
"insert successor, revoke predecessor" lands atomically.
"""
from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.refresh_token import RefreshToken
from app.services.session_errors import TokenStoreError

logger = logging.getLogger(__name__)


class TokenConflictError(Exception):
    """A unique constraint rejected a row (token hash or predecessor link already taken)."""


class TokenStore(Protocol):
    def find_by_token(self, token_hash: str, *, for_update: bool = False) -> RefreshToken | None:
        ...

    def find_by_previous_token(self, token_hash: str) -> RefreshToken | None:
        ...

    def find_by_family(self, family: str) -> list[RefreshToken]:
        ...

    def family_flagged_for_reuse(self, family: str) -> bool:
        ...

    def families_for_user(self, user_id: int) -> list[str]:
        ...

    def count_active_in_family(self, family: str, now: datetime) -> int:
        ...

    def count_recent_rotations_in_family(self, family: str, since: datetime) -> int:
        ...

    def count_active_for_user(self, user_id: int, now: datetime) -> int:
        ...

    def save(self, record: RefreshToken) -> RefreshToken:
        ...

    def revoke_if_active(self, record_id: str, now: datetime) -> bool:
        ...

    def revoke_all_in_family(self, family: str, now: datetime) -> int:
        ...

    def revoke_expired(self, now: datetime) -> int:
        ...

    def delete(self, record: RefreshToken) -> None:
        ...

    def delete_by_user(self, user_id: int) -> int:
        ...

    def delete_expired_or_revoked(self, now: datetime) -> int:
        ...

    def find_high_rotation_count(self, threshold: int) -> list[RefreshToken]:
        ...

    def find_revoked_for_reuse(self, since: datetime) -> list[RefreshToken]:
        ...

    def total_rotation_count_for_user(self, user_id: int) -> int:
        ...

    def families_with_multiple_active(self, now: datetime) -> list[tuple[str, int]]:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


def storage_errors(fn):
    """Translate driver/ORM failures into TokenStoreError; integrity errors become TokenConflictError."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except IntegrityError as exc:
            raise TokenConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            logger.exception("Session storage failure in %s", fn.__name__)
            raise TokenStoreError(f"Session storage unavailable ({fn.__name__})") from exc

    return wrapper


def _active(now: datetime):
    return (RefreshToken.is_revoked.is_(False), RefreshToken.expires_at > now)


class SqlAlchemyTokenStore:
    def __init__(self, db: Session):
        self.db = db

    # -----------------------------
    # Lookups
    # -----------------------------
    @storage_errors
    def find_by_token(self, token_hash: str, *, for_update: bool = False) -> RefreshToken | None:
        q = self.db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash)
        if for_update:
            # Serializes concurrent redemptions of the same token on Postgres; no-op on SQLite.
            q = q.with_for_update()
        return q.first()

    @storage_errors
    def find_by_previous_token(self, token_hash: str) -> RefreshToken | None:
        return self.db.query(RefreshToken).filter(RefreshToken.previous_token_hash == token_hash).first()

    @storage_errors
    def find_by_family(self, family: str) -> list[RefreshToken]:
        return (
            self.db.query(RefreshToken)
            .filter(RefreshToken.token_family == family)
            .order_by(RefreshToken.rotation_count.asc(), RefreshToken.created_at.asc())
            .all()
        )

    @storage_errors
    def family_flagged_for_reuse(self, family: str) -> bool:
        hit = (
            self.db.query(RefreshToken.id)
            .filter(RefreshToken.token_family == family, RefreshToken.revoked_due_to_reuse.is_(True))
            .first()
        )
        return hit is not None

    @storage_errors
    def families_for_user(self, user_id: int) -> list[str]:
        rows = (
            self.db.query(RefreshToken.token_family)
            .filter(RefreshToken.user_id == user_id)
            .distinct()
            .all()
        )
        return [r[0] for r in rows]

    @storage_errors
    def count_active_in_family(self, family: str, now: datetime) -> int:
        return (
            self.db.query(func.count(RefreshToken.id))
            .filter(RefreshToken.token_family == family, *_active(now))
            .scalar()
            or 0
        )

    @storage_errors
    def count_recent_rotations_in_family(self, family: str, since: datetime) -> int:
        return (
            self.db.query(func.count(RefreshToken.id))
            .filter(RefreshToken.token_family == family, RefreshToken.last_rotated_at > since)
            .scalar()
            or 0
        )

    @storage_errors
    def count_active_for_user(self, user_id: int, now: datetime) -> int:
        return (
            self.db.query(func.count(RefreshToken.id))
            .filter(RefreshToken.user_id == user_id, *_active(now))
            .scalar()
            or 0
        )

    # -----------------------------
    # Writes
    # -----------------------------
    @storage_errors
    def save(self, record: RefreshToken) -> RefreshToken:
        self.db.add(record)
        self.db.flush()
        return record

    @storage_errors
    def revoke_if_active(self, record_id: str, now: datetime) -> bool:
        """Compare-and-swap revoke: True only if this call flipped the row."""
        updated = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.id == record_id, RefreshToken.is_revoked.is_(False))
            .update({RefreshToken.is_revoked: True, RefreshToken.revoked_at: now}, synchronize_session="fetch")
        )
        return updated == 1

    @storage_errors
    def revoke_all_in_family(self, family: str, now: datetime) -> int:
        # Single UPDATE statement; never read-loop-write.
        return (
            self.db.query(RefreshToken)
            .filter(RefreshToken.token_family == family)
            .update(
                {
                    RefreshToken.is_revoked: True,
                    RefreshToken.revoked_due_to_reuse: True,
                    RefreshToken.revoked_at: now,
                },
                synchronize_session="fetch",
            )
        )

    @storage_errors
    def revoke_expired(self, now: datetime) -> int:
        return (
            self.db.query(RefreshToken)
            .filter(RefreshToken.expires_at < now, RefreshToken.is_revoked.is_(False))
            .update({RefreshToken.is_revoked: True, RefreshToken.revoked_at: now}, synchronize_session="fetch")
        )

    @storage_errors
    def delete(self, record: RefreshToken) -> None:
        self.db.delete(record)
        self.db.flush()

    @storage_errors
    def delete_by_user(self, user_id: int) -> int:
        return (
            self.db.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id)
            .delete(synchronize_session="fetch")
        )

    @storage_errors
    def delete_expired_or_revoked(self, now: datetime) -> int:
        return (
            self.db.query(RefreshToken)
            .filter((RefreshToken.expires_at < now) | RefreshToken.is_revoked.is_(True))
            .delete(synchronize_session="fetch")
        )

    # -----------------------------
    # Monitoring queries
    # -----------------------------
    @storage_errors
    def find_high_rotation_count(self, threshold: int) -> list[RefreshToken]:
        return (
            self.db.query(RefreshToken)
            .filter(RefreshToken.rotation_count > threshold, RefreshToken.is_revoked.is_(False))
            .order_by(RefreshToken.rotation_count.desc())
            .all()
        )

    @storage_errors
    def find_revoked_for_reuse(self, since: datetime) -> list[RefreshToken]:
        return (
            self.db.query(RefreshToken)
            .filter(RefreshToken.revoked_due_to_reuse.is_(True), RefreshToken.revoked_at > since)
            .order_by(RefreshToken.revoked_at.desc())
            .all()
        )

    @storage_errors
    def total_rotation_count_for_user(self, user_id: int) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(RefreshToken.rotation_count), 0))
            .filter(RefreshToken.user_id == user_id)
            .scalar()
        )
        return int(total or 0)

    @storage_errors
    def families_with_multiple_active(self, now: datetime) -> list[tuple[str, int]]:
        rows = (
            self.db.query(RefreshToken.token_family, func.count(RefreshToken.id))
            .filter(*_active(now))
            .group_by(RefreshToken.token_family)
            .having(func.count(RefreshToken.id) > 1)
            .all()
        )
        return [(family, int(count)) for family, count in rows]

    # -----------------------------
    # Transaction control
    # -----------------------------
    @storage_errors
    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
