# app/models/refresh_token.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite round-trips tz-aware datetimes as naive; everything we write is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RefreshToken(Base):
    """
    One physical refresh token ever issued.

    Rows of the same login share ``token_family`` and are chained backwards
    through ``previous_token_hash``. Only hashes are stored, never the raw token.
    """

    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=_new_id)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    token_hash = Column(String(64), unique=True, index=True, nullable=False)

    token_family = Column(String(36), nullable=False, index=True)

    # Hash of the token this row replaced. NULL for the first token of a family.
    # Unique: a token has at most one successor, so a double redemption fails on insert.
    previous_token_hash = Column(String(64), unique=True, index=True, nullable=True)

    rotation_count = Column(Integer, nullable=False, default=0, server_default="0")
    remember_me = Column(Boolean, nullable=False, default=False, server_default="false")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_rotated_at = Column(DateTime(timezone=True), nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    is_revoked = Column(Boolean, nullable=False, default=False, server_default="false")
    revoked_due_to_reuse = Column(Boolean, nullable=False, default=False, server_default="false")
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="refresh_tokens")

    def is_expired(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= now
