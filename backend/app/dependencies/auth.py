# app/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.user import User
from app.services.sessions import SessionService

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_session_service(db: Session = Depends(get_db)) -> SessionService:
    return SessionService(db)


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sessions: SessionService = Depends(get_session_service),
) -> User:
    """
    Validates:
      - Authorization: Bearer <token>
      - token signature + exp, and that it is an *access* token
      - user exists + is_active
    Returns:
      - User SQLAlchemy model
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    claims = sessions.verify_access_token(creds.credentials)
    if claims is None:
        raise _unauthorized("Invalid or expired token")

    user = sessions.get_user_by_username(claims.subject)
    if not user:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("User is inactive")
    if claims.user_id is not None and claims.user_id != user.id:
        raise _unauthorized("Invalid or expired token")

    return user
