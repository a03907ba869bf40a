# app/routes/auth.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from app.core.config import settings
from app.core.rate_limit import limiter
from app.dependencies.auth import get_current_user, get_session_service
from app.models.user import User
from app.schemas.auth import LoginIn, MessageOut, SessionInfoOut, TokenOut, TokenVerificationOut
from app.services.refresh_tokens import (
    clear_refresh_cookie,
    read_refresh_cookie,
    set_refresh_cookie,
)
from app.services.sessions import SessionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenOut)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
def login(
    request: Request,  # noqa: ARG001 - required by slowapi
    payload: LoginIn,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
):
    pair = sessions.login(payload.username, payload.password, payload.remember_me)

    # Refresh token only ever travels in the HttpOnly cookie
    set_refresh_cookie(response, pair.refresh_token, remember_me=pair.remember_me)

    message = "Login successful with extended session" if pair.remember_me else "Login successful"
    return {
        "access_token": pair.access_token,
        "token_type": "bearer",
        "username": pair.username,
        "remember_me": pair.remember_me,
        "message": message,
    }


@router.post("/refresh", response_model=TokenOut)
def refresh(
    request: Request,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Rotate refresh tokens via HttpOnly cookie:
      - read refresh token from cookie
      - rotate it (reuse of an already-rotated token revokes the whole family)
      - issue new access token
      - issue new refresh cookie
    Session errors are rendered by the app-level handler, which also clears the cookie.
    """
    raw = read_refresh_cookie(request)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing refresh token")

    pair = sessions.refresh(raw)
    set_refresh_cookie(response, pair.refresh_token, remember_me=pair.remember_me)

    return {
        "access_token": pair.access_token,
        "token_type": "bearer",
        "username": pair.username,
        "remember_me": pair.remember_me,
        "message": "Token refreshed successfully",
    }


@router.post("/logout", response_model=MessageOut)
def logout(
    request: Request,
    response: Response,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Logout by revoking the refresh token in cookie (if present) and clearing cookie.
    """
    raw = read_refresh_cookie(request)
    if raw:
        sessions.logout(raw)

    clear_refresh_cookie(response)
    return {"message": "Logged out successfully"}


@router.post("/logout-all", response_model=MessageOut)
def logout_all(
    response: Response,
    user: User = Depends(get_current_user),
    sessions: SessionService = Depends(get_session_service),
):
    deleted = sessions.logout_all_devices(user.id)
    clear_refresh_cookie(response)
    logger.info("Logout-all for user_id=%s removed %s tokens", user.id, deleted)
    return {"message": "Logged out from all devices"}


@router.get("/verify", response_model=TokenVerificationOut)
def verify(user: User = Depends(get_current_user)):
    return {
        "valid": True,
        "username": user.username,
        "role": user.role,
        "message": "Token is valid",
    }


@router.get("/session", response_model=SessionInfoOut)
def session_info(
    user: User = Depends(get_current_user),
    sessions: SessionService = Depends(get_session_service),
):
    info = sessions.session_info(user.id)
    return {"active_tokens": info.active_tokens, "total_rotations": info.total_rotations}
