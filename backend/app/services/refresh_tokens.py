from __future__ import annotations

from datetime import timedelta

from fastapi import Request, Response

from app.core.config import settings


# -----------------------------
# Cookie helpers
# -----------------------------
def cookie_name() -> str:
    return str(getattr(settings, "REFRESH_COOKIE_NAME", "refresh_token")).strip() or "refresh_token"


def cookie_path() -> str:
    # Keep refresh cookie scoped to auth endpoints by default
    return str(getattr(settings, "REFRESH_COOKIE_PATH", "/auth")).strip() or "/auth"


def cookie_secure() -> bool:
    # Prod => HTTPS => Secure cookies. Dev http://localhost => must be False.
    return settings.is_prod


def cookie_samesite() -> str:
    v = str(getattr(settings, "REFRESH_COOKIE_SAMESITE", "strict")).lower().strip()
    if v not in {"lax", "strict", "none"}:
        return "strict"
    return v


def refresh_cookie_max_age_seconds(remember_me: bool) -> int:
    """Cookie lifetime follows the family's ttl policy."""
    if remember_me:
        ttl = timedelta(days=settings.REMEMBER_ME_DAYS)
    else:
        ttl = timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES)
    return int(ttl.total_seconds())


def set_refresh_cookie(resp: Response, raw_refresh_token: str, *, remember_me: bool = False) -> None:
    resp.set_cookie(
        key=cookie_name(),
        value=raw_refresh_token,
        httponly=True,
        secure=cookie_secure(),
        samesite=cookie_samesite(),
        max_age=refresh_cookie_max_age_seconds(remember_me),
        path=cookie_path(),
    )


def clear_refresh_cookie(resp: Response) -> None:
    resp.delete_cookie(
        key=cookie_name(),
        path=cookie_path(),
    )


def read_refresh_cookie(req: Request) -> str | None:
    val = req.cookies.get(cookie_name())
    if not val:
        return None
    val = val.strip()
    return val or None
