import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slowapi.errors import RateLimitExceeded as HttpRateLimitExceeded

from app.core.config import settings, require_jwt_secret
from app.core.rate_limit import limiter
from app.routes.auth import router as auth_router
from app.services.refresh_tokens import clear_refresh_cookie
from app.services.session_errors import RateLimitExceeded, SessionError, TokenStoreError

logger = logging.getLogger(__name__)

require_jwt_secret()

app = FastAPI(title="Session Rotation Service")
logger.info(
    "Startup config: ENV=%s access_ttl=%smin refresh_ttl=%smin remember_me=%sd max_rotations=%s",
    settings.ENV,
    settings.ACCESS_TOKEN_EXPIRE_MINUTES,
    settings.REFRESH_TOKEN_EXPIRE_MINUTES,
    settings.REMEMBER_ME_DAYS,
    settings.MAX_ROTATION_COUNT,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    payload: dict = {"error": _error_code(exc.status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": exc.errors()},
        },
    )


@app.exception_handler(SessionError)
def session_error_handler(request: Request, exc: SessionError):  # noqa: ARG001
    status_code = 429 if isinstance(exc, RateLimitExceeded) else 401
    resp = JSONResponse(status_code=status_code, content={"error": exc.code, "message": str(exc)})
    # A rate-limited token is still valid; every other failure makes the cookie useless.
    if not isinstance(exc, RateLimitExceeded):
        clear_refresh_cookie(resp)
    return resp


@app.exception_handler(TokenStoreError)
def token_store_error_handler(request: Request, exc: TokenStoreError):  # noqa: ARG001
    logger.error("Token store unavailable: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"error": "SERVICE_UNAVAILABLE", "message": "Session store temporarily unavailable"},
    )


if settings.ENABLE_RATE_LIMITING:
    app.state.limiter = limiter
    # Provide our standard error shape for rate limits, instead of slowapi's default.
    app.add_exception_handler(
        HttpRateLimitExceeded,
        lambda request, exc: JSONResponse(  # noqa: ARG005
            status_code=429,
            content={"error": "RATE_LIMITED", "message": "Too many requests"},
        ),
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
