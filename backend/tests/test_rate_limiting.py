from __future__ import annotations

import importlib

from fastapi.testclient import TestClient

from app.core import config as app_config
from app.core.security import hash_password
from app.core.database import get_db
from app.models.user import User


def test_login_rate_limiting_returns_429_when_enabled(db_session):
    """
    Enable SlowAPI rate limiting and assert /auth/login returns 429 after exceeding limit.

    Note: rate limit decorators are applied at import time, so we reload the app + routes
    after toggling settings.ENABLE_RATE_LIMITING.
    """
    import app.core.rate_limit as rate_limit
    import app.routes.auth as auth_routes
    import app.main as main

    # IMPORTANT:
    # SlowAPI decorators bind at import time. This test reloads modules with rate limiting enabled.
    # We MUST restore module state at the end so other tests don't inherit rate-limited routes.
    original_limit = app_config.settings.LOGIN_RATE_LIMIT
    try:
        app_config.settings.ENABLE_RATE_LIMITING = True
        app_config.settings.LOGIN_RATE_LIMIT = "3/minute"

        # 1) reload app.core.rate_limit to get a *fresh* limiter instance
        # 2) reload routes + app so decorators/handlers bind to the new limiter
        importlib.reload(rate_limit)
        importlib.reload(auth_routes)
        importlib.reload(main)

        app = main.app

        user = User(
            username="rl-user",
            password_hash=hash_password("test_password_123"),
            is_active=True,
        )
        db_session.add(user)
        db_session.commit()

        def override_get_db():
            yield db_session

        app.dependency_overrides[get_db] = override_get_db

        with TestClient(app) as client:
            payload = {"username": "rl-user", "password": "test_password_123"}

            # Limit is 3/minute: first 3 ok, 4th blocked.
            statuses: list[int] = []
            for _ in range(4):
                r = client.post("/auth/login", json=payload)
                statuses.append(r.status_code)

            assert statuses[:3] == [200] * 3, statuses
            assert statuses[3] == 429, statuses
            body = r.json()
            assert body.get("error") == "RATE_LIMITED"
            assert isinstance(body.get("message"), str) and body["message"]
    finally:
        # Restore global config and module bindings for the rest of the test suite.
        app_config.settings.ENABLE_RATE_LIMITING = False
        app_config.settings.LOGIN_RATE_LIMIT = original_limit
        importlib.reload(rate_limit)
        importlib.reload(auth_routes)
        importlib.reload(main)
