import os
from datetime import datetime, timedelta, timezone

# Ensure JWT_SECRET exists before importing app.main (it calls require_jwt_secret() at import time).
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")

import importlib

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core import config as app_config
from app.core.security import TokenCodec, hash_password

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User  # noqa: F401
from app.models.refresh_token import RefreshToken  # noqa: F401

from app.core.database import get_db
from app.services.sessions import SessionService
from app.services.token_rotation import RotationPolicy, TokenRotationService
from app.services.token_store import SqlAlchemyTokenStore

TEST_SECRET = "test_jwt_secret"


class FakeClock:
    """Controllable UTC clock; starts at real 'now' so minted JWTs still verify."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, we must restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "ENABLE_RATE_LIMITING",
        "MAX_ROTATION_COUNT",
        "MAX_ROTATIONS_PER_WINDOW",
        "ROTATION_RATE_LIMIT_WINDOW_SECONDS",
        "SECURITY_INCIDENT_WINDOW_HOURS",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)
        # Default all tests to "rate limiting disabled" unless a test explicitly reloads routes with it enabled.
        app_config.settings.ENABLE_RATE_LIMITING = False


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def codec(clock):
    return TokenCodec(
        TEST_SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(minutes=25),
        remember_me_days=30,
        clock=clock,
    )


@pytest.fixture()
def store(db_session):
    return SqlAlchemyTokenStore(db_session)


@pytest.fixture()
def policy():
    return RotationPolicy()


@pytest.fixture()
def rotation(store, codec, policy, clock):
    return TokenRotationService(store, codec, policy, clock=clock)


@pytest.fixture()
def sessions(db_session, store, codec, rotation, clock):
    return SessionService(db_session, store=store, codec=codec, rotation=rotation, clock=clock)


@pytest.fixture()
def users(db_session):
    """
    Two distinct active users.
    """
    user_a = User(
        username="alice",
        email="alice@example.com",
        password_hash=hash_password("test_password_123"),
        role="USER",
        is_active=True,
    )
    user_b = User(
        username="bob",
        email="bob@example.com",
        password_hash=hash_password("test_password_123"),
        role="ADMIN",
        is_active=True,
    )
    db_session.add_all([user_a, user_b])
    db_session.commit()
    db_session.refresh(user_a)
    db_session.refresh(user_b)
    return user_a, user_b


@pytest.fixture()
def app(db_session):
    # Ensure settings has a JWT secret even if imported earlier.
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or TEST_SECRET
    # Default to disabled for the general test suite.
    app_config.settings.ENABLE_RATE_LIMITING = False

    # IMPORTANT:
    # SlowAPI decorators bind at import time, so we reload the routes + app with rate limiting disabled
    # to avoid cross-test contamination (the rate limiting test reloads modules with it enabled).
    import app.core.rate_limit as rate_limit
    import app.routes.auth as auth_routes
    import app.main as main

    importlib.reload(rate_limit)
    importlib.reload(auth_routes)
    importlib.reload(main)
    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app, users):
    with TestClient(app) as c:
        yield c
