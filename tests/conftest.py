"""
tests/conftest.py — Shared Test Fixtures
=========================================

Services run against in-memory SQLite.  PostgreSQL-only column types are
compiled to SQLite equivalents below, and ``FOR UPDATE`` is silently
dropped by the SQLite dialect.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime

# parley.api.deps validates JWT_SECRET on import; give the suite a strong one.
os.environ.setdefault("JWT_SECRET", "pytest-only-signing-key-" + "k" * 48)

import pytest  # noqa: E402
from sqlalchemy import BigInteger, Engine, create_engine  # noqa: E402
from sqlalchemy.dialects.postgresql import JSONB  # noqa: E402
from sqlalchemy.ext.compiler import compiles  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from parley.database.models import Base, ChatRoom, User  # noqa: E402


# ---------------------------------------------------------------------------
# SQLite type shims
# ---------------------------------------------------------------------------
@compiles(JSONB, "sqlite")
def _jsonb_on_sqlite(type_, compiler, **kw):
    return "TEXT"


@compiles(BigInteger, "sqlite")
def _bigint_on_sqlite(type_, compiler, **kw):
    # INTEGER PRIMARY KEY is what gives SQLite rowid autoincrement
    return "INTEGER"


# ---------------------------------------------------------------------------
# Fixed identities used across the suite
# ---------------------------------------------------------------------------
ADMIN_ID = 1        # site admin
CREATOR_ID = 2      # created ROOM_ID
MEMBER_ID = 3
DANA_ID = 42
OUTSIDER_ID = 7     # exists but never joins

ROOM_ID = 10
OTHER_ROOM_ID = 11
CLOSED_ROOM_ID = 12  # is_active = False

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """Fresh in-memory database with the Parley schema.

    One shared connection (StaticPool) so that services called through
    ``run_db`` on worker threads see the same database as the test.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seeded_engine(db_engine: Engine) -> Engine:
    """Engine with users and rooms in place, but no memberships."""
    with Session(db_engine) as session:
        session.add_all([
            User(id=ADMIN_ID, name="Ada", is_admin=True),
            User(id=CREATOR_ID, name="Ben"),
            User(id=MEMBER_ID, name="Cleo"),
            User(id=DANA_ID, name="Dana"),
            User(id=OUTSIDER_ID, name="Omar"),
            ChatRoom(id=ROOM_ID, name="general", created_by=CREATOR_ID),
            ChatRoom(id=OTHER_ROOM_ID, name="random", created_by=CREATOR_ID),
            ChatRoom(id=CLOSED_ROOM_ID, name="archive", created_by=CREATOR_ID, is_active=False),
        ])
        session.commit()
    return db_engine


def make_token(sub: int | str, *, name: str = "Fixture", is_admin: bool = False) -> str:
    """Create a JWT as the identity provider would."""
    import jwt

    from parley.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": str(sub), "name": name, "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_admin_token(sub: int | str = ADMIN_ID, name: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    return make_token(sub, name=name, is_admin=True)


@pytest.fixture
def admin_token():
    return make_admin_token()


@pytest.fixture
def client(seeded_engine):
    """FastAPI TestClient wired to the seeded SQLite engine.

    The lifespan is not run; a fresh gateway and signal table are injected
    through dependency overrides instead.
    """
    from fastapi.testclient import TestClient

    from parley.api import deps
    from parley.api.main import app
    from parley.engine.broadcast import BroadcastGateway
    from parley.engine.signals import SignalTable

    gateway = BroadcastGateway()
    signals = SignalTable()
    app.dependency_overrides[deps.get_engine] = lambda: seeded_engine
    app.dependency_overrides[deps.get_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_signals] = lambda: signals

    test_client = TestClient(app, raise_server_exceptions=False)
    test_client.gateway = gateway
    test_client.signals = signals
    yield test_client

    app.dependency_overrides.clear()
