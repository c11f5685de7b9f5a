"""
Shared fixtures for KubeHeal unit tests.

DATABASE_URL is pointed at SQLite before any service module is imported, so
database.py builds a throwaway engine instead of connecting to postgres.
Each test gets its own in-memory database (StaticPool keeps one connection so
TestClient's worker thread sees the same data).
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("REQUIRE_API_KEY", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from kubeheal.services.shared.database import Base, get_db  # noqa: E402
from kubeheal.services.shared import models  # noqa: E402,F401


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def override_db(session_factory):
    """Dependency override for get_db bound to the test database."""
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()
    return {get_db: _get_db}
