"""
Pytest configuration and fixtures for testing
"""
import os

# Settings are read at import time, so the environment has to be in place first
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-pytest-only-0123456789")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from auth_utils import create_jwt
from crud.user import UserRepository
from database import Base, get_db, get_session_factory
from models.subscription import utcnow

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_PASSWORD = "SalonPass123"


@pytest.fixture
async def test_engine():
    """
    A fresh in-memory database per test. StaticPool keeps every session on
    the same connection, so the tables survive between sessions.
    """
    import database_models  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an isolated AsyncSession on the in-memory database.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def make_user(test_db):
    """Create a user row directly, with any subscription fields overridden."""
    from auth_utils import hash_password

    counter = {"n": 0}

    async def _make_user(**fields):
        counter["n"] += 1
        repo = UserRepository(test_db)
        user = await repo.create_user({
            "email": fields.pop("email", f"owner{counter['n']}@salon.test"),
            "hashed_password": hash_password(TEST_PASSWORD),
            "name": fields.pop("name", "Salon Owner"),
            "business_type": fields.pop("business_type", "hair"),
        })
        for key, value in fields.items():
            setattr(user, key, value)
        await test_db.commit()
        await test_db.refresh(user)
        return user

    return _make_user


@pytest.fixture
async def client(session_factory):
    """
    httpx AsyncClient against the app, with the database dependencies
    pointed at the test database.
    """
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_jwt(str(user.id))}"}


def days_from_now(days: float):
    return utcnow() + timedelta(days=days)
