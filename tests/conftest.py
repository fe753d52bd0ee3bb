"""
Shared fixtures for the permission engine tests.

Provides:
- engine / db: in-memory async SQLite with every table created
- cache: a fresh RoleCache per test
- roles: the built-in roles, keyed by name
- make_user: factory for raw user rows (no reporting links added)
- hire: factory for users created through create_user (superadmin oversight included)
- make_project: factory for projects owned by a user
- client: httpx AsyncClient bound to the app, sharing the test session
- auth_headers: factory for bearer headers of a user
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-long-enough-for-hs256")

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crm.core import config
from crm.core.database.engine import enable_sqlite_savepoints, get_db, init_db
from crm.features.permissions.cache import RoleCache, get_role_cache
from crm.features.projects.models import Project
from crm.features.roles.defaults import DEFAULT_ROLES
from crm.features.roles.service import create_role
from crm.features.users.models import User
from crm.features.users.service import create_user


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest_asyncio.fixture(scope="function")
async def engine():
    """In-memory database shared by every connection of one test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(test_engine)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(engine):
    """Session used by the test and, through get_db, by the app."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def cache():
    """Fresh role cache."""
    return RoleCache()


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================

@pytest_asyncio.fixture(scope="function")
async def roles(db):
    """Built-in roles (superadmin, admin, manager, hr, sales, user)."""
    created = {}
    for name, spec in DEFAULT_ROLES.items():
        created[name] = await create_role(
            db,
            name=name,
            permissions=spec["permissions"],
            level=spec["level"],
            description=spec["description"],
        )
    return created


@pytest.fixture(scope="function")
def make_user(db):
    """Factory for users on a role; overrides and restrictions default to empty."""
    counter = {"n": 0}

    async def _make_user(role, level=None, **fields):
        counter["n"] += 1
        user = User(
            email=fields.pop("email", f"user{counter['n']}@example.com"),
            name=fields.pop("name", f"User {counter['n']}"),
            role=role.name,
            role_id=role.id,
            level=role.level if level is None else level,
            custom_allowed=fields.pop("custom_allowed", []),
            custom_denied=fields.pop("custom_denied", []),
            allowed_projects=fields.pop("allowed_projects", []),
            denied_projects=fields.pop("denied_projects", []),
            **fields,
        )
        db.add(user)
        await db.flush()
        return user

    return _make_user


@pytest.fixture(scope="function")
def hire(db):
    """Factory for users created the way the API creates them."""
    counter = {"n": 0}

    async def _hire(role):
        counter["n"] += 1
        return await create_user(db, f"staff{counter['n']}@example.com", f"Staff {counter['n']}", role)

    return _hire


@pytest.fixture(scope="function")
def make_project(db):
    """Factory for projects owned (and joined) by a user."""
    async def _make_project(owner, name="Skyline Towers"):
        project = Project(name=name, location="Pune", developer="Acme Builders", owner_id=owner.id)
        project.owner = owner
        project.members = [owner]
        project.managers = []
        db.add(project)
        await db.flush()
        return project

    return _make_project


# =============================================================================
# HTTP FIXTURES
# =============================================================================

@pytest_asyncio.fixture(scope="function")
async def client(db, cache):
    """AsyncClient against the app with the test session and cache injected."""
    from crm.main import app

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_role_cache] = lambda: cache
    app.state.limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
    app.state.limiter.enabled = True


@pytest.fixture(scope="function")
def auth_headers():
    """Factory for bearer headers carrying a token for a user."""
    def _auth_headers(user):
        token = jwt.encode({"sub": user.id}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
