"""
Shared fixtures for functional tests.
Uses httpx.AsyncClient against the real FastAPI app with an in-memory SQLite DB.
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from circulation.core.security import hash_password
from circulation.db import session as db_session_module
from circulation.db.models import Base, Loan, User, UserRole
from circulation.main import app
from circulation.services.overdue import SweepEngine


# ─── DB override ────────────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory SQLite engine for functional testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def test_session_factory(test_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def client(test_session_factory):
    """httpx.AsyncClient with the DB and the sweep engine pointed at the test DB."""

    async def override_get_db():
        async with test_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[db_session_module.get_db] = override_get_db
    original_engine = app.state.sweep_engine
    app.state.sweep_engine = SweepEngine(test_session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.sweep_engine = original_engine
    app.dependency_overrides.clear()


# ─── Auth helpers ───────────────────────────────────────────────

async def _create_and_login(client, session_factory, role, password, built_in=False, email=None):
    async with session_factory() as session:
        user = User(
            id=str(uuid4()),
            email=email or f"{role.value}-{uuid4().hex[:6]}@test.com",
            hashed_password=hash_password(password),
            full_name=f"Test {role.value.title()}",
            role=role,
            is_built_in=built_in,
            is_active=True,
        )
        session.add(user)
        await session.commit()

    resp = await client.post(
        "/api/v1/auth/login",
        data={"username": user.email, "password": password},
    )
    assert resp.status_code == 200
    return {"id": user.id, "email": user.email, "token": resp.json()["access_token"]}


@pytest_asyncio.fixture
async def registered_member(client: AsyncClient, test_session_factory):
    """Register a member through the API and return its data, id and token."""
    data = {
        "email": f"member-{uuid4().hex[:6]}@test.com",
        "password": "password123",
        "full_name": "Test Member",
    }
    resp = await client.post("/api/v1/auth/register", json=data)
    assert resp.status_code == 201

    async with test_session_factory() as session:
        result = await session.execute(select(User.id).where(User.email == data["email"]))
        user_id = result.scalar_one()
    return {**data, "id": user_id, "token": resp.json()["access_token"]}


@pytest_asyncio.fixture
async def second_member(client: AsyncClient, test_session_factory):
    return await _create_and_login(client, test_session_factory, UserRole.MEMBER, "memberpass123")


@pytest_asyncio.fixture
async def admin_user(client: AsyncClient, test_session_factory):
    return await _create_and_login(client, test_session_factory, UserRole.ADMIN, "adminpass123")


@pytest_asyncio.fixture
async def librarian_user(client: AsyncClient, test_session_factory):
    return await _create_and_login(client, test_session_factory, UserRole.LIBRARIAN, "libpass123")


@pytest_asyncio.fixture
async def built_in_admin(client: AsyncClient, test_session_factory):
    """The built-in admin account (cannot be deleted)."""
    admin = await _create_and_login(
        client, test_session_factory, UserRole.ADMIN, "builtinpass123",
        built_in=True, email="builtin-admin@library.com",
    )
    return {**admin, "is_built_in": True}


def auth_header(token: str) -> dict:
    """Return an Authorization header dict."""
    return {"Authorization": f"Bearer {token}"}


# ─── Circulation helpers ────────────────────────────────────────

async def create_book(client: AsyncClient, token: str, quantity: int = 1, **fields) -> dict:
    payload = {
        "isbn": fields.pop("isbn", f"978{uuid4().int % 10**10:010d}"),
        "title": fields.pop("title", "Clean Code"),
        "author": fields.pop("author", "Robert Martin"),
        "quantity": quantity,
        **fields,
    }
    resp = await client.post("/api/v1/books", json=payload, headers=auth_header(token))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def backdate_loan(session_factory, loan_id: str, days: int) -> None:
    """Move a loan's due date into the past, as if time had passed since checkout."""
    async with session_factory() as session:
        loan = await session.get(Loan, loan_id)
        loan.due_date = datetime.now(timezone.utc) - timedelta(days=days)
        await session.commit()
