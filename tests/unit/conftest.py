"""
Shared fixtures for unit tests.
Uses an in-memory SQLite database for fast isolated testing.
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from circulation.db.models import (
    Base, User, UserRole, Book, Loan, LoanStatus,
    Reservation, ReservationStatus, Notification, NotificationType,
)
from circulation.core.security import hash_password


@pytest_asyncio.fixture
async def async_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    # Enable foreign key support for SQLite
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
async def session_factory(async_engine):
    """Session factory for code that opens its own sessions (the sweep engine)."""
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """Provide a transactional database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ─── Helper factories ───────────────────────────────────────────


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def days_ahead(days: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


@pytest.fixture
def make_user():
    """Factory fixture to create User instances."""
    def _make(
        email: str = None,
        password: str = "testpassword123",
        full_name: str = "Test User",
        role: UserRole = UserRole.MEMBER,
        is_active: bool = True,
        is_built_in: bool = False,
        is_blocked: bool = False,
        block_reason: str = None,
    ) -> User:
        return User(
            id=str(uuid4()),
            email=email or f"user-{uuid4().hex[:8]}@test.com",
            hashed_password=hash_password(password),
            full_name=full_name,
            role=role,
            is_active=is_active,
            is_built_in=is_built_in,
            is_blocked=is_blocked,
            block_reason=block_reason,
        )
    return _make


@pytest.fixture
def make_book():
    """Factory fixture to create Book instances."""
    def _make(
        title: str = "Test Book",
        author: str = "Test Author",
        isbn: str = None,
        category: str = "Fiction",
        publish_year: int = 2024,
        publisher: str = "Test Press",
        quantity: int = 5,
        available_quantity: int = None,
    ) -> Book:
        return Book(
            id=str(uuid4()),
            title=title,
            author=author,
            isbn=isbn or f"978{uuid4().int % 10**10:010d}",
            category=category,
            publish_year=publish_year,
            publisher=publisher,
            quantity=quantity,
            available_quantity=quantity if available_quantity is None else available_quantity,
        )
    return _make


@pytest.fixture
def make_loan():
    """Factory fixture to create Loan instances."""
    def _make(
        user_id: str,
        book_id: str,
        status: LoanStatus = LoanStatus.BORROWED,
        borrow_date: datetime = None,
        due_date: datetime = None,
        return_date: datetime = None,
    ) -> Loan:
        now = datetime.now(timezone.utc)
        return Loan(
            id=str(uuid4()),
            user_id=user_id,
            book_id=book_id,
            borrow_date=borrow_date or now,
            due_date=due_date or now + timedelta(days=14),
            return_date=return_date,
            status=status,
        )
    return _make


@pytest.fixture
def make_reservation():
    """Factory fixture to create Reservation instances."""
    def _make(
        user_id: str,
        book_id: str,
        priority: int = 1,
        status: ReservationStatus = ReservationStatus.PENDING,
        notification_sent: bool = False,
        reservation_date: datetime = None,
        due_date: datetime = None,
    ) -> Reservation:
        return Reservation(
            id=str(uuid4()),
            user_id=user_id,
            book_id=book_id,
            priority=priority,
            status=status,
            notification_sent=notification_sent,
            reservation_date=reservation_date or datetime.now(timezone.utc),
            due_date=due_date,
        )
    return _make


@pytest.fixture
def make_notification():
    """Factory fixture to create Notification instances."""
    def _make(
        user_id: str,
        notification_type: NotificationType = NotificationType.SYSTEM,
        title: str = "Test notification",
        message: str = "Test message",
        read: bool = False,
    ) -> Notification:
        return Notification(
            id=str(uuid4()),
            user_id=user_id,
            title=title,
            message=message,
            type=notification_type,
            read=read,
        )
    return _make
