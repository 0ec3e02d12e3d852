"""
Shared test fixtures for the reimbursement service test suite.

Async throughout (aiosqlite + AsyncSession).
"""

import os
import sys
import tempfile
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["EMPLOYEE_DIRECTORY_URL"] = ""
os.environ["ATTACHMENT_STORAGE_DIR"] = tempfile.mkdtemp(prefix="reimbursement-attachments-")

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.v1.deps import Actor, get_current_actor, get_db, get_employee_directory
from app.clients.employee_directory import EmployeeDirectory
from app.db.base import Base
from app.main import app
from app.services import reimbursements as service

# A separate test engine; app.db.session.engine is never touched.
test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

FINANCE_ACTOR = Actor(
    id=uuid.UUID("11111111-1111-1111-1111-111111111111"),
    name="Finance Tester",
    role="finance",
)


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before usage and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        yield session


async def _override_get_current_actor() -> Actor:
    return FINANCE_ACTOR


def _override_get_employee_directory() -> EmployeeDirectory:
    return EmployeeDirectory(base_url="")


app.dependency_overrides[get_db] = _override_get_db
app.dependency_overrides[get_current_actor] = _override_get_current_actor
app.dependency_overrides[get_employee_directory] = _override_get_employee_directory


@pytest.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct service calls in tests."""
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def actor_id() -> uuid.UUID:
    return FINANCE_ACTOR.id


@pytest.fixture
def collaborator_id() -> uuid.UUID:
    return uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest.fixture
def expense_payload() -> dict:
    """A valid create/update body for the HTTP surface."""
    return {
        "title": "Client dinner",
        "description": "Dinner with the Acme team",
        "category": "MEALS",
        "requested_amount": "120.00",
        "expense_date": (date.today() - timedelta(days=3)).isoformat(),
    }


@pytest.fixture
def make_request(db_session: AsyncSession, collaborator_id: uuid.UUID, actor_id: uuid.UUID):
    """Factory creating a DRAFT request through the service layer."""

    async def _make(
        title: str = "Taxi to airport",
        amount: str = "100.00",
        category: str = "TRANSPORT",
        description: str | None = None,
        expense_date: date | None = None,
        collaborator: uuid.UUID | None = None,
    ):
        return await service.create_request(
            db_session,
            collaborator_id=collaborator or collaborator_id,
            title=title,
            description=description,
            category=category,
            requested_amount=Decimal(amount),
            expense_date=expense_date or date.today() - timedelta(days=1),
            actor_id=actor_id,
        )

    return _make
