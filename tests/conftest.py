import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from labdesk.main import app
from labdesk.infrastructure.database import get_db, Base
from labdesk.domain.lab import models  # noqa: F401
from labdesk.domain.lab.repository import CatalogRepository
from labdesk.domain.lab.service import LabService


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'labdesk_test.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
async def lab_service(db_session: AsyncSession) -> LabService:
    return LabService(db_session)


@pytest.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database dependency override."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def api_client(client: AsyncClient) -> AsyncGenerator[AsyncClient, None]:
    """Client rooted at the versioned API, as the result-entry client sees it."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test/api/v1") as ac:
        yield ac


@pytest.fixture(scope="function")
async def lab_tests(db_session: AsyncSession) -> dict:
    """Test catalogue covering every result shape."""
    repo = CatalogRepository(db_session)

    cbc = await repo.create_main_test(
        {"main_test_name": "Complete Blood Count", "price": 100.0},
        [
            {"child_test_name": "Hemoglobin", "low": 12, "upper": 16, "lowest": 0, "max": 30,
             "unit_name": "g/dL", "normal_range": "12 - 16", "test_order": 1},
            {"child_test_name": "WBC", "low": 4, "upper": 11, "unit_name": "x10^9/L",
             "normal_range": "4 - 11", "test_order": 2},
            {"child_test_name": "Blood Group", "test_order": 3, "options": ["A+", "A-", "B+", "O+"]},
            {"child_test_name": "HIV", "defval": "Negative", "normal_range": "Negative / Positive",
             "test_order": 4},
            {"child_test_name": "Notes", "test_order": 5},
        ],
    )
    malaria = await repo.create_main_test(
        {"main_test_name": "Malaria Film", "price": 40.0},
        [{"child_test_name": "Result", "defval": "Not seen", "test_order": 1}],
    )
    unavailable = await repo.create_main_test(
        {"main_test_name": "Discontinued Panel", "available": False},
        [{"child_test_name": "Anything", "test_order": 1}],
    )
    empty = await repo.create_main_test({"main_test_name": "Consultation Fee", "price": 10.0}, [])

    children = {child.child_test_name: child.id for child in cbc.child_tests}
    return {
        "cbc": cbc.id,
        "malaria": malaria.id,
        "unavailable": unavailable.id,
        "empty": empty.id,
        "malaria_result": malaria.child_tests[0].id,
        **{name.lower().replace(" ", "_"): child_id for name, child_id in children.items()},
    }


@pytest.fixture(scope="function")
async def visit(lab_service: LabService):
    return await lab_service.register_visit({"patient_id": 501, "patient_name": "Amina Yusuf", "shift_id": 3})


@pytest.fixture(scope="function")
async def cbc_request(lab_service: LabService, visit, lab_tests: dict):
    lab_requests = await lab_service.add_lab_tests_to_visit(visit.id, [lab_tests["cbc"]])
    return lab_requests[0]


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
