# tests/conftest.py

import pytest
import pytest_asyncio
from datetime import datetime
from uuid import uuid4
from unittest.mock import Mock, AsyncMock

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import Prospect, User, ProspectStatus
from app.schemas.structured_project import StructuredProject


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: tests that render real PDFs")


@compiles(JSONB, "sqlite")
def _jsonb_on_sqlite(element, compiler, **kw):
    return "JSON"


# ============================================================================
# FIXTURES - DATABASE
# ============================================================================

@pytest.fixture
def mock_db():
    """Mock async DB session. ``get`` returns None unless a test sets it."""
    db = Mock(spec=AsyncSession)
    db.add = Mock()
    db.delete = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.flush = AsyncMock()
    db.get = AsyncMock(return_value=None)
    db.execute = AsyncMock()
    return db


def scalars_result(values):
    """Stand-in for ``await db.execute(...)`` returning rows for ``.scalars()``."""
    result = Mock()
    result.scalars = Mock(return_value=Mock(all=Mock(return_value=list(values)),
                                            first=Mock(return_value=values[0] if values else None)))
    result.scalar_one_or_none = Mock(return_value=values[0] if values else None)
    result.scalar = Mock(return_value=len(values))
    return result


@pytest.fixture
def make_scalars_result():
    return scalars_result


# ============================================================================
# FIXTURES - DOMAIN
# ============================================================================

@pytest.fixture
def sample_structured_data():
    """Mapped brochure as stored in ``generated_sections`` (camelCase)."""
    return {
        "name": "Azure Bay Residences",
        "nameHe": "אז'ור ביי רזידנסס",
        "tagline": "Waterfront living in Dubai Marina",
        "description": "A 40-storey tower with marina views and resort amenities.",
        "developer": {"name": "Emaar Properties", "website": "https://emaar.com"},
        "location": {
            "area": "Dubai Marina",
            "city": "Dubai",
            "coordinates": {"lat": 25.08, "lng": 55.14},
            "nearbyLandmarks": [{"name": "JBR Beach", "distanceKm": "1.2 km", "type": "beach"}],
            "connectivity": [{"destination": "DXB Airport", "timeMinutes": 25}],
        },
        "priceFrom": "AED 1,200,000",
        "priceTo": 4500000,
        "units": [
            {"type": "1BR", "bedrooms": 1, "sizeFrom": 750, "sizeTo": 900, "sizeUnit": "sq.ft",
             "priceFrom": 1200000},
            {"type": "2BR", "bedrooms": 2, "sizeFrom": 1200, "priceFrom": 2500000},
        ],
        "paymentPlan": {
            "downPayment": "20%",
            "duringConstruction": 40,
            "onHandover": 40,
            "milestones": [{"milestone": "On booking", "percentage": 20}],
        },
        "completionDate": "Q4 2027",
        "status": "Off Plan",
        "amenities": [
            {"name": "Infinity Pool", "category": "leisure"},
            {"name": "Gym", "category": "wellness"},
            {"name": "Valet", "category": "luxury"},
        ],
        "highlights": [
            {"title": "Expected ROI", "value": "8%"},
            {"title": "Handover", "value": "Q4 2027"},
        ],
        "gallery": ["https://cdn.example.com/render-1.jpg", {"url": "https://cdn.example.com/render-2.jpg"}],
        "faq": [{"question": "Is there a payment plan?", "answer": "Yes, 60/40."}],
        "confidence": 0.85,
    }


@pytest.fixture
def sample_structured_project(sample_structured_data):
    return StructuredProject.model_validate(sample_structured_data)


@pytest.fixture
def sample_prospect():
    """Freshly uploaded prospect"""
    return Prospect(
        id=uuid4(),
        file_name="azure-bay-brochure.pdf",
        file_type="pdf",
        file_url="/uploads/prospects/abc123_azure-bay-brochure.pdf",
        file_size=2_048_000,
        file_hash="a" * 64,
        status=ProspectStatus.UPLOADED.value,
        retry_count=0,
        created_at=datetime.utcnow(),
    )


@pytest.fixture
def ready_prospect(sample_prospect, sample_structured_project):
    """Prospect whose pipeline reached ``ready``"""
    sample_prospect.status = ProspectStatus.READY.value
    sample_prospect.generated_title = sample_structured_project.name
    sample_prospect.generated_sections = sample_structured_project.to_sections()
    sample_prospect.extracted_images = [
        {"page": 1, "url": "/uploads/prospects/extracted/p1.jpg", "width": 1600, "height": 900},
    ]
    return sample_prospect


@pytest.fixture
def editor_user():
    return User(
        id=uuid4(),
        email="editor@example.com",
        password_hash="x",
        full_name="Editor",
        role="editor",
        is_active=True,
    )


# ============================================================================
# FIXTURES - REAL SESSION
# ============================================================================

@pytest_asyncio.fixture
async def sqlite_db():
    """Real AsyncSession on in-memory SQLite; commits and rollbacks behave as in production."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()
