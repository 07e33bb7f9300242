# tests/services/test_prospect_processor.py
"""
Tests for the brochure processing pipeline

Coverage:
- Environment validation
- Full pipeline progress sequence and persisted results
- Mapping failure marks the prospect failed
- Project creation failure still leaves the prospect ready
- Slug conflicts on a real session roll back without failing the prospect
- Project / mini-site creation, slug de-duplication and re-use
- Background job wrapper

Run with: pytest tests/services/test_prospect_processor.py -v
"""

import uuid
from contextlib import asynccontextmanager
from unittest.mock import Mock, AsyncMock, patch

import pytest

from app.config import settings
from app.models import Prospect, Project, MiniSite, ProspectStatus
from app.schemas.structured_project import SEOMetadata
from app.services.ai_mapper import AIMapper
from app.services.file_storage import StorageError
from app.services.image_classifier import build_manifest
from app.services.pdf_image_extractor import ExtractedImage
from app.services.pdf_processor import PDFExtractionResult, TableData, ExtractedBlock, PDFProcessingError
from app.services.prospect_processor import ProspectProcessor, result_status, run_processing_job

MODULE = "app.services.prospect_processor"


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def configured_env():
    with patch.object(settings, "GOOGLE_API_KEY", "test-key"), \
            patch.object(settings, "DATABASE_PUBLIC_URL", "postgresql://db.example.com/prospects"):
        yield


@pytest.fixture
def extraction():
    return PDFExtractionResult(
        text="AZURE BAY RESIDENCES\nWaterfront living in Dubai Marina",
        page_count=3,
        blocks=[ExtractedBlock(type="header", content="AZURE BAY RESIDENCES", page=1)],
        tables=[TableData(headers=["Payment Plan", "%"], rows=[["On booking", "20%"]], page=2)],
        metadata={"title": "Azure Bay", "pageCount": 3},
    )


@pytest.fixture
def extracted_images():
    return [ExtractedImage(page=1, url="/uploads/prospects/extracted/p/page1_img1.jpg", width=1600, height=900)]


@pytest.fixture
def classification(extracted_images):
    classified = [{
        **extracted_images[0].to_dict(),
        "category": "hero", "quality": "high", "isHeroCandidate": True,
        "confidence": 0.9, "sectionScore": 0.9,
    }]
    return classified, build_manifest(classified)


@pytest.fixture
def fake_mapper(sample_structured_project):
    mapper = Mock(spec=AIMapper)
    mapper.map_to_structured_project = AsyncMock(return_value={
        "success": True, "data": sample_structured_project, "confidence": 0.85, "errors": [],
    })
    mapper.translate_to_hebrew = AsyncMock(return_value={"description_he": "מגדל יוקרה על המים"})
    mapper.generate_seo = AsyncMock(return_value=SEOMetadata(title="אז'ור ביי", description="דירות יוקרה"))
    return mapper


@pytest.fixture
def db_with(mock_db, make_scalars_result):
    """Bind ``db.get`` to an in-memory row registry that ``db.add`` feeds."""
    def bind(*rows):
        registry = {(type(row), row.id): row for row in rows}

        def add(row):
            registry[(type(row), row.id)] = row

        async def get(model, key):
            return registry.get((model, key))

        mock_db.add.side_effect = add
        mock_db.get.side_effect = get
        mock_db.execute.return_value = make_scalars_result([])
        return mock_db
    return bind


@pytest.fixture
def pipeline_patches(extraction, extracted_images, classification):
    with patch(f"{MODULE}.extract_pdf_content", AsyncMock(return_value=extraction)) as extract, \
            patch(f"{MODULE}.extract_images_from_pdf", AsyncMock(return_value=extracted_images)) as images, \
            patch(f"{MODULE}.classify_images", AsyncMock(return_value=classification)) as classify:
        yield {"extract": extract, "images": images, "classify": classify}


# ============================================================================
# TEST: Environment
# ============================================================================

class TestEnvironment:
    """Test required configuration checks"""

    def test_missing_api_key_named(self):
        with patch.object(settings, "GOOGLE_API_KEY", None):
            assert ProspectProcessor.validate_environment() == \
                "Missing required environment variable: GOOGLE_API_KEY"

    def test_missing_database_url_named(self):
        with patch.object(settings, "GOOGLE_API_KEY", "key"), \
                patch.object(settings, "DATABASE_PUBLIC_URL", None):
            assert "DATABASE_PUBLIC_URL" in ProspectProcessor.validate_environment()

    def test_configured(self, configured_env):
        assert ProspectProcessor.validate_environment() is None

    @pytest.mark.asyncio
    async def test_missing_env_fails_prospect(self, db_with, sample_prospect):
        db = db_with(sample_prospect)
        events = []

        with patch.object(settings, "GOOGLE_API_KEY", None):
            result = await ProspectProcessor(db).process_prospect(sample_prospect.id, b"%PDF", events.append)

        assert result["success"] is False
        assert sample_prospect.status == ProspectStatus.FAILED.value
        assert "GOOGLE_API_KEY" in sample_prospect.last_error
        assert events[-1]["status"] == "failed"


# ============================================================================
# TEST: Pipeline
# ============================================================================

class TestProcessProspect:
    """Test the end-to-end pipeline with mocked extraction and AI"""

    @pytest.mark.asyncio
    async def test_full_run_publishes(self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper):
        db = db_with(sample_prospect)
        events = []
        processor = ProspectProcessor(db, ai_mapper=fake_mapper, gemini_client=Mock())

        result = await processor.process_prospect(str(sample_prospect.id), b"%PDF", events.append)

        assert result["success"] is True
        assert result["projectSlug"] == "azure-bay-residences"
        assert result["miniSiteSlug"] == "azure-bay-residences"
        assert [e["progress"] for e in events] == [10, 30, 35, 38, 42, 48, 40, 50, 60, 75, 80, 90, 92, 93, 97, 100]
        assert events[6]["message"] == "Found 1 pricing tables and 1 payment milestones"
        assert events[-1]["status"] == "published"
        assert all(e["prospectId"] == str(sample_prospect.id) for e in events)

        assert sample_prospect.status == ProspectStatus.PUBLISHED.value
        assert sample_prospect.processing_checkpoint == "published"
        assert sample_prospect.generated_title == "Azure Bay Residences"
        assert sample_prospect.generated_sections["descriptionHe"] == "מגדל יוקרה על המים"
        assert sample_prospect.generated_sections["seo"]["title"] == "אז'ור ביי"
        assert sample_prospect.generated_sections["heroImage"] == "/uploads/prospects/extracted/p/page1_img1.jpg"
        assert sample_prospect.image_manifest["hero"]["category"] == "hero"
        assert sample_prospect.project_slug == "azure-bay-residences"

        added = [call.args[0] for call in db.add.call_args_list]
        project = next(row for row in added if isinstance(row, Project))
        mini_site = next(row for row in added if isinstance(row, MiniSite))
        assert project.prospect_id == sample_prospect.id
        assert project.mini_site_id == mini_site.id
        assert mini_site.project_id == project.id

        mapping_args = fake_mapper.map_to_structured_project.await_args.args
        assert mapping_args[2]["paymentMilestones"][0]["percentage"] == 20.0

    @pytest.mark.asyncio
    async def test_no_images_skips_classification(
        self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper
    ):
        pipeline_patches["images"].return_value = []
        events = []
        processor = ProspectProcessor(db_with(sample_prospect), ai_mapper=fake_mapper, gemini_client=Mock())

        await processor.process_prospect(sample_prospect.id, b"%PDF", events.append)

        pipeline_patches["classify"].assert_not_awaited()
        assert 42 not in [e["progress"] for e in events]

    @pytest.mark.asyncio
    async def test_classification_failure_is_a_warning(
        self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper
    ):
        pipeline_patches["classify"].side_effect = RuntimeError("vision quota")
        events = []
        processor = ProspectProcessor(db_with(sample_prospect), ai_mapper=fake_mapper, gemini_client=Mock())

        result = await processor.process_prospect(sample_prospect.id, b"%PDF", events.append)

        assert result["success"] is True
        assert {"status": "warning", "progress": 48}.items() <= events[5].items()
        assert sample_prospect.image_manifest is None

    @pytest.mark.asyncio
    async def test_extraction_error_fails(self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper):
        pipeline_patches["extract"].side_effect = PDFProcessingError("Failed to extract PDF content: broken xref")
        events = []
        db = db_with(sample_prospect)

        result = await ProspectProcessor(db, ai_mapper=fake_mapper).process_prospect(
            sample_prospect.id, b"%PDF", events.append
        )

        assert result == {"success": False, "error": "Failed to extract PDF content: broken xref"}
        assert sample_prospect.status == ProspectStatus.FAILED.value
        assert sample_prospect.last_error == result["error"]
        db.rollback.assert_awaited()
        assert events[-1] == {
            "prospectId": str(sample_prospect.id), "status": "failed", "progress": 100,
            "message": result["error"],
        }

    @pytest.mark.asyncio
    async def test_mapping_failure(self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper):
        fake_mapper.map_to_structured_project.return_value = {
            "success": False, "data": None, "confidence": 0, "errors": ["Invalid JSON response from AI"],
        }
        processor = ProspectProcessor(db_with(sample_prospect), ai_mapper=fake_mapper, gemini_client=Mock())

        result = await processor.process_prospect(sample_prospect.id, b"%PDF")

        assert result["error"] == "AI mapping failed: Invalid JSON response from AI"
        assert sample_prospect.status == ProspectStatus.FAILED.value
        assert sample_prospect.processing_checkpoint == "ai_mapping_started"
        fake_mapper.translate_to_hebrew.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_project_creation_failure_still_ready(
        self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper
    ):
        events = []
        processor = ProspectProcessor(db_with(sample_prospect), ai_mapper=fake_mapper, gemini_client=Mock())
        processor.create_project_from_prospect = AsyncMock(return_value={"success": False, "error": "unique violation"})

        result = await processor.process_prospect(sample_prospect.id, b"%PDF", events.append)

        assert result["success"] is True
        assert result["projectSlug"] is None
        assert result_status(result) == ProspectStatus.READY.value
        assert sample_prospect.status == ProspectStatus.READY.value
        assert events[-1]["status"] == "ready"
        assert events[-1]["progress"] == 100

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_pipeline(
        self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper
    ):
        processor = ProspectProcessor(db_with(sample_prospect), ai_mapper=fake_mapper, gemini_client=Mock())

        result = await processor.process_prospect(sample_prospect.id, b"%PDF", Mock(side_effect=RuntimeError("closed")))

        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, configured_env, pipeline_patches, db_with, sample_prospect, fake_mapper):
        callback = AsyncMock()
        processor = ProspectProcessor(db_with(sample_prospect), ai_mapper=fake_mapper, gemini_client=Mock())

        await processor.process_prospect(sample_prospect.id, b"%PDF", callback)

        assert callback.await_count == 16

    @pytest.mark.asyncio
    async def test_unknown_prospect(self, configured_env, db_with):
        result = await ProspectProcessor(db_with()).process_prospect(uuid.uuid4(), b"%PDF")
        assert result == {"success": False, "error": "Prospect not found"}


# ============================================================================
# TEST: Publishing failures on a real session
# ============================================================================

@pytest.fixture
def slug_taken():
    """Always hand out the base slug so an existing row triggers a unique violation."""
    with patch.object(ProspectProcessor, "ensure_unique_slug", AsyncMock(side_effect=lambda model, base: base)):
        yield


class TestPublishingRollback:
    """Test that failed project / mini-site commits leave the prospect usable"""

    @pytest.mark.asyncio
    async def test_project_slug_conflict_ends_ready(
        self, configured_env, pipeline_patches, slug_taken, sqlite_db, sample_prospect, fake_mapper
    ):
        sqlite_db.add(Project(id=uuid.uuid4(), slug="azure-bay-residences", name="Another tower"))
        sqlite_db.add(sample_prospect)
        await sqlite_db.commit()
        events = []

        processor = ProspectProcessor(sqlite_db, ai_mapper=fake_mapper, gemini_client=Mock())
        result = await processor.process_prospect(sample_prospect.id, b"%PDF", events.append)

        assert result["success"] is True
        assert result["projectSlug"] is None
        assert result["projectData"]["name"] == "Azure Bay Residences"
        assert [(e["status"], e["progress"]) for e in events[-2:]] == [("publishing", 93), ("ready", 100)]
        assert not any(e["status"] == "failed" for e in events)

        await sqlite_db.refresh(sample_prospect)
        assert sample_prospect.status == ProspectStatus.READY.value
        assert sample_prospect.last_error is None
        assert sample_prospect.project_id is None

    @pytest.mark.asyncio
    async def test_mini_site_slug_conflict_still_published(
        self, configured_env, pipeline_patches, slug_taken, sqlite_db, sample_prospect, fake_mapper
    ):
        sqlite_db.add(MiniSite(id=uuid.uuid4(), slug="azure-bay-residences", name="Another site"))
        sqlite_db.add(sample_prospect)
        await sqlite_db.commit()
        events = []

        processor = ProspectProcessor(sqlite_db, ai_mapper=fake_mapper, gemini_client=Mock())
        result = await processor.process_prospect(sample_prospect.id, b"%PDF", events.append)

        assert result["success"] is True
        assert result["projectSlug"] == "azure-bay-residences"
        assert result["miniSiteSlug"] is None
        assert events[-1]["status"] == "published"
        assert not any(e["status"] == "failed" for e in events)

        await sqlite_db.refresh(sample_prospect)
        assert sample_prospect.status == ProspectStatus.PUBLISHED.value
        assert sample_prospect.mini_site_id is None
        project = await sqlite_db.get(Project, sample_prospect.project_id)
        assert project.prospect_id == sample_prospect.id


# ============================================================================
# TEST: Project / mini-site creation
# ============================================================================

class TestProjectCreation:
    """Test Project and MiniSite rows created from a ready prospect"""

    @pytest.mark.asyncio
    async def test_slug_deduplicated(self, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result(["azure-bay", "azure-bay-2"])

        slug = await ProspectProcessor(mock_db).ensure_unique_slug(Project, "azure-bay")

        assert slug == "azure-bay-3"

    @pytest.mark.asyncio
    async def test_empty_base_slug(self, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result([])
        assert await ProspectProcessor(mock_db).ensure_unique_slug(Project, "") == "project"

    @pytest.mark.asyncio
    async def test_create_project(self, db_with, ready_prospect):
        db = db_with(ready_prospect)

        result = await ProspectProcessor(db).create_project_from_prospect(ready_prospect.id)

        assert result["success"] is True
        assert result["slug"] == "azure-bay-residences"
        project = db.add.call_args.args[0]
        assert project.status == "draft"
        assert project.name == "אז'ור ביי רזידנסס"
        assert project.gallery[0]["url"] == "/uploads/prospects/extracted/p1.jpg"
        assert ready_prospect.project_id == project.id

    @pytest.mark.asyncio
    async def test_existing_project_updated_in_place(self, db_with, ready_prospect):
        existing = Project(id=uuid.uuid4(), slug="azure-bay-old", name="old", status="published")
        ready_prospect.project_id = existing.id
        db = db_with(ready_prospect, existing)

        result = await ProspectProcessor(db).create_project_from_prospect(ready_prospect.id)

        assert result["slug"] == "azure-bay-old"
        assert existing.name == "אז'ור ביי רזידנסס"
        assert existing.status == "published"
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_project_requires_generated_data(self, db_with, sample_prospect):
        result = await ProspectProcessor(db_with(sample_prospect)).create_project_from_prospect(sample_prospect.id)
        assert result == {"success": False, "error": "Prospect has no generated data"}

    @pytest.mark.asyncio
    async def test_project_commit_failure_rolls_back(self, db_with, ready_prospect):
        db = db_with(ready_prospect)
        db.commit.side_effect = RuntimeError("duplicate key")

        result = await ProspectProcessor(db).create_project_from_prospect(ready_prospect.id)

        assert result == {"success": False, "error": "duplicate key"}
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mini_site_requires_ready(self, db_with, sample_prospect):
        result = await ProspectProcessor(db_with(sample_prospect)).create_mini_site_from_prospect(sample_prospect.id)

        assert result["success"] is False
        assert "not ready" in result["error"]

    @pytest.mark.asyncio
    async def test_mini_site_requires_project(self, db_with, ready_prospect):
        result = await ProspectProcessor(db_with(ready_prospect)).create_mini_site_from_prospect(ready_prospect.id)
        assert "create the project first" in result["error"]

    @pytest.mark.asyncio
    async def test_mini_site_created_and_linked(self, db_with, ready_prospect):
        project = Project(id=uuid.uuid4(), slug="azure-bay-residences", name="x")
        ready_prospect.project_id = project.id
        db = db_with(ready_prospect, project)

        result = await ProspectProcessor(db).create_mini_site_from_prospect(ready_prospect.id)

        assert result["existing"] is False
        mini_site = db.add.call_args.args[0]
        assert project.mini_site_id == mini_site.id
        assert ready_prospect.mini_site_slug == result["slug"]

    @pytest.mark.asyncio
    async def test_existing_mini_site_returned(self, db_with, ready_prospect):
        mini_site = MiniSite(id=uuid.uuid4(), slug="azure-bay", name="x")
        ready_prospect.project_id = uuid.uuid4()
        ready_prospect.mini_site_id = mini_site.id
        db = db_with(ready_prospect, mini_site)

        result = await ProspectProcessor(db).create_mini_site_from_prospect(ready_prospect.id)

        assert result == {"success": True, "mini_site_id": str(mini_site.id), "slug": "azure-bay", "existing": True}
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_processing_status(self, db_with, ready_prospect):
        processor = ProspectProcessor(db_with(ready_prospect))

        status = await processor.get_processing_status(ready_prospect.id)

        assert status == {
            "status": "ready",
            "has_structured_data": True,
            "has_mini_site": False,
            "has_project": False,
            "confidence": 0.85,
        }
        assert await processor.get_processing_status("not-a-uuid") == {"status": "not_found"}


# ============================================================================
# TEST: Background job
# ============================================================================

class TestRunProcessingJob:
    """Test the broker runner wrapper"""

    @pytest.fixture
    def session_factory(self, db_with, sample_prospect):
        db = db_with(sample_prospect)

        @asynccontextmanager
        async def factory():
            yield db

        return factory

    @pytest.fixture
    def notify(self):
        with patch("app.websocket.notify_prospect_updated", AsyncMock()) as updated, \
                patch("app.websocket.notify_project_published", AsyncMock()) as published:
            yield {"updated": updated, "published": published}

    @pytest.mark.asyncio
    async def test_storage_error_marks_failed(self, session_factory, notify, sample_prospect):
        storage = Mock()
        storage.read = AsyncMock(side_effect=StorageError("File not found: /uploads/prospects/x.pdf"))

        event = await run_processing_job(sample_prospect.id, Mock(), storage, session_factory=session_factory)

        assert event == {"type": "error", "message": "File not found: /uploads/prospects/x.pdf"}
        assert sample_prospect.status == ProspectStatus.FAILED.value
        notify["updated"].assert_awaited_once_with(str(sample_prospect.id), "failed")

    @pytest.mark.asyncio
    async def test_success_returns_complete_event(self, session_factory, notify, sample_prospect):
        storage = Mock()
        storage.read = AsyncMock(return_value=b"%PDF-1.4")
        run = AsyncMock(return_value={"success": True, "projectSlug": "azure-bay", "miniSiteSlug": "azure-bay"})

        with patch.object(ProspectProcessor, "process_prospect", run):
            event = await run_processing_job(str(sample_prospect.id), Mock(), storage, session_factory=session_factory)

        assert event == {"type": "complete", "success": True, "projectSlug": "azure-bay", "error": None}
        assert run.await_args.args[1] == b"%PDF-1.4"
        notify["published"].assert_awaited_once_with("azure-bay", str(sample_prospect.id))
        assert notify["updated"].await_args_list[-1].args[1] == "published"

    @pytest.mark.asyncio
    async def test_pipeline_failure_returns_error_event(self, session_factory, notify, sample_prospect):
        storage = Mock()
        storage.read = AsyncMock(return_value=b"%PDF-1.4")
        run = AsyncMock(return_value={"success": False, "error": "AI mapping failed: quota"})

        with patch.object(ProspectProcessor, "process_prospect", run):
            event = await run_processing_job(sample_prospect.id, Mock(), storage, session_factory=session_factory)

        assert event == {"type": "error", "message": "AI mapping failed: quota"}
        notify["published"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_prospect(self, session_factory, notify):
        event = await run_processing_job("nope", Mock(), Mock(), session_factory=session_factory)
        assert event["type"] == "error"
