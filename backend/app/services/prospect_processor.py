"""
Prospect Processor - the brochure-to-listing pipeline.

Flow:
1. Extract text, tables and images from the PDF (images are classified by AI)
2. Map the content onto a StructuredProject with Gemini
3. Translate to Hebrew and generate SEO (concurrently), persist as ready
4. Create (or update) the Project and its MiniSite, mark published

Every stage reports ``{prospectId, status, progress, message}`` through an
optional callback. A failure in any stage marks the prospect failed; the
pipeline is never retried automatically.
"""

import asyncio
import inspect
import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import AsyncSessionLocal
from app.models import Prospect, Project, MiniSite, ProspectStatus
from app.schemas.structured_project import StructuredProject
from app.services.ai_mapper import AIMapper
from app.services.file_storage import FileStorage, StorageError
from app.services.file_validation import UploadValidationError, unpack_document
from app.services.gemini_client import GeminiClient
from app.services.image_classifier import classify_images
from app.services.pdf_image_extractor import extract_images_from_pdf
from app.services.pdf_processor import (
    extract_pdf_content,
    identify_pricing_tables,
    extract_payment_milestones,
)
from app.services.progress_broker import progress_event, complete_event, error_event
from app.services.project_builder import (
    generate_slug,
    next_available_slug,
    build_project_fields,
    build_mini_site_fields,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000

ProgressCallback = Callable[[Dict[str, Any]], Any]


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def result_status(result: Dict[str, Any]) -> str:
    """Prospect status implied by a ``process_prospect`` result."""
    if not result["success"]:
        return ProspectStatus.FAILED.value
    if result.get("projectSlug"):
        return ProspectStatus.PUBLISHED.value
    return ProspectStatus.READY.value


class ProspectProcessor:
    """Runs the pipeline for one prospect on a single database session."""

    def __init__(
        self,
        db: AsyncSession,
        ai_mapper: Optional[AIMapper] = None,
        storage: Optional[FileStorage] = None,
        gemini_client: Optional[GeminiClient] = None,
    ):
        self.db = db
        self.storage = storage
        self._client = gemini_client
        self._ai_mapper = ai_mapper

    @property
    def client(self) -> GeminiClient:
        if self._client is None:
            self._client = GeminiClient()
        return self._client

    @property
    def ai_mapper(self) -> AIMapper:
        if self._ai_mapper is None:
            self._ai_mapper = AIMapper(self.client)
        return self._ai_mapper

    # ========================================================================
    # ENVIRONMENT
    # ========================================================================

    @staticmethod
    def validate_environment() -> Optional[str]:
        """Return an error naming the first missing variable, or None."""
        if not settings.GOOGLE_API_KEY:
            return "Missing required environment variable: GOOGLE_API_KEY"
        if not settings.DATABASE_PUBLIC_URL:
            return "Missing required environment variable: DATABASE_PUBLIC_URL"
        return None

    # ========================================================================
    # PIPELINE
    # ========================================================================

    async def process_prospect(
        self,
        prospect_id,
        pdf_bytes: bytes,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """
        Run the full pipeline.

        Returns ``{"success": True, "projectData", "projectSlug", "miniSiteSlug"}``
        or ``{"success": False, "error"}``.
        """
        prospect_id = str(prospect_id)
        start_time = datetime.utcnow()

        async def emit(status: str, progress: int, message: str):
            await self._emit(on_progress, progress_event(prospect_id, status, progress, message))

        env_error = self.validate_environment()
        if env_error:
            logger.error(f"❌ Cannot process prospect {prospect_id}: {env_error}")
            await emit(ProspectStatus.FAILED.value, 100, env_error)
            await self._save_error(prospect_id, env_error)
            return {"success": False, "error": env_error}

        try:
            prospect = await self._get_prospect(prospect_id)
            if prospect is None:
                return {"success": False, "error": "Prospect not found"}

            # Stage 1: extraction
            await self._set_status(prospect, ProspectStatus.EXTRACTING)
            await emit("extracting", 10, "Extracting content from PDF...")

            content = await extract_pdf_content(pdf_bytes)
            await emit(
                "extracting", 30,
                f"Extracted {content.page_count} pages, {len(content.blocks)} blocks"
            )

            await emit("extracting", 35, "Extracting images from PDF...")
            images = [image.to_dict() for image in await extract_images_from_pdf(pdf_bytes, prospect_id, self.storage)]
            await emit("extracting", 38, f"Extracted {len(images)} images")

            classified, manifest = [], None
            if images:
                await emit("extracting", 42, f"Classifying {len(images)} images with AI...")
                try:
                    classified, manifest = await classify_images(images, self.client, self.storage)
                    await emit("extracting", 48, f"Classified {len(classified)} images")
                except Exception as e:
                    logger.warning(f"Image classification failed for prospect {prospect_id}: {e}")
                    await emit("warning", 48, "Image classification failed, continuing without it")

            tables = [table.to_dict() for table in content.tables]
            prospect.extracted_text = content.text
            prospect.extracted_tables = tables
            prospect.extracted_images = images
            prospect.classified_images = classified or None
            prospect.image_manifest = manifest
            await self.db.commit()

            pricing_tables = identify_pricing_tables(content.tables)
            milestones = extract_payment_milestones(content.tables)
            await emit(
                "extracting", 40,
                f"Found {len(pricing_tables)} pricing tables and {len(milestones)} payment milestones"
            )

            await self._set_status(prospect, ProspectStatus.EXTRACTED, checkpoint="content_extracted")
            await emit("extracted", 50, "Content extracted successfully")

            # Stage 2: AI mapping
            await self._set_status(prospect, ProspectStatus.MAPPING, checkpoint="ai_mapping_started")
            await emit("mapping", 60, "Mapping content with AI...")

            metadata = {
                **content.metadata,
                "pricingTables": [table.to_dict() for table in pricing_tables],
                "paymentMilestones": milestones,
            }
            mapping = await self.ai_mapper.map_to_structured_project(content.text, tables, metadata)

            if not mapping["success"] or mapping["data"] is None:
                error = "AI mapping failed: " + ("; ".join(mapping["errors"]) or "no data returned")
                return await self._fail(prospect_id, error, emit)

            project: StructuredProject = mapping["data"]
            confidence = mapping["confidence"]

            await self._set_status(prospect, ProspectStatus.MAPPED, checkpoint="ai_mapping_complete")
            await emit("mapped", 75, f"Mapped project data ({round(confidence * 100)}% confidence)")

            # Stage 3: translation + SEO
            await self._set_status(prospect, ProspectStatus.VALIDATING)
            await emit("validating", 80, "Generating Hebrew translation and SEO...")

            translation, seo = await asyncio.gather(
                self.ai_mapper.translate_to_hebrew(project),
                self.ai_mapper.generate_seo(project),
            )

            hero = (manifest or {}).get("hero")
            project = project.model_copy(update={
                **translation,
                "seo": seo,
                "image_manifest": manifest,
                "classified_images": classified or None,
                "hero_image": project.hero_image or (hero["url"] if hero else None),
                "source_prospect_id": prospect_id,
                "confidence": confidence,
                "extracted_at": datetime.utcnow(),
            })
            await emit("validating", 90, "Merged translation and SEO")

            sections = project.to_sections()
            prospect.generated_title = project.name
            prospect.generated_description = project.description_he or project.description
            prospect.generated_sections = sections
            prospect.processed_at = datetime.utcnow()
            prospect.last_error = None
            await self._set_status(prospect, ProspectStatus.READY, checkpoint="data_ready")
            await emit("ready", 92, "Project data saved")

            # Stage 4: publishing
            await emit("publishing", 93, "Creating project...")
            project_result = await self.create_project_from_prospect(prospect_id)
            if not project_result["success"]:
                logger.warning(f"Project creation failed for prospect {prospect_id}: {project_result['error']}")
                await emit("ready", 100, "Project data is ready, but the project could not be created")
                return {
                    "success": True,
                    "projectData": sections,
                    "projectSlug": None,
                    "miniSiteSlug": None,
                }

            await emit("publishing", 97, "Creating mini-site...")
            mini_site_result = await self.create_mini_site_from_prospect(prospect_id)
            mini_site_slug = mini_site_result.get("slug") if mini_site_result["success"] else None
            if not mini_site_result["success"]:
                logger.warning(f"Mini-site creation failed for prospect {prospect_id}: {mini_site_result['error']}")
                await self.db.refresh(prospect)

            await self._set_status(prospect, ProspectStatus.PUBLISHED, checkpoint="published")
            await emit("published", 100, "Project published")

            elapsed = (datetime.utcnow() - start_time).total_seconds()
            logger.info(
                f"✅ Processed prospect {prospect_id}: project={project_result['slug']}, "
                f"mini_site={mini_site_slug}, time={elapsed:.2f}s"
            )

            return {
                "success": True,
                "projectData": sections,
                "projectSlug": project_result["slug"],
                "miniSiteSlug": mini_site_slug,
            }

        except Exception as e:
            logger.exception(f"❌ Pipeline error for prospect {prospect_id}")
            return await self._fail(prospect_id, str(e) or e.__class__.__name__, emit)

    async def _fail(self, prospect_id: str, error: str, emit) -> Dict[str, Any]:
        error = error[:MAX_ERROR_LENGTH]
        await emit(ProspectStatus.FAILED.value, 100, error)
        await self._save_error(prospect_id, error)
        return {"success": False, "error": error}

    async def _emit(self, callback: Optional[ProgressCallback], event: Dict[str, Any]):
        logger.info(f"[{event['prospectId']}] {event['status']} {event['progress']}%: {event['message']}")
        if callback is None:
            return
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _get_prospect(self, prospect_id) -> Optional[Prospect]:
        key = _as_uuid(prospect_id)
        if key is None:
            return None
        return await self.db.get(Prospect, key)

    async def _set_status(self, prospect: Prospect, status: ProspectStatus, checkpoint: Optional[str] = None):
        prospect.status = status.value
        if checkpoint:
            prospect.processing_checkpoint = checkpoint
        prospect.updated_at = datetime.utcnow()
        await self.db.commit()

    async def _save_error(self, prospect_id, error: str):
        try:
            await self.db.rollback()
            prospect = await self._get_prospect(prospect_id)
            if prospect is None:
                return
            prospect.status = ProspectStatus.FAILED.value
            prospect.last_error = error[:MAX_ERROR_LENGTH]
            prospect.updated_at = datetime.utcnow()
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to persist error for prospect {prospect_id}: {e}")

    # ========================================================================
    # PROJECT / MINI-SITE
    # ========================================================================

    async def ensure_unique_slug(self, model, base_slug: str) -> str:
        """Base slug, or ``base-2``, ``base-3``... whichever is free in the model's table."""
        base_slug = base_slug or "project"
        result = await self.db.execute(select(model.slug).where(model.slug.like(f"{base_slug}%")))
        taken = set(result.scalars().all())
        return next_available_slug(base_slug, taken)

    def _load_structured(self, prospect: Prospect) -> StructuredProject:
        return StructuredProject.model_validate(prospect.generated_sections)

    async def create_project_from_prospect(self, prospect_id) -> Dict[str, Any]:
        """
        Create the Project for a prospect, or refresh it in place if one is
        already linked (the slug is kept).
        """
        prospect = await self._get_prospect(prospect_id)
        if prospect is None:
            return {"success": False, "error": "Prospect not found"}
        if not prospect.generated_sections:
            return {"success": False, "error": "Prospect has no generated data"}

        try:
            project = self._load_structured(prospect)
        except ValidationError as e:
            return {"success": False, "error": f"Generated data is invalid: {e.error_count()} errors"}

        try:
            fields = build_project_fields(project, prospect.extracted_images)

            row = await self.db.get(Project, prospect.project_id) if prospect.project_id else None
            if row is not None:
                for key, value in fields.items():
                    setattr(row, key, value)
                row.updated_at = datetime.utcnow()
                logger.info(f"Updating existing project {row.slug} from prospect {prospect.id}")
            else:
                slug = await self.ensure_unique_slug(Project, generate_slug(project.name))
                row = Project(id=uuid.uuid4(), slug=slug, status="draft", prospect_id=prospect.id, **fields)
                self.db.add(row)

            prospect.project_id = row.id
            prospect.project_slug = row.slug
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"❌ Project creation failed for prospect {prospect_id}: {e}")
            return {"success": False, "error": str(e)}

        logger.info(f"✅ Project {row.slug} linked to prospect {prospect.id}")
        return {"success": True, "project_id": str(row.id), "slug": row.slug}

    async def create_mini_site_from_prospect(self, prospect_id, require_ready: bool = True) -> Dict[str, Any]:
        """Create the prospect's MiniSite. Returns the linked one if it already exists."""
        prospect = await self._get_prospect(prospect_id)
        if prospect is None:
            return {"success": False, "error": "Prospect not found"}
        if require_ready and prospect.status not in (ProspectStatus.READY.value, ProspectStatus.PUBLISHED.value):
            return {"success": False, "error": f"Prospect is not ready (status: {prospect.status})"}
        if not prospect.project_id:
            return {"success": False, "error": "Prospect has no project; create the project first"}

        if prospect.mini_site_id:
            existing = await self.db.get(MiniSite, prospect.mini_site_id)
            if existing is not None:
                return {"success": True, "mini_site_id": str(existing.id), "slug": existing.slug, "existing": True}

        if not prospect.generated_sections:
            return {"success": False, "error": "Prospect has no generated data"}

        try:
            project = self._load_structured(prospect)
            fields = build_mini_site_fields(project)
            slug = await self.ensure_unique_slug(MiniSite, generate_slug(project.name))

            mini_site = MiniSite(id=uuid.uuid4(), slug=slug, project_id=prospect.project_id, **fields)
            self.db.add(mini_site)

            prospect.mini_site_id = mini_site.id
            prospect.mini_site_slug = slug

            project_row = await self.db.get(Project, prospect.project_id)
            if project_row is not None:
                project_row.mini_site_id = mini_site.id

            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"❌ Mini-site creation failed for prospect {prospect_id}: {e}")
            return {"success": False, "error": str(e)}

        logger.info(f"✅ Mini-site {slug} created for prospect {prospect.id}")
        return {"success": True, "mini_site_id": str(mini_site.id), "slug": slug, "existing": False}

    async def get_processing_status(self, prospect_id) -> Dict[str, Any]:
        prospect = await self._get_prospect(prospect_id)
        if prospect is None:
            return {"status": "not_found"}

        sections = prospect.generated_sections or {}
        return {
            "status": prospect.status,
            "has_structured_data": bool(prospect.generated_sections),
            "has_mini_site": prospect.mini_site_id is not None,
            "has_project": prospect.project_id is not None,
            "confidence": sections.get("confidence"),
        }


# ============================================================================
# BACKGROUND RUN
# ============================================================================

async def run_processing_job(
    prospect_id,
    publish: ProgressCallback,
    storage: FileStorage,
    session_factory=AsyncSessionLocal,
) -> Dict[str, Any]:
    """
    Load a prospect's stored file and run the pipeline on a fresh session.

    Used as the ProgressBroker runner; returns the terminal stream event.
    """
    from app.websocket import notify_prospect_updated, notify_project_published

    key = _as_uuid(prospect_id)
    if key is None:
        return error_event("Prospect not found")

    async with session_factory() as db:
        prospect = await db.get(Prospect, key)
        if prospect is None:
            return error_event("Prospect not found")
        if not prospect.file_url:
            return error_event("Prospect has no stored file")

        try:
            raw = await storage.read(prospect.file_url)
            pdf_bytes = unpack_document(raw, prospect.file_type)
        except (StorageError, UploadValidationError) as e:
            error = str(e)[:MAX_ERROR_LENGTH]
            logger.error(f"❌ Cannot load file for prospect {prospect_id}: {error}")
            prospect.status = ProspectStatus.FAILED.value
            prospect.last_error = error
            await db.commit()
            await notify_prospect_updated(str(key), prospect.status)
            return error_event(error)

        prospect.status = ProspectStatus.PROCESSING.value
        prospect.last_error = None
        await db.commit()
        await notify_prospect_updated(str(key), prospect.status)

        processor = ProspectProcessor(db, storage=storage)
        result = await processor.process_prospect(key, pdf_bytes, on_progress=publish)

    await notify_prospect_updated(str(key), result_status(result))
    if result.get("projectSlug"):
        await notify_project_published(result["projectSlug"], str(key))

    if result["success"]:
        return complete_event(True, project_slug=result.get("projectSlug"))
    return error_event(result["error"])
