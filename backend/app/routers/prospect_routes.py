"""Prospect import endpoints: upload, processing, progress stream and manual fallbacks."""

import asyncio
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, File, status
from fastapi.responses import StreamingResponse
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_editor
from app.config import settings
from app.database import get_db
from app.models import Prospect, Project, MiniSite, User, ProspectStatus
from app.schemas import (
    ProspectCreate,
    ProspectUpdate,
    ProspectContentUpdate,
    ProspectResponse,
    ProspectListResponse,
    ProcessingStatusResponse,
    ReprocessResponse,
)
from app.services.file_storage import FileStorage, StorageError, compute_file_hash
from app.services.file_validation import UploadValidationError, validate_upload, unpack_document
from app.services.progress_broker import (
    ProgressBroker,
    ProcessingChannel,
    complete_event,
    error_event,
    format_sse,
    is_terminal,
)
from app.services.prospect_processor import ProspectProcessor, run_processing_job, result_status
from app.websocket import notify_prospect_updated, notify_project_published

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/prospects", tags=["Prospects"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

CONTENT_EDITABLE_STATUSES = (
    ProspectStatus.READY.value,
    ProspectStatus.FAILED.value,
    ProspectStatus.EXTRACTED.value,
    ProspectStatus.MAPPED.value,
)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_progress_broker(request: Request) -> ProgressBroker:
    return request.app.state.progress_broker


def get_file_storage(request: Request) -> FileStorage:
    return request.app.state.file_storage


def get_processor(
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
) -> ProspectProcessor:
    return ProspectProcessor(db, storage=storage)


async def _get_prospect_or_404(db: AsyncSession, prospect_id: UUID) -> Prospect:
    prospect = await db.get(Prospect, prospect_id)
    if prospect is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prospect not found")
    return prospect


def start_processing(broker: ProgressBroker, storage: FileStorage, prospect_id) -> ProcessingChannel:
    """Start (or join) the background pipeline run for a prospect."""
    return broker.start(
        prospect_id,
        lambda publish: run_processing_job(prospect_id, publish, storage),
    )


async def run_registered(broker: ProgressBroker, prospect_id, runner) -> dict:
    """
    Run a pipeline on the request's session as a broker run and wait for it.

    The run is visible to ``process-stream``, ``process`` and stale-run
    recovery like any background run, and a client disconnect does not
    cancel it. Must be called with no await since the ``is_running`` check.
    """
    outcome = {}

    async def wrapped(publish):
        result = await runner(publish)
        outcome.update(result)
        if result["success"]:
            return complete_event(True, project_slug=result.get("projectSlug"))
        return error_event(result["error"])

    channel = broker.start(prospect_id, wrapped)
    await asyncio.shield(channel.task)

    if not outcome:
        message = (channel.terminal or {}).get("message") or "Processing failed"
        return {"success": False, "error": message}
    return outcome


async def _load_pdf(storage: FileStorage, prospect: Prospect) -> bytes:
    if not prospect.file_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Prospect has no stored file")
    try:
        return unpack_document(await storage.read(prospect.file_url), prospect.file_type)
    except (StorageError, UploadValidationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================================================
# UPLOAD / CRUD
# ============================================================================

@router.post("/upload", response_model=ProspectResponse, status_code=status.HTTP_201_CREATED)
async def upload_prospect(
    file: UploadFile = File(...),
    auto_process: bool = Query(True),
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
    broker: ProgressBroker = Depends(get_progress_broker),
    current_user: User = Depends(get_current_editor)
):
    """
    Upload a developer brochure (PDF, ZIP or PowerPoint).

    The file is validated before anything is stored. Processing starts in the
    background unless ``auto_process=false``.
    """
    try:
        if file.size is not None:
            validate_upload(file.filename, file.content_type, file.size, settings.max_upload_bytes)
        data = await file.read()
        file_type = validate_upload(file.filename, file.content_type, len(data), settings.max_upload_bytes)
    except UploadValidationError as e:
        logger.warning(f"Upload rejected ({file.filename}): {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    file_hash = compute_file_hash(data)
    result = await db.execute(select(Prospect.id).where(Prospect.file_hash == file_hash).limit(1))
    existing_id = result.scalars().first()
    if existing_id is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "This file has already been uploaded", "prospectId": str(existing_id)}
        )

    try:
        file_url = await storage.save(data, file.filename or f"upload.{file_type}")
    except StorageError as e:
        logger.error(f"❌ Failed to store upload {file.filename}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to store file")

    prospect = Prospect(
        id=uuid4(),
        file_name=file.filename or f"upload.{file_type}",
        file_type=file_type,
        file_url=file_url,
        file_size=len(data),
        file_hash=file_hash,
        status=ProspectStatus.UPLOADED.value,
        retry_count=0,
    )
    db.add(prospect)
    await db.commit()
    await db.refresh(prospect)

    logger.info(f"✅ Prospect {prospect.id} uploaded by {current_user.email}: {prospect.file_name}")
    await notify_prospect_updated(str(prospect.id), prospect.status)

    if auto_process:
        start_processing(broker, storage, prospect.id)

    return ProspectResponse.model_validate(prospect)


@router.post("", response_model=ProspectResponse, status_code=status.HTTP_201_CREATED)
async def create_prospect(
    prospect_data: ProspectCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_editor)
):
    """Register a prospect for a file that is already stored elsewhere."""
    prospect = Prospect(
        id=uuid4(),
        file_name=prospect_data.file_name,
        file_type=prospect_data.file_type,
        file_url=prospect_data.file_url,
        status=ProspectStatus.UPLOADED.value,
        retry_count=0,
    )
    db.add(prospect)
    await db.commit()
    await db.refresh(prospect)

    await notify_prospect_updated(str(prospect.id), prospect.status)
    return ProspectResponse.model_validate(prospect)


@router.get("", response_model=ProspectListResponse)
async def list_prospects(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_editor)
):
    """List prospects, newest first."""
    query = select(Prospect)
    count_query = select(func.count()).select_from(Prospect)
    if status_filter:
        query = query.where(Prospect.status == status_filter)
        count_query = count_query.where(Prospect.status == status_filter)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(query.order_by(Prospect.created_at.desc()).offset(offset).limit(limit))
    prospects = result.scalars().all()

    return ProspectListResponse(
        prospects=[ProspectResponse.model_validate(p) for p in prospects],
        total=total,
    )


@router.get("/{prospect_id}", response_model=ProspectResponse)
async def get_prospect(
    prospect_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_editor)
):
    return ProspectResponse.model_validate(await _get_prospect_or_404(db, prospect_id))


@router.put("/{prospect_id}", response_model=ProspectResponse)
async def update_prospect(
    prospect_id: UUID,
    updates: ProspectUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_editor)
):
    prospect = await _get_prospect_or_404(db, prospect_id)

    for field, value in updates.model_dump(exclude_unset=True).items():
        setattr(prospect, field, value)
    prospect.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(prospect)
    await notify_prospect_updated(str(prospect.id), prospect.status)
    return ProspectResponse.model_validate(prospect)


@router.delete("/{prospect_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_prospect(
    prospect_id: UUID,
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
    broker: ProgressBroker = Depends(get_progress_broker),
    current_user: User = Depends(get_current_editor)
):
    """Delete a prospect and its stored file. Linked projects are kept."""
    if broker.is_running(prospect_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Prospect is being processed")

    prospect = await _get_prospect_or_404(db, prospect_id)
    file_url = prospect.file_url

    await db.delete(prospect)
    await db.commit()
    broker.discard(prospect_id)

    try:
        await storage.delete(file_url)
    except StorageError as e:
        logger.warning(f"Could not delete stored file for prospect {prospect_id}: {e}")

    logger.info(f"Prospect {prospect_id} deleted by {current_user.email}")
    await notify_prospect_updated(str(prospect_id), "deleted")


# ============================================================================
# PROCESSING
# ============================================================================

@router.post("/{prospect_id}/process", status_code=status.HTTP_202_ACCEPTED)
async def process_prospect(
    prospect_id: UUID,
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
    broker: ProgressBroker = Depends(get_progress_broker),
    current_user: User = Depends(get_current_editor)
):
    """Start the pipeline in the background. Follow it on ``process-stream``."""
    if broker.is_running(prospect_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Prospect is already being processed")

    prospect = await _get_prospect_or_404(db, prospect_id)
    if not prospect.file_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Prospect has no stored file")

    broker.discard(prospect_id)
    start_processing(broker, storage, prospect_id)
    return {"success": True, "message": "Processing started", "prospectId": str(prospect_id)}


async def _single_event(event):
    yield format_sse(event)


async def _channel_events(channel: ProcessingChannel, queue: asyncio.Queue, request: Request):
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=settings.SSE_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue

            # None: a newer connection took over this channel
            if event is None:
                break

            yield format_sse(event)
            if is_terminal(event):
                break
    finally:
        channel.unsubscribe(queue)


@router.get("/{prospect_id}/process-stream")
async def process_stream(
    prospect_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
    broker: ProgressBroker = Depends(get_progress_broker),
    current_user: User = Depends(get_current_editor)
):
    """
    Server-Sent Events stream of processing progress.

    Joins a live run (replaying its latest update), replays a recently
    finished run, answers immediately for ready/published/failed prospects,
    and otherwise starts a run from the stored file.
    """
    channel = broker.get(prospect_id)

    if channel is None:
        prospect = await _get_prospect_or_404(db, prospect_id)

        if prospect.status in (ProspectStatus.READY.value, ProspectStatus.PUBLISHED.value):
            event = complete_event(True, project_slug=prospect.project_slug)
        elif prospect.status == ProspectStatus.FAILED.value:
            event = error_event(prospect.last_error or "Processing failed")
        else:
            event = None

        if event is not None:
            return StreamingResponse(_single_event(event), media_type="text/event-stream", headers=SSE_HEADERS)

        if not prospect.file_url:
            return StreamingResponse(
                _single_event(error_event("Prospect has no stored file")),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        channel = start_processing(broker, storage, prospect_id)

    queue = channel.subscribe()
    return StreamingResponse(
        _channel_events(channel, queue, request),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/{prospect_id}/status", response_model=ProcessingStatusResponse)
async def get_processing_status(
    prospect_id: UUID,
    processor: ProspectProcessor = Depends(get_processor),
    current_user: User = Depends(get_current_editor)
):
    result = await processor.get_processing_status(prospect_id)
    if result["status"] == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prospect not found")
    return ProcessingStatusResponse(**result)


@router.post("/{prospect_id}/reprocess", response_model=ReprocessResponse)
async def reprocess_prospect(
    prospect_id: UUID,
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
    broker: ProgressBroker = Depends(get_progress_broker),
    current_user: User = Depends(get_current_editor)
):
    """
    Re-run the whole pipeline synchronously.

    The existing mini-site is deleted; the project is updated in place. On
    failure the original status and generated sections are restored.
    """
    prospect = await _get_prospect_or_404(db, prospect_id)
    pdf_bytes = await _load_pdf(storage, prospect)

    original_status = prospect.status
    original_sections = prospect.generated_sections

    async def reprocess(publish):
        if prospect.mini_site_id:
            mini_site = await db.get(MiniSite, prospect.mini_site_id)
            if mini_site is not None:
                await db.delete(mini_site)
            if prospect.project_id:
                project = await db.get(Project, prospect.project_id)
                if project is not None:
                    project.mini_site_id = None
            prospect.mini_site_id = None
            prospect.mini_site_slug = None

        prospect.status = ProspectStatus.UPLOADED.value
        prospect.processing_checkpoint = None
        prospect.last_error = None
        await db.commit()

        logger.info(f"Reprocessing prospect {prospect_id} (was {original_status})")
        processor = ProspectProcessor(db, storage=storage)
        return await processor.process_prospect(prospect_id, pdf_bytes, on_progress=publish)

    if broker.is_running(prospect_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Prospect is already being processed")
    result = await run_registered(broker, prospect_id, reprocess)

    if not result["success"]:
        prospect = await db.get(Prospect, prospect_id)
        if prospect is not None:
            prospect.status = original_status
            prospect.generated_sections = original_sections
            prospect.last_error = result["error"]
            await db.commit()
        await notify_prospect_updated(str(prospect_id), original_status)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result["error"])

    await notify_prospect_updated(str(prospect_id), result_status(result))
    if result.get("projectSlug"):
        await notify_project_published(result["projectSlug"], str(prospect_id))

    return ReprocessResponse(
        success=True,
        message="Prospect reprocessed successfully",
        project_slug=result.get("projectSlug"),
        mini_site_slug=result.get("miniSiteSlug"),
    )


@router.post("/{prospect_id}/retry")
async def retry_prospect(
    prospect_id: UUID,
    db: AsyncSession = Depends(get_db),
    storage: FileStorage = Depends(get_file_storage),
    broker: ProgressBroker = Depends(get_progress_broker),
    current_user: User = Depends(get_current_editor)
):
    """Retry a failed prospect synchronously."""
    prospect = await _get_prospect_or_404(db, prospect_id)
    if prospect.status != ProspectStatus.FAILED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only failed prospects can be retried (status: {prospect.status})"
        )

    pdf_bytes = await _load_pdf(storage, prospect)

    async def retry(publish):
        prospect.retry_count = (prospect.retry_count or 0) + 1
        prospect.status = ProspectStatus.PROCESSING.value
        prospect.last_error = None
        await db.commit()

        logger.info(f"Retrying prospect {prospect_id} (attempt {prospect.retry_count})")
        processor = ProspectProcessor(db, storage=storage)
        return await processor.process_prospect(prospect_id, pdf_bytes, on_progress=publish)

    if broker.is_running(prospect_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Prospect is already being processed")
    result = await run_registered(broker, prospect_id, retry)

    await notify_prospect_updated(str(prospect_id), result_status(result))

    return {
        "success": result["success"],
        "projectSlug": result.get("projectSlug"),
        "miniSiteSlug": result.get("miniSiteSlug"),
        "error": result.get("error"),
    }


# ============================================================================
# MANUAL FALLBACKS
# ============================================================================

@router.post("/{prospect_id}/create-project")
async def create_project(
    prospect_id: UUID,
    processor: ProspectProcessor = Depends(get_processor),
    current_user: User = Depends(get_current_editor)
):
    """Create (or refresh) the project from already generated data."""
    result = await processor.create_project_from_prospect(prospect_id)
    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result["error"])

    await notify_project_published(result["slug"], str(prospect_id))
    return {"success": True, "projectId": result["project_id"], "projectSlug": result["slug"]}


@router.post("/{prospect_id}/create-minisite")
async def create_mini_site(
    prospect_id: UUID,
    processor: ProspectProcessor = Depends(get_processor),
    current_user: User = Depends(get_current_editor)
):
    result = await processor.create_mini_site_from_prospect(prospect_id)
    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result["error"])

    await notify_prospect_updated(str(prospect_id), "mini_site_created")
    return {"success": True, "miniSiteId": result["mini_site_id"], "miniSiteSlug": result["slug"]}


@router.put("/{prospect_id}/content", response_model=ProspectResponse)
async def update_content(
    prospect_id: UUID,
    content: ProspectContentUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_editor)
):
    """Manually correct generated content."""
    prospect = await _get_prospect_or_404(db, prospect_id)
    if prospect.status not in CONTENT_EDITABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Content cannot be edited while status is '{prospect.status}'"
        )

    if content.generated_sections is not None:
        prospect.generated_sections = content.generated_sections
    if content.generated_title is not None:
        prospect.generated_title = content.generated_title
    if content.generated_description is not None:
        prospect.generated_description = content.generated_description
    prospect.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(prospect)

    logger.info(f"Content of prospect {prospect_id} updated by {current_user.email}")
    await notify_prospect_updated(str(prospect_id), prospect.status)
    return ProspectResponse.model_validate(prospect)
