"""Read endpoints for generated projects and mini-sites."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user
from app.database import get_db
from app.models import Project, MiniSite, User
from app.schemas import ProjectSummary, ProjectResponse, ProjectListResponse, MiniSiteResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Projects"])


@router.get("/api/projects", response_model=ProjectListResponse)
async def list_projects(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List projects, featured first then newest."""
    query = select(Project)
    count_query = select(func.count()).select_from(Project)
    if status_filter:
        query = query.where(Project.status == status_filter)
        count_query = count_query.where(Project.status == status_filter)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(Project.featured.desc(), Project.created_at.desc()).offset(offset).limit(limit)
    )

    return ProjectListResponse(
        projects=[ProjectSummary.model_validate(p) for p in result.scalars().all()],
        total=total,
    )


@router.get("/api/projects/{slug}", response_model=ProjectResponse)
async def get_project(
    slug: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    result = await db.execute(select(Project).where(Project.slug == slug))
    project = result.scalar_one_or_none()
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return ProjectResponse.model_validate(project)


@router.get("/api/mini-sites/{slug}", response_model=MiniSiteResponse)
async def get_mini_site(
    slug: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    result = await db.execute(select(MiniSite).where(MiniSite.slug == slug))
    mini_site = result.scalar_one_or_none()
    if mini_site is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mini-site not found")
    return MiniSiteResponse.model_validate(mini_site)
