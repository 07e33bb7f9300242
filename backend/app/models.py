"""
SQLAlchemy ORM models.

Prospects, projects and mini-sites are linked by plain UUID/slug columns
rather than foreign keys: a project may outlive the prospect it came from,
and prospects are only ever removed by an explicit admin delete.
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Numeric, Text, Index,
    TIMESTAMP, CheckConstraint
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
from app.database import Base
import uuid
from enum import Enum


class ProspectStatus(str, Enum):
    """Prospect lifecycle values persisted on the prospects table."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    MAPPING = "mapping"
    MAPPED = "mapped"
    VALIDATING = "validating"
    READY = "ready"
    PUBLISHED = "published"
    FAILED = "failed"


# Statuses that mean a pipeline run owns the row
IN_PROGRESS_STATUSES = (
    ProspectStatus.PROCESSING.value,
    ProspectStatus.EXTRACTING.value,
    ProspectStatus.EXTRACTED.value,
    ProspectStatus.MAPPING.value,
    ProspectStatus.MAPPED.value,
    ProspectStatus.VALIDATING.value,
)


def _in_clause(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


# ============================================================================
# USER MODEL
# ============================================================================

class User(Base):
    """Admin panel account."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255))
    role = Column(String(50), nullable=False, default="editor")
    is_active = Column(Boolean, default=True)
    last_login = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'editor', 'viewer')", name="chk_user_role"),
    )


# ============================================================================
# PROSPECT MODEL
# ============================================================================

class Prospect(Base):
    """An uploaded developer brochure and everything the pipeline derived from it."""
    __tablename__ = "prospects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Source file
    file_name = Column(String(500), nullable=False)
    file_type = Column(String(10), nullable=False, default="pdf")
    file_url = Column(Text)
    file_size = Column(Integer)
    file_hash = Column(String(64), index=True)

    # Processing state
    status = Column(String(20), nullable=False, default=ProspectStatus.UPLOADED.value)
    processing_checkpoint = Column(String(50))
    last_error = Column(Text)
    retry_count = Column(Integer, default=0)

    # Extraction output
    extracted_text = Column(Text)
    extracted_tables = Column(JSONB)
    extracted_images = Column(JSONB)
    classified_images = Column(JSONB)
    image_manifest = Column(JSONB)

    # AI output
    generated_title = Column(String(500))
    generated_description = Column(Text)
    generated_sections = Column(JSONB)

    # Pipeline results
    project_id = Column(UUID(as_uuid=True))
    project_slug = Column(String(255))
    mini_site_id = Column(UUID(as_uuid=True))
    mini_site_slug = Column(String(255))

    processed_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("file_type IN ('pdf', 'zip', 'ppt')", name="chk_prospect_file_type"),
        CheckConstraint(
            f"status IN ({_in_clause(s.value for s in ProspectStatus)})",
            name="chk_prospect_status"
        ),
        Index("idx_prospects_status_created", "status", "created_at"),
    )


# ============================================================================
# PROJECT MODEL
# ============================================================================

class Project(Base):
    """Published real-estate listing. Hebrew is the primary display language."""
    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(String(255), nullable=False, unique=True)

    name = Column(String(500), nullable=False)
    name_en = Column(String(500))
    tagline = Column(Text)
    tagline_en = Column(Text)
    description = Column(Text)
    description_en = Column(Text)

    developer = Column(String(255))
    developer_logo = Column(Text)
    developer_info = Column(JSONB)

    location = Column(String(255))
    location_en = Column(String(255))
    coordinates = Column(JSONB)
    location_details = Column(JSONB)

    price_from = Column(Numeric(14, 2))
    price_currency = Column(String(10), default="AED")
    roi_percent = Column(Numeric(5, 2))
    completion_date = Column(String(100))
    property_type = Column(String(100))
    building_type = Column(String(100))
    bedrooms = Column(String(100))
    hero_image = Column(Text)

    highlights = Column(JSONB, default=list)
    amenities = Column(JSONB, default=list)
    amenities_by_category = Column(JSONB, default=dict)
    units = Column(JSONB, default=list)
    payment_plan = Column(JSONB)
    payment_milestones = Column(JSONB, default=list)
    gallery = Column(JSONB, default=list)
    neighborhood = Column(JSONB)
    faqs = Column(JSONB, default=list)
    specs = Column(JSONB)
    investment_metrics = Column(JSONB)
    seo = Column(JSONB)

    status = Column(String(20), nullable=False, default="draft")
    featured = Column(Boolean, default=False)
    prospect_id = Column(UUID(as_uuid=True), index=True)
    mini_site_id = Column(UUID(as_uuid=True))

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'published')", name="chk_project_status"),
    )


# ============================================================================
# MINI-SITE MODEL
# ============================================================================

class MiniSite(Base):
    """Slug-addressed landing page generated for a single project."""
    __tablename__ = "mini_sites"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(500), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    project_id = Column(UUID(as_uuid=True), index=True)
    status = Column(String(20), nullable=False, default="draft")

    hero = Column(JSONB)
    about = Column(JSONB)
    features = Column(JSONB)
    gallery = Column(JSONB)
    pricing = Column(JSONB)
    location = Column(JSONB)
    faq = Column(JSONB)
    image_manifest = Column(JSONB)
    seo = Column(JSONB)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
