"""Project and mini-site response schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class ProjectSummary(_ReadModel):
    """Listing card fields."""
    id: UUID
    slug: str
    name: str
    name_en: Optional[str] = None
    tagline: Optional[str] = None
    developer: Optional[str] = None
    location: Optional[str] = None
    price_from: Optional[Decimal] = None
    price_currency: Optional[str] = None
    roi_percent: Optional[Decimal] = None
    completion_date: Optional[str] = None
    property_type: Optional[str] = None
    hero_image: Optional[str] = None
    status: str
    featured: Optional[bool] = False
    created_at: Optional[datetime] = None


class ProjectResponse(ProjectSummary):
    tagline_en: Optional[str] = None
    description: Optional[str] = None
    description_en: Optional[str] = None
    developer_logo: Optional[str] = None
    developer_info: Optional[Dict[str, Any]] = None
    location_en: Optional[str] = None
    coordinates: Optional[Dict[str, Any]] = None
    location_details: Optional[Dict[str, Any]] = None
    building_type: Optional[str] = None
    bedrooms: Optional[str] = None
    highlights: Optional[List[Dict[str, Any]]] = None
    amenities: Optional[List[Dict[str, Any]]] = None
    amenities_by_category: Optional[Dict[str, Any]] = None
    units: Optional[List[Dict[str, Any]]] = None
    payment_plan: Optional[Dict[str, Any]] = None
    payment_milestones: Optional[List[Dict[str, Any]]] = None
    gallery: Optional[List[Dict[str, Any]]] = None
    neighborhood: Optional[Dict[str, Any]] = None
    faqs: Optional[List[Dict[str, Any]]] = None
    specs: Optional[Dict[str, Any]] = None
    investment_metrics: Optional[Dict[str, Any]] = None
    seo: Optional[Dict[str, Any]] = None
    prospect_id: Optional[UUID] = None
    mini_site_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None


class ProjectListResponse(BaseModel):
    projects: List[ProjectSummary]
    total: int


class MiniSiteResponse(_ReadModel):
    id: UUID
    slug: str
    name: str
    project_id: Optional[UUID] = None
    status: str
    hero: Optional[Dict[str, Any]] = None
    about: Optional[Dict[str, Any]] = None
    features: Optional[List[Dict[str, Any]]] = None
    gallery: Optional[List[Any]] = None
    pricing: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    faq: Optional[List[Dict[str, Any]]] = None
    image_manifest: Optional[Dict[str, Any]] = None
    seo: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
