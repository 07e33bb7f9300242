"""
Structured project schema produced by the AI mapper.

Field names are snake_case in Python and camelCase on the wire, which is how
the model is prompted and how ``Prospect.generated_sections`` is stored.
"""

import re
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal, Annotated

from pydantic import BaseModel, ConfigDict, Field, BeforeValidator, field_validator
from pydantic.alias_generators import to_camel


_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def _parse_number(value: Any) -> Any:
    """Accept model output like ``"AED 1,200,000"`` or ``"20%"``."""
    if value is None or isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        match = _NUMBER_RE.search(value.replace(",", ""))
        return float(match.group()) if match else None
    return value


Number = Annotated[Optional[float], BeforeValidator(_parse_number)]

AMENITY_CATEGORIES = ("wellness", "leisure", "convenience", "security", "outdoor", "other")
PROJECT_STATUSES = ("off-plan", "under-construction", "ready")


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class Developer(CamelModel):
    name: str = ""
    name_he: Optional[str] = None
    logo: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    established: Optional[str] = None
    projects_completed: Number = None


class Coordinates(CamelModel):
    lat: float
    lng: float


class Landmark(CamelModel):
    name: str
    name_he: Optional[str] = None
    distance_km: Number = None
    type: Optional[str] = None


class Connectivity(CamelModel):
    destination: str
    destination_he: Optional[str] = None
    time_minutes: Number = None


class Location(CamelModel):
    area: str
    area_he: Optional[str] = None
    city: str = "Dubai"
    country: str = "UAE"
    coordinates: Optional[Coordinates] = None
    nearby_landmarks: List[Landmark] = Field(default_factory=list)
    connectivity: List[Connectivity] = Field(default_factory=list)


class UnitType(CamelModel):
    type: str
    type_he: Optional[str] = None
    bedrooms: Number = None
    size_from: Number = None
    size_to: Number = None
    size_unit: Literal["sqft", "sqm"] = "sqft"
    price_from: Number = None
    price_to: Number = None
    available: Optional[bool] = None
    features: List[str] = Field(default_factory=list)
    features_he: List[str] = Field(default_factory=list)

    @field_validator("size_unit", mode="before")
    @classmethod
    def normalize_size_unit(cls, value):
        if isinstance(value, str) and value.lower().replace(".", "").strip() in ("sqm", "m2", "m²"):
            return "sqm"
        return "sqft"


class PaymentMilestone(CamelModel):
    milestone: str
    milestone_he: Optional[str] = None
    percentage: Number = None


class PaymentPlan(CamelModel):
    down_payment: Number = None
    during_construction: Number = None
    on_handover: Number = None
    post_handover: Number = None
    milestones: List[PaymentMilestone] = Field(default_factory=list)


class ProjectSpecs(CamelModel):
    floors: Number = None
    total_units: Number = None
    parking_spaces: Number = None
    plot_size_sqft: Number = None
    built_up_area_sqft: Number = None


class InvestmentMetrics(CamelModel):
    expected_roi_percent: Number = None
    rental_yield_percent: Number = None
    capital_appreciation_percent: Number = None
    payback_years: Number = None


class Amenity(CamelModel):
    name: str
    name_he: Optional[str] = None
    category: str = "other"
    icon: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, value):
        if isinstance(value, str) and value.lower() in AMENITY_CATEGORIES:
            return value.lower()
        return "other"


class Highlight(CamelModel):
    title: str
    title_he: Optional[str] = None
    value: Optional[str] = None
    icon: Optional[str] = None


class FAQItem(CamelModel):
    question: str
    question_he: Optional[str] = None
    answer: str
    answer_he: Optional[str] = None


class SEOMetadata(CamelModel):
    title: str
    title_he: Optional[str] = None
    description: str
    description_he: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class StructuredProject(CamelModel):
    """A developer brochure mapped onto the listing schema."""

    name: str
    name_he: Optional[str] = None
    tagline: Optional[str] = None
    tagline_he: Optional[str] = None
    description: Optional[str] = None
    description_he: Optional[str] = None

    developer: Developer = Field(default_factory=Developer)
    location: Location

    price_from: Number = None
    price_to: Number = None
    price_currency: str = "AED"
    units: List[UnitType] = Field(default_factory=list)
    payment_plan: Optional[PaymentPlan] = None

    property_type: Optional[str] = None
    building_type: Optional[str] = None
    completion_date: Optional[str] = None
    status: Optional[str] = None
    specs: Optional[ProjectSpecs] = None
    investment_metrics: Optional[InvestmentMetrics] = None

    amenities: List[Amenity] = Field(default_factory=list)
    highlights: List[Highlight] = Field(default_factory=list)
    gallery: List[str] = Field(default_factory=list)
    hero_image: Optional[str] = None
    image_manifest: Optional[Dict[str, Any]] = None
    classified_images: Optional[List[Dict[str, Any]]] = None
    roi_percent: Number = None
    faq: List[FAQItem] = Field(default_factory=list)
    seo: Optional[SEOMetadata] = None

    source_prospect_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    extracted_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        if isinstance(value, str):
            value = value.lower().replace("_", "-").replace(" ", "-")
            if value in PROJECT_STATUSES:
                return value
        return None

    @field_validator("gallery", mode="before")
    @classmethod
    def gallery_urls(cls, value):
        if not isinstance(value, list):
            return []
        urls = []
        for item in value:
            url = item.get("url") if isinstance(item, dict) else item
            if isinstance(url, str) and url:
                urls.append(url)
        return urls

    def to_sections(self) -> Dict[str, Any]:
        """Serialize for ``Prospect.generated_sections``."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
