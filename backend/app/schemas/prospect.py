"""Prospect request/response schemas."""

from datetime import datetime
from typing import Optional, List, Dict, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ProspectCreate(BaseModel):
    """Register a file that is already stored elsewhere."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_name: str = Field(..., min_length=1, max_length=500)
    file_type: Literal["pdf", "zip", "ppt"] = "pdf"
    file_url: str = Field(..., min_length=1)


class ProspectUpdate(BaseModel):
    """Admin edits to a prospect's basic fields."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_name: Optional[str] = Field(None, min_length=1, max_length=500)
    generated_title: Optional[str] = None
    generated_description: Optional[str] = None


class ProspectContentUpdate(BaseModel):
    """Manual correction of the generated content."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    generated_sections: Optional[Dict[str, Any]] = None
    generated_title: Optional[str] = None
    generated_description: Optional[str] = None

    @model_validator(mode="after")
    def require_any_field(self):
        if (
            self.generated_sections is None
            and self.generated_title is None
            and self.generated_description is None
        ):
            raise ValueError(
                "At least one of generatedSections, generatedTitle or generatedDescription is required"
            )
        return self


class ProspectResponse(BaseModel):
    """Prospect as returned to the admin panel."""
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: UUID
    file_name: str
    file_type: str
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    status: str
    processing_checkpoint: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: Optional[int] = 0
    generated_title: Optional[str] = None
    generated_description: Optional[str] = None
    generated_sections: Optional[Dict[str, Any]] = None
    image_manifest: Optional[Dict[str, Any]] = None
    project_id: Optional[UUID] = None
    project_slug: Optional[str] = None
    mini_site_id: Optional[UUID] = None
    mini_site_slug: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProspectListResponse(BaseModel):
    prospects: List[ProspectResponse]
    total: int


class ProcessingStatusResponse(BaseModel):
    """Summary of where a prospect stands in the pipeline."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str
    has_structured_data: bool = False
    has_mini_site: bool = False
    has_project: bool = False
    confidence: Optional[float] = None


class ReprocessResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str
    project_slug: Optional[str] = None
    mini_site_slug: Optional[str] = None
