"""Pydantic schemas for request/response validation."""

from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional
from datetime import datetime
from uuid import UUID


# Authentication Schemas
class LoginRequest(BaseModel):
    """Login request with email and password."""
    email: EmailStr
    password: str = Field(..., min_length=8)


class TokenResponse(BaseModel):
    """JWT token response."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserCreate(BaseModel):
    """Create new user request."""
    email: EmailStr
    password: str = Field(..., min_length=12)
    full_name: str = Field(..., min_length=1, max_length=255)
    role: str = Field(default="editor", pattern="^(admin|editor|viewer)$")


class UserUpdate(BaseModel):
    """Admin changes to an existing account; omitted fields are kept."""
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    role: Optional[str] = Field(None, pattern="^(admin|editor|viewer)$")
    is_active: Optional[bool] = None
    password: Optional[str] = Field(None, min_length=12)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=12)


class UserResponse(BaseModel):
    """User information response."""
    id: UUID
    email: str
    full_name: Optional[str]
    role: str
    is_active: bool
    last_login: Optional[datetime]
    created_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


from app.schemas.prospect import (
    ProspectCreate,
    ProspectUpdate,
    ProspectContentUpdate,
    ProspectResponse,
    ProspectListResponse,
    ProcessingStatusResponse,
    ReprocessResponse,
)

from app.schemas.structured_project import (
    StructuredProject,
    PaymentPlan,
    PaymentMilestone,
    Amenity,
    Highlight,
    SEOMetadata,
)

from app.schemas.project import (
    ProjectSummary,
    ProjectResponse,
    ProjectListResponse,
    MiniSiteResponse,
)
