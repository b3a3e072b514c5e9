"""
Pydantic schemas for principal requests and responses.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.features.principals.models import PrincipalStatus


class PrincipalResponse(BaseModel):
    """Schema for principal responses."""
    id: str
    email: EmailStr
    display_name: Optional[str] = None
    employee_ref: Optional[str] = None
    status: PrincipalStatus
    last_active_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PrincipalPublic(BaseModel):
    """Public principal information (limited fields)."""
    id: str
    email: EmailStr
    display_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PrincipalUpdate(BaseModel):
    """Schema for a principal updating their own profile."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)

    # Employee linkage is only set through PrincipalAdminUpdate
    model_config = ConfigDict(extra="forbid")


class PrincipalAdminUpdate(BaseModel):
    """Schema for an administrator updating any principal."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    employee_ref: Optional[str] = Field(None, min_length=1, max_length=100)
    clear_employee_ref: bool = Field(False, description="Remove the employee linkage")


class PrincipalStatusUpdate(BaseModel):
    status: PrincipalStatus


class PrincipalListResponse(BaseModel):
    items: List[PrincipalResponse]
    total: int
    skip: int
    limit: int
