"""
Pydantic schemas for permission management.

Request and response models for modules, permissions, roles, assignments,
authorization checks and audit logs.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.features.permissions.keys import NAME_PATTERN, PermissionKey
from app.features.principals.schemas import PrincipalPublic


def _identifier(v: str) -> str:
    if not NAME_PATTERN.fullmatch(v):
        raise ValueError("must start with a letter and contain only lowercase letters, digits and underscores")
    return v


# ============================================================================
# Module Schemas
# ============================================================================

class ModuleResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    base_route: Optional[str] = None
    is_active: bool
    requires_employee: bool

    model_config = ConfigDict(from_attributes=True)


class ModuleCreate(BaseModel):
    name: str = Field(..., max_length=50)
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    base_route: Optional[str] = Field(None, max_length=255)
    requires_employee: bool = False

    @field_validator("name")
    @classmethod
    def name_format(cls, v: str) -> str:
        return _identifier(v)


class ModuleUpdate(BaseModel):
    is_active: bool


class ModuleAccessResponse(BaseModel):
    module: str
    allowed: bool


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(BaseModel):
    """Schema for creating a new permission."""
    module: str = Field(..., max_length=50, description="Module name (e.g., 'inventory')")
    resource: str = Field(..., max_length=100, description="Resource type (e.g., 'items')")
    action: str = Field(..., max_length=50, description="Action (e.g., 'read', 'create')")
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator("module", "resource", "action")
    @classmethod
    def identifier_format(cls, v: str) -> str:
        return _identifier(v)

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.module, self.resource, self.action)


class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    key: str
    module: str = Field(validation_alias="module_name")
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("key", mode="before")
    @classmethod
    def render_key(cls, v: Any) -> str:
        return str(v)


class ModulePermissions(BaseModel):
    """Permissions grouped under their module."""
    module: str
    display_name: str
    permissions: List[PermissionResponse]


# ============================================================================
# Role Schemas
# ============================================================================

class RoleCreate(BaseModel):
    """Schema for creating a new role."""
    name: str = Field(..., min_length=1, max_length=50, description="Role name, unique within its module")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    module: Optional[str] = Field(None, description="Module name (null for a global role)")
    priority: int = Field(0, ge=0, le=1000)

    @field_validator("name")
    @classmethod
    def name_format(cls, v: str) -> str:
        """Validate role name format."""
        return _identifier(v)


class RoleUpdate(BaseModel):
    """Schema for updating a role. Only the fields sent are changed."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    priority: Optional[int] = Field(None, ge=0, le=1000)


class RoleDuplicate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)

    @field_validator("name")
    @classmethod
    def name_format(cls, v: str) -> str:
        return _identifier(v)


class RolePermissionsReplace(BaseModel):
    """The complete permission set the role should end up with."""
    permission_ids: List[str] = Field(default_factory=list)


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    module: Optional[str] = Field(None, validation_alias="module_name")
    is_system: bool
    priority: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []


class RoleHolderResponse(BaseModel):
    principal: PrincipalPublic
    assigned_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class RoleAssignmentCreate(BaseModel):
    principal_id: str
    role_id: str
    expires_at: Optional[datetime] = Field(None, description="Assignment is ignored after this instant")
    details: Optional[Dict[str, Any]] = None


class RoleAssignmentResult(BaseModel):
    principal_id: str
    role_id: str
    changed: bool


# ============================================================================
# Authorization Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Check one or more keys for the calling principal."""
    permissions: List[str] = Field(..., min_length=1, max_length=100, description="Keys as module:resource:action")


class PermissionCheckResponse(BaseModel):
    results: Dict[str, bool]


class EffectivePermissionsResponse(BaseModel):
    principal_id: str
    permissions: List[str]
    roles: List[RoleResponse]


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditEntryResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    actor_id: Optional[str]
    action: str
    module: Optional[str]
    resource_type: str
    resource_id: Optional[str]
    changes: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditEntryListResponse(BaseModel):
    items: List[AuditEntryResponse]
    total: int
    skip: int
    limit: int
