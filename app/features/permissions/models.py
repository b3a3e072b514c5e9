"""
Module, Permission, Role and assignment models for module-scoped RBAC.

This module implements the persistent side of the authorization engine:
- Modules (feature areas that permissions and roles are scoped to)
- Permissions keyed by (module, resource, action)
- Roles, global (module_id = NULL) or scoped to one module
- Role-permission join rows, only written through replace-set semantics
- Principal-role assignments with lazy expiry
- Append-only audit entries
"""
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Table, Text,
    UniqueConstraint, event, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, CreatedAtMixin, TimestampMixin, generate_ulid
from app.core.errors import AuditEntryImmutable
from app.features.permissions.keys import PermissionKey


# ============================================================================
# Association Tables
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("granted_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


# ============================================================================
# Core Models
# ============================================================================

class Module(Base, CreatedAtMixin):
    """
    A named feature area that permissions and roles are scoped to.

    ``requires_employee`` is a hard gate: principals without an employee
    reference cannot access the module whatever their permissions.
    """
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_route: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    requires_employee: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Module(id={self.id}, name={self.name!r}, active={self.is_active})>"


class Permission(Base, CreatedAtMixin):
    """
    An atomic capability, unique per (module, resource, action).

    Permissions are immutable once created; deleting one cascades to every
    role that carried it.
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("module_id", "resource", "action", name="uq_permissions_module_resource_action"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    module_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("modules.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    module: Mapped[Module] = relationship(Module, lazy="selectin")

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.module.name, self.resource, self.action)

    @property
    def module_name(self) -> str:
        return self.module.name

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, module_id={self.module_id}, resource={self.resource}, action={self.action})>"


class Role(Base, TimestampMixin):
    """
    A named bundle of permissions.

    Roles are module-scoped or global (module_id = NULL). ``priority`` orders
    roles for display and tie-breaking only; it grants nothing.
    System roles ship with the product and are locked.
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("name", "module_id", name="uq_roles_name_module"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # NULL = global role
    module_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("modules.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    module: Mapped[Optional[Module]] = relationship(Module, lazy="selectin")
    permissions: Mapped[list[Permission]] = relationship(
        Permission,
        secondary=role_permissions,
        lazy="selectin",
        viewonly=True,
    )

    @property
    def module_name(self) -> str | None:
        return self.module.name if self.module is not None else None

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, module_id={self.module_id}, system={self.is_system})>"


class RoleAssignment(Base):
    """
    A principal holding a role.

    An assignment whose ``expires_at`` has passed is treated as absent by
    every read; nothing needs to sweep it for correctness.
    """
    __tablename__ = "role_assignments"

    principal_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("principals.id", ondelete="CASCADE"),
        primary_key=True
    )
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="RESTRICT"),
        primary_key=True,
        index=True
    )
    assigned_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("principals.id", ondelete="SET NULL"),
        nullable=True
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    role: Mapped[Role] = relationship(Role, lazy="selectin")

    def __repr__(self) -> str:
        return f"<RoleAssignment(principal_id={self.principal_id}, role_id={self.role_id}, expires_at={self.expires_at})>"


class AuditEntry(Base, CreatedAtMixin):
    """
    Append-only record of authorization state changes.

    Tracks who changed what, when, and from where. Rows are never updated or
    deleted by the application.
    """
    __tablename__ = "audit_entries"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor (NULL for system-initiated changes such as bootstrap)
    actor_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    module: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    changes: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Context
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, actor_id={self.actor_id}, action={self.action}, resource={self.resource_type})>"


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(_mapper, _connection, target: AuditEntry):
    raise AuditEntryImmutable(f"Audit entry {target.id} cannot be updated")


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(_mapper, _connection, target: AuditEntry):
    raise AuditEntryImmutable(f"Audit entry {target.id} cannot be deleted")
