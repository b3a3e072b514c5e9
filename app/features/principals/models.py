"""
Principal model with ULID primary keys.
"""
import enum
from datetime import datetime
from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class PrincipalStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class Principal(Base, TimestampMixin):
    """
    An authenticated identity the engine makes decisions about.

    Created on first successful authentication (or by an administrator) and
    never hard-deleted: deactivation goes through ``status``.
    """
    __tablename__ = "principals"

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Identity-provider subject (for linking with Appwrite authentication)
    identity_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Optional link to the HR system (NULL for non-employees)
    employee_ref: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)

    status: Mapped[PrincipalStatus] = mapped_column(
        Enum(PrincipalStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        default=PrincipalStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    # Track last authenticated activity
    last_active_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Principal(id={self.id}, email={self.email!r}, status={self.status.value})>"
