"""
User model with ULID primary keys.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, ForeignKey, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.core.database.base import Base, TimestampMixin, generate_ulid


class User(Base, TimestampMixin):
    """
    CRM user.
    
    ``role``, ``role_id`` and ``level`` are denormalized from the referenced
    Role and are only written by ``reassign_role`` and the role cascades.
    ``custom_allowed`` / ``custom_denied`` hold the per-user minimal diff
    against the role's permission set.
    """
    __tablename__ = "users"
    
    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    
    # Role assignment (denormalized)
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id"),
        nullable=True,
        index=True
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    
    # Per-user overrides
    custom_allowed: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    custom_denied: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    
    # Project access restrictions
    max_projects: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allowed_projects: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    denied_projects: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    
    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    # Track last login
    last_login_at: Mapped[datetime | None] = mapped_column(nullable=True)
    
    # Relationships
    role_ref: Mapped["Role"] = relationship(  # type: ignore # noqa: F821
        "Role",
        foreign_keys=[role_id],
        lazy="selectin"
    )
    
    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, role={self.role}, level={self.level})>"
