"""
Role model: a named, leveled bundle of permission tokens.

Lower ``level`` means higher authority; ``superadmin`` is always level 1.
"""
from sqlalchemy import String, Integer, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column

from crm.core.database.base import Base, TimestampMixin, generate_ulid


class Role(Base, TimestampMixin):
    """
    Global role shared by every project.
    
    Examples: superadmin (1), admin (2), manager (3), hr (4), sales (5), user (6)
    """
    __tablename__ = "roles"
    
    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # Stored trimmed and lowercased
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    
    # Normalized "resource:action" tokens; always reassigned, never mutated in place
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    
    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, level={self.level})>"
