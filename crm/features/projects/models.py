"""
Project models.

Projects are owned by one user and shared with members and managers. The
permission engine only reads ``owner_id`` and the member list.
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, Table, Column, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.core.database.base import Base, TimestampMixin, generate_ulid


# Association table for project membership
project_members = Table(
    "project_members",
    Base.metadata,
    Column("project_id", String(26), ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("joined_at", DateTime(timezone=True), nullable=False, default=datetime.now),
)

project_managers = Table(
    "project_managers",
    Base.metadata,
    Column("project_id", String(26), ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Project(Base, TimestampMixin):
    """Real-estate project that leads, tasks and attendance hang off."""
    __tablename__ = "projects"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    developer: Mapped[str] = mapped_column(String(255), nullable=False)
    logo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    
    owner_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    
    # Relationships
    owner: Mapped["User"] = relationship("User", foreign_keys=[owner_id], lazy="selectin")  # type: ignore # noqa: F821
    
    members: Mapped[list["User"]] = relationship(  # type: ignore # noqa: F821
        "User",
        secondary=project_members,
        lazy="selectin"
    )
    
    managers: Mapped[list["User"]] = relationship(  # type: ignore # noqa: F821
        "User",
        secondary=project_managers,
        lazy="selectin"
    )
    
    @property
    def member_ids(self) -> list[str]:
        return [member.id for member in self.members]

    @property
    def manager_ids(self) -> list[str]:
        return [manager.id for manager in self.managers]

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name={self.name!r}, owner_id={self.owner_id})>"
