"""
Reporting graph models.

Each ``ReportingLink`` says "user reports to reports_to". The link's
materialized ancestor list (``ReportingLinkAncestor`` rows, depth 0 being the
direct superior) replaces slash-delimited path strings: descendants of X are
found with an exact ``ancestor_id == X`` match.
"""
import enum
from sqlalchemy import String, ForeignKey, Integer, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm.core.database.base import Base, TimestampMixin, generate_ulid


class TeamType(str, enum.Enum):
    """Kind of reporting relationship."""
    PROJECT = "project"
    GLOBAL = "global"
    SUPERADMIN = "superadmin"
    CUSTOM = "custom"


class ReportingLink(Base, TimestampMixin):
    """One edge of the reporting graph."""
    __tablename__ = "reporting_links"
    __table_args__ = (
        UniqueConstraint("user_id", "reports_to_id", "team_type", "project_id", name="uq_reporting_link"),
    )
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    reports_to_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    team_type: Mapped[TeamType] = mapped_column(SQLEnum(TeamType), nullable=False, default=TeamType.GLOBAL)
    project_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True
    )
    context: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    
    ancestors: Mapped[list["ReportingLinkAncestor"]] = relationship(
        "ReportingLinkAncestor",
        back_populates="link",
        cascade="all, delete-orphan",
        order_by="ReportingLinkAncestor.depth",
        lazy="selectin"
    )
    
    @property
    def ancestor_ids(self) -> list[str]:
        """Ancestors nearest first; the first entry is ``reports_to_id``."""
        return [a.ancestor_id for a in sorted(self.ancestors, key=lambda a: (a.depth, a.ancestor_id))]
    
    @property
    def path(self) -> str:
        """Farthest-first rendering, e.g. ``/root/manager/`` for API output."""
        ids = list(reversed(self.ancestor_ids))
        return "/" + "".join(f"{i}/" for i in ids) if ids else "/"
    
    def __repr__(self) -> str:
        return f"<ReportingLink(user_id={self.user_id}, reports_to_id={self.reports_to_id}, type={self.team_type})>"


class ReportingLinkAncestor(Base):
    """Materialized ancestor of a reporting link."""
    __tablename__ = "reporting_link_ancestors"
    
    link_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("reporting_links.id", ondelete="CASCADE"),
        primary_key=True
    )
    ancestor_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    depth: Mapped[int] = mapped_column(Integer, nullable=False)
    
    link: Mapped["ReportingLink"] = relationship("ReportingLink", back_populates="ancestors")
