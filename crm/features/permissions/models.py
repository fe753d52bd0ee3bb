"""
Project-scoped permission overrides and the audit log.

A ``UserProjectPermission`` row refines a user's global effective permission
set inside one project:
- ``allowed`` adds tokens, ``denied`` removes them (denied wins)
- ``restrictions`` carries boolean capability flags
- inactive or expired rows are treated as absent
"""
from datetime import datetime, timezone
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, JSON, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from crm.core.database.base import Base, TimestampMixin, generate_ulid


# Capability flags and their values when no override row says otherwise
DEFAULT_RESTRICTIONS: Dict[str, bool] = {
    "can_create_leads": True,
    "can_edit_leads": True,
    "can_delete_leads": False,
    "can_view_all_leads": True,
    "can_manage_users": False,
    "can_view_reports": True,
    "can_export_data": False,
}


class UserProjectPermission(Base, TimestampMixin):
    """Per (user, project) allow/deny lists and restriction flags."""
    __tablename__ = "user_project_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "project_id", name="uq_user_project_permission"),
    )
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    project_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    
    allowed: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    denied: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    restrictions: Mapped[Dict[str, bool]] = mapped_column(JSON, nullable=False, default=dict)
    
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    # null = never expires
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    def effective_restrictions(self) -> Dict[str, bool]:
        """Stored flags layered over the defaults."""
        merged = dict(DEFAULT_RESTRICTIONS)
        merged.update({k: bool(v) for k, v in (self.restrictions or {}).items() if k in DEFAULT_RESTRICTIONS})
        return merged
    
    def is_in_force(self, now: datetime | None = None) -> bool:
        """Active and not past ``expires_at``."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        # SQLite hands back naive datetimes
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > now
    
    def __repr__(self) -> str:
        return f"<UserProjectPermission(user_id={self.user_id}, project_id={self.project_id}, active={self.is_active})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for permission-related actions.
    
    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    
    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    
    # Context
    project_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    
    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
