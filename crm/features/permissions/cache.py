"""
Read-through role cache.

One ``RoleCache`` is created per application (see ``crm.main``) and handed
to request handlers through the ``get_role_cache`` dependency. Entries are
immutable snapshots keyed by normalized role name, held in a
``cachetools.TTLCache``.

Role writes call ``invalidate_on_commit``: the name is queued on the writing
session and only dropped from the cache once that session's transaction
ends, so other requests never cache a value the writer has not committed.
Until then the writing session itself bypasses the cache and reads its own
changes. Every invalidation bumps a per-name version; a lookup that raced
an invalidation does not store its result.
"""
import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from cachetools import TTLCache
from fastapi import Request
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from crm.core import config
from crm.core.exceptions import LookupTimeoutError
from crm.features.permissions.tokens import normalize_permissions
from crm.features.roles.models import Role
from crm.utils import get_logger


log = get_logger(__name__)


PENDING_INVALIDATIONS_KEY = "crm.role_cache.pending"

_MISSING = object()


@dataclass(frozen=True)
class RoleSnapshot:
    """Detached, immutable view of a Role row."""
    id: str
    name: str
    level: int
    permissions: frozenset[str]

    @classmethod
    def from_role(cls, role: Role) -> "RoleSnapshot":
        return cls(
            id=role.id,
            name=role.name,
            level=role.level,
            permissions=frozenset(normalize_permissions(role.permissions)),
        )


def _cache_key(name: str | None) -> str:
    return (name or "").strip().lower()


def pending_invalidations(db: AsyncSession | Session) -> List[Tuple["RoleCache", str]]:
    """(cache, role name) pairs queued on a session by uncommitted role writes."""
    return db.info.get(PENDING_INVALIDATIONS_KEY, [])


class RoleCache:
    """Role lookups by name with TTL expiry and explicit invalidation."""

    def __init__(
        self,
        ttl_seconds: float = config.ROLE_CACHE_TTL_SECONDS,
        timeout_seconds: float = config.DB_LOOKUP_TIMEOUT_SECONDS,
        maxsize: int = config.ROLE_CACHE_MAX_SIZE,
    ):
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        # Values are RoleSnapshot, or None for a cached miss
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=max(ttl_seconds, 0))
        self._generation = 0
        self._versions: Dict[str, int] = {}

    def _version(self, key: str) -> Tuple[int, int]:
        return self._generation, self._versions.get(key, 0)

    def _written_by(self, db: AsyncSession, key: str) -> bool:
        return any(cache is self and name == key for cache, name in pending_invalidations(db))

    async def get(self, db: AsyncSession, name: str | None) -> Optional[RoleSnapshot]:
        """
        Return the role snapshot for ``name`` or None when no such role exists.

        Raises:
            LookupTimeoutError: the datastore did not answer in time
        """
        key = _cache_key(name)
        if not key:
            return None

        uncommitted = self._written_by(db, key)
        if not uncommitted:
            cached = self._entries.get(key, _MISSING)
            if cached is not _MISSING:
                return cached

        version = self._version(key)
        stmt = select(Role).where(Role.name == key)
        try:
            result = await asyncio.wait_for(db.execute(stmt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.error(f"Role lookup for {key!r} timed out after {self.timeout_seconds}s")
            raise LookupTimeoutError(f"Role lookup for '{key}' timed out")

        role = result.scalars().first()
        snapshot = RoleSnapshot.from_role(role) if role is not None else None
        if uncommitted:
            log.debug(f"Role {key!r} has uncommitted changes in this session; not cached")
        elif self.ttl_seconds > 0 and self._version(key) == version:
            self._entries[key] = snapshot
        return snapshot

    def invalidate(self, name: str | None = None) -> None:
        """Drop one role (by name) or the whole cache, right now."""
        if name is None:
            self._entries.clear()
            self._generation += 1
            log.debug("Role cache cleared")
            return
        key = _cache_key(name)
        self._entries.pop(key, None)
        self._versions[key] = self._versions.get(key, 0) + 1
        log.debug(f"Role cache invalidated for {name!r}")

    def invalidate_on_commit(self, db: AsyncSession, name: str) -> None:
        """
        Queue ``name`` for invalidation when ``db``'s transaction ends.

        Used by every role write path. A rollback also flushes the queue;
        dropping an entry that did not change only costs one extra read.
        """
        db.info.setdefault(PENDING_INVALIDATIONS_KEY, []).append((self, _cache_key(name)))

    def __len__(self) -> int:
        return len(self._entries)


@event.listens_for(Session, "after_transaction_end")
def _flush_role_invalidations(session: Session, transaction: SessionTransaction) -> None:
    """Apply queued role invalidations once the outermost transaction is over."""
    if transaction.parent is not None:
        return
    for cache, name in session.info.pop(PENDING_INVALIDATIONS_KEY, []):
        cache.invalidate(name)


def get_role_cache(request: Request) -> RoleCache:
    """FastAPI dependency returning the application's role cache."""
    cache = getattr(request.app.state, "role_cache", None)
    if cache is None:
        cache = RoleCache()
        request.app.state.role_cache = cache
    return cache
