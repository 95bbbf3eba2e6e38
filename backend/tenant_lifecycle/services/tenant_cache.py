from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session

from tenant_lifecycle.models import TenantStatus

logger = structlog.get_logger(__name__)


def _default_engine(url: str) -> Engine:
    return create_engine(url, pool_pre_ping=True)


def redacted_url(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


@dataclass(eq=False)
class ResolvedTenantContext:
    """A ready tenant's routing data. Lives only in process memory."""

    tenant_id: uuid.UUID
    slug: str
    db_name: str
    connection_url: str = field(repr=False)
    plan_code: str | None
    status: TenantStatus
    engine_factory: Callable[[str], Engine] = field(default=_default_engine, repr=False)
    _engine: Engine | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            with self._lock:
                if self._engine is None:
                    self._engine = self.engine_factory(self.connection_url)
                    logger.info("tenant_engine_created", slug=self.slug, url=redacted_url(self.connection_url))
        return self._engine

    def session(self) -> Session:
        return Session(bind=self.engine, autoflush=False, expire_on_commit=False)

    def dispose(self) -> None:
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()


@dataclass(frozen=True)
class _Entry:
    context: ResolvedTenantContext
    expires_at: float


class TenantContextCache:
    """Bounded TTL cache of resolved tenants, keyed by id with a slug index.

    Reads never take a lock: writers build a new mapping and swap it in whole.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 1024,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._write_lock = threading.Lock()
        self._state: tuple[dict[uuid.UUID, _Entry], dict[str, uuid.UUID]] = ({}, {})
        self._generation = 0
        self._cleared_at = 0
        self._invalidated_at: dict[uuid.UUID, int] = {}

    def __len__(self) -> int:
        return len(self._state[0])

    def get(self, tenant_id: uuid.UUID) -> ResolvedTenantContext | None:
        entries, _ = self._state
        entry = entries.get(tenant_id)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.context

    def get_by_slug(self, slug: str) -> ResolvedTenantContext | None:
        entries, slugs = self._state
        tenant_id = slugs.get(slug)
        if tenant_id is None:
            return None
        entry = entries.get(tenant_id)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.context

    def generation(self) -> int:
        """Current invalidation generation; pass it back to ``put`` after a slow load."""
        return self._generation

    def put(self, context: ResolvedTenantContext, *, generation: int | None = None) -> ResolvedTenantContext | None:
        """Store a context, returning the one callers should use.

        When a live entry for the tenant already exists it wins, so concurrent
        misses converge on a single engine. With ``generation``, a context loaded
        before a later ``invalidate`` or ``clear`` is refused and None is returned.
        """
        retired: list[ResolvedTenantContext] = []
        with self._write_lock:
            if generation is not None and self._is_stale(context.tenant_id, generation):
                logger.debug("tenant_cache_put_refused", tenant_id=str(context.tenant_id), slug=context.slug)
                return None
            now = self._clock()
            current, _ = self._state
            existing = current.get(context.tenant_id)
            if existing is not None and existing.expires_at > now:
                return existing.context

            entries: dict[uuid.UUID, _Entry] = {}
            for tenant_id, entry in current.items():
                if entry.expires_at <= now or tenant_id == context.tenant_id:
                    retired.append(entry.context)
                else:
                    entries[tenant_id] = entry
            while len(entries) >= self.max_entries:
                oldest = min(entries, key=lambda key: entries[key].expires_at)
                retired.append(entries.pop(oldest).context)

            entries[context.tenant_id] = _Entry(context=context, expires_at=now + self.ttl_seconds)
            self._state = (entries, {entry.context.slug: tenant_id for tenant_id, entry in entries.items()})

        for stale in retired:
            stale.dispose()
        return context

    def _is_stale(self, tenant_id: uuid.UUID, generation: int) -> bool:
        return self._cleared_at > generation or self._invalidated_at.get(tenant_id, -1) > generation

    def invalidate(self, tenant_id: uuid.UUID) -> bool:
        # Bumped even without an entry: a load may be in flight.
        with self._write_lock:
            self._generation += 1
            self._invalidated_at[tenant_id] = self._generation
            current, _ = self._state
            if tenant_id not in current:
                return False
            entries = {key: entry for key, entry in current.items() if key != tenant_id}
            removed = current[tenant_id].context
            self._state = (entries, {entry.context.slug: key for key, entry in entries.items()})
        removed.dispose()
        logger.info("tenant_cache_invalidated", tenant_id=str(tenant_id), slug=removed.slug)
        return True

    def clear(self) -> None:
        with self._write_lock:
            self._generation += 1
            self._cleared_at = self._generation
            self._invalidated_at.clear()
            current, _ = self._state
            self._state = ({}, {})
        for entry in current.values():
            entry.context.dispose()
