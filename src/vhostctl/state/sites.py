"""Site record manager backed by a relational store.

Every mutation runs in one transaction together with its activity-log entry.
Lifecycle events are delivered to subscribers only after the transaction has
committed.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event, func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import (
    DuplicateDomainError,
    ProtectedSiteError,
    SiteNotFoundError,
    StoreError,
)
from .models import Base, LogRow, SiteRow, utcnow

LOGGER = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

DEFAULT_PROTECTED_DOMAINS = frozenset({"dashboard.local", "phpmyadmin.local"})

DEFAULT_SITES: tuple[tuple[str, str, str | None], ...] = (
    ("Dashboard", "dashboard.local", "dashboard_db"),
    ("phpMyAdmin", "phpmyadmin.local", None),
    ("Sample Site 1", "sample1.local", "sample1_db"),
    ("Sample Site 2", "sample2.local", "sample2_db"),
    ("Sample Site 3", "sample3.local", "sample3_db"),
)


@dataclass(frozen=True, slots=True)
class Site:
    """Immutable snapshot of a site record."""

    id: int
    name: str
    domain: str
    status: str
    document_root: str
    database_name: str | None
    ssl_enabled: bool
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        """Return True when the site is served."""
        return self.status == STATUS_ACTIVE

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain,
            "status": self.status,
            "document_root": self.document_root,
            "database_name": self.database_name,
            "ssl_enabled": self.ssl_enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class SiteSpec:
    """Fields accepted when creating a site."""

    name: str
    domain: str
    document_root: str | None = None
    database_name: str | None = None
    ssl_enabled: bool = False


@dataclass(frozen=True, slots=True)
class LogEntry:
    """Activity-log entry, joined with the site name when the site still exists."""

    id: int
    site_id: int | None
    action: str
    details: str | None
    timestamp: datetime
    site_name: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "site_id": self.site_id,
            "site_name": self.site_name,
            "action": self.action,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class SiteEvent:
    """Lifecycle notification emitted after a committed change."""

    kind: str
    site: Site


SiteListener = Callable[[SiteEvent], None]


def create_store_engine(url: str, *, echo: bool = False) -> Engine:
    """Return an engine for *url*; SQLite connections enforce foreign keys."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _to_site(row: SiteRow) -> Site:
    return Site(
        id=row.id,
        name=row.name,
        domain=row.domain,
        status=row.status,
        document_root=row.document_root,
        database_name=row.database_name,
        ssl_enabled=bool(row.ssl_enabled),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_entry(row: LogRow, site_name: str | None = None) -> LogEntry:
    return LogEntry(
        id=row.id,
        site_id=row.site_id,
        action=row.action,
        details=row.details,
        timestamp=row.timestamp,
        site_name=site_name,
    )


@dataclass(slots=True)
class SiteRegistry:
    """Own the ``sites`` and ``logs`` tables."""

    engine: Engine
    protected_domains: frozenset[str] = DEFAULT_PROTECTED_DOMAINS
    default_document_root: str = "/var/www"
    _sessions: sessionmaker[Session] = field(init=False, repr=False)
    _listeners: list[SiteListener] = field(init=False, repr=False, default_factory=list)

    def __post_init__(self) -> None:
        """Prepare the session factory."""
        self.protected_domains = frozenset(self.protected_domains)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    # Schema ------------------------------------------------------------------
    def init_schema(self) -> None:
        """Create missing tables; safe to call repeatedly."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to initialise site store: {exc}") from exc

    def seed_defaults(self) -> int:
        """Insert the initial site set when the store is empty; return rows added."""
        try:
            with self._sessions.begin() as session:
                count = session.scalar(select(func.count()).select_from(SiteRow)) or 0
                if count:
                    return 0
                for name, domain, database_name in DEFAULT_SITES:
                    session.add(
                        SiteRow(
                            name=name,
                            domain=domain,
                            status=STATUS_ACTIVE,
                            document_root=self.default_document_root,
                            database_name=database_name,
                        )
                    )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to seed site store: {exc}") from exc
        return len(DEFAULT_SITES)

    # Events ------------------------------------------------------------------
    def subscribe(self, listener: SiteListener) -> Callable[[], None]:
        """Register *listener* for lifecycle events; return an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, kind: str, site: Site) -> None:
        event_ = SiteEvent(kind=kind, site=site)
        for listener in list(self._listeners):
            try:
                listener(event_)
            except Exception:  # noqa: BLE001 - listeners must not undo a commit
                LOGGER.exception("Site listener %r failed for %s event", listener, kind)

    # Queries -----------------------------------------------------------------
    def is_protected(self, domain: str) -> bool:
        """Return True when *domain* may never be removed."""
        return domain in self.protected_domains

    def list_sites(self) -> list[Site]:
        """Return all sites ordered by id."""
        try:
            with self._sessions() as session:
                rows = session.scalars(select(SiteRow).order_by(SiteRow.id)).all()
                return [_to_site(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list sites: {exc}") from exc

    def get_site(self, site_id: int) -> Site:
        """Return site *site_id* or raise :class:`SiteNotFoundError`."""
        try:
            with self._sessions() as session:
                row = session.get(SiteRow, site_id)
                if row is None:
                    raise SiteNotFoundError(f"Site {site_id} not found.")
                return _to_site(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load site {site_id}: {exc}") from exc

    def find_by_domain(self, domain: str) -> Site | None:
        """Return the site serving *domain*, if any."""
        try:
            with self._sessions() as session:
                row = session.scalar(select(SiteRow).where(SiteRow.domain == domain))
                return _to_site(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to look up {domain}: {exc}") from exc

    def recent_logs(self, limit: int = 15) -> list[LogEntry]:
        """Return the newest activity entries, newest first."""
        statement = (
            select(LogRow, SiteRow.name)
            .outerjoin(SiteRow, LogRow.site_id == SiteRow.id)
            .order_by(LogRow.timestamp.desc(), LogRow.id.desc())
            .limit(max(limit, 0))
        )
        try:
            with self._sessions() as session:
                return [_to_entry(row, name) for row, name in session.execute(statement)]
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read activity log: {exc}") from exc

    # Mutations ---------------------------------------------------------------
    def add_site(self, spec: SiteSpec) -> Site:
        """Insert an active site and its ``Site added`` entry."""
        try:
            with self._sessions.begin() as session:
                existing = session.scalar(select(SiteRow.id).where(SiteRow.domain == spec.domain))
                if existing is not None:
                    raise DuplicateDomainError(f"Domain already exists: {spec.domain}")
                row = SiteRow(
                    name=spec.name,
                    domain=spec.domain,
                    status=STATUS_ACTIVE,
                    document_root=spec.document_root or self.default_document_root,
                    database_name=spec.database_name or None,
                    ssl_enabled=spec.ssl_enabled,
                )
                session.add(row)
                session.flush()
                session.add(
                    LogRow(
                        site_id=row.id,
                        action="Site added",
                        details=f"New virtual host created: {spec.domain}",
                    )
                )
                session.flush()
                site = _to_site(row)
        except IntegrityError as exc:
            raise DuplicateDomainError(f"Domain already exists: {spec.domain}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to add site {spec.domain}: {exc}") from exc
        self._emit("added", site)
        return site

    def toggle_status(self, site_id: int) -> Site:
        """Flip a site between active and inactive."""
        try:
            with self._sessions.begin() as session:
                row = session.get(SiteRow, site_id)
                if row is None:
                    raise SiteNotFoundError(f"Site {site_id} not found.")
                row.status = STATUS_INACTIVE if row.status == STATUS_ACTIVE else STATUS_ACTIVE
                row.updated_at = utcnow()
                session.add(
                    LogRow(
                        site_id=row.id,
                        action="Status toggled",
                        details=f"Site status changed to {row.status}",
                    )
                )
                session.flush()
                site = _to_site(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to toggle site {site_id}: {exc}") from exc
        self._emit("toggled", site)
        return site

    def remove_site(self, site_id: int, *, details: str | None = None) -> Site:
        """Delete a non-protected site, keeping its history with a cleared site id."""
        site = self._delete(site_id, action="Site removed", details=details, enforce=True)
        self._emit("removed", site)
        return site

    def discard(self, site_id: int, *, reason: str) -> Site:
        """Delete a just-created site while compensating a failed provisioning."""
        site = self._delete(site_id, action="Site rollback", details=reason, enforce=False)
        self._emit("removed", site)
        return site

    def record(self, site_id: int | None, action: str, details: str | None = None) -> LogEntry:
        """Append an activity entry not tied to a site mutation."""
        try:
            with self._sessions.begin() as session:
                row = LogRow(site_id=site_id, action=action, details=details)
                session.add(row)
                session.flush()
                return _to_entry(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to record '{action}': {exc}") from exc

    def _delete(self, site_id: int, *, action: str, details: str | None, enforce: bool) -> Site:
        try:
            with self._sessions.begin() as session:
                row = session.get(SiteRow, site_id)
                if row is None:
                    raise SiteNotFoundError(f"Site {site_id} not found.")
                if enforce and self.is_protected(row.domain):
                    raise ProtectedSiteError(f"Cannot remove protected site: {row.domain}")
                site = _to_site(row)
                session.execute(
                    update(LogRow).where(LogRow.site_id == site_id).values(site_id=None)
                )
                session.delete(row)
                session.flush()
                session.add(
                    LogRow(
                        site_id=None,
                        action=action,
                        details=details or f"Virtual host removed: {site.domain}",
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to remove site {site_id}: {exc}") from exc
        return site


def open_registry(
    url: str,
    *,
    echo: bool = False,
    protected_domains: Iterable[str] = DEFAULT_PROTECTED_DOMAINS,
    default_document_root: str = "/var/www",
) -> SiteRegistry:
    """Return a registry for *url* with its schema in place."""
    try:
        engine = create_store_engine(url, echo=echo)
    except (SQLAlchemyError, OSError) as exc:
        raise StoreError(f"Cannot open site store {url}: {exc}") from exc
    registry = SiteRegistry(
        engine=engine,
        protected_domains=frozenset(protected_domains),
        default_document_root=default_document_root,
    )
    registry.init_schema()
    return registry


__all__ = [
    "DEFAULT_PROTECTED_DOMAINS",
    "DEFAULT_SITES",
    "LogEntry",
    "STATUS_ACTIVE",
    "STATUS_INACTIVE",
    "Site",
    "SiteEvent",
    "SiteListener",
    "SiteRegistry",
    "SiteSpec",
    "create_store_engine",
    "open_registry",
]
