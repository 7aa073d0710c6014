"""
SQLAlchemy ORM models for the catalog mirror, classification rules and scheduler.
"""
import json
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.orm import relationship

from clock import utcnow, isoformat_z
from database import Base


def _load_json(value, default):
    """Parse a JSON text column, falling back to default on empty or bad data."""
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


class ProviderConnection(Base):
    """
    Connection to one media server (Plex, Jellyfin or Emby).
    At most one connection is active at a time; the partial unique index
    on `active` enforces it at the database level.
    """
    __tablename__ = "provider_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), nullable=False)  # "plex", "jellyfin", "emby"
    name = Column(String(100), nullable=False)
    url = Column(String(500), nullable=False)
    credential = Column(Text, nullable=False)  # API key / token
    active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    libraries = relationship("Library", back_populates="connection", cascade="all, delete-orphan")

    __table_args__ = (
        Index(
            "uq_provider_connection_active", active,
            unique=True, sqlite_where=text("active = 1"),
        ),
    )

    def to_dict(self, include_sensitive: bool = False) -> dict:
        """Convert to dictionary for API responses (credential masked by default)."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "url": self.url,
            "credential": self.credential if include_sensitive else "********",
            "active": self.active,
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
        }

    def __repr__(self):
        return f"<ProviderConnection(id={self.id}, type={self.type}, active={self.active})>"


class Library(Base):
    """
    A media library on a provider, mirrored locally and owning a rule set.
    """
    __tablename__ = "libraries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_connection_id = Column(
        Integer, ForeignKey("provider_connections.id", ondelete="CASCADE"), nullable=False
    )
    external_id = Column(String(100), nullable=False)  # Library key on the media server
    name = Column(String(255), nullable=False)
    media_type = Column(String(20), nullable=False, default="movie")  # "movie" or "tv"
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    connection = relationship("ProviderConnection", back_populates="libraries")
    rules = relationship(
        "Rule", back_populates="library", cascade="all, delete-orphan",
        order_by="Rule.priority",
    )

    __table_args__ = (
        UniqueConstraint("provider_connection_id", "external_id", name="uq_library_external"),
        Index("idx_library_enabled", enabled),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "provider_connection_id": self.provider_connection_id,
            "external_id": self.external_id,
            "name": self.name,
            "media_type": self.media_type,
            "enabled": self.enabled,
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
        }

    def __repr__(self):
        return f"<Library(id={self.id}, name={self.name}, media_type={self.media_type})>"


class CatalogItem(Base):
    """
    One mirrored catalog entry.
    Natural key is (server_id, external_id); the sync engine upserts on it.
    Array fields are stored as JSON text so they can be queried with json_each().
    """
    __tablename__ = "catalog_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("provider_connections.id", ondelete="CASCADE"), nullable=False)
    library_id = Column(Integer, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(100), nullable=False)
    tmdb_id = Column(String(20), nullable=True)
    imdb_id = Column(String(20), nullable=True)
    tvdb_id = Column(String(20), nullable=True)
    title = Column(String(500), nullable=False)
    year = Column(Integer, nullable=True)
    media_type = Column(String(20), nullable=False)
    genres = Column(Text, nullable=False, default="[]")  # JSON array of strings
    tags = Column(Text, nullable=False, default="[]")  # JSON array of strings
    collections = Column(Text, nullable=False, default="[]")  # JSON array of strings
    studio = Column(String(255), nullable=True)
    content_rating = Column(String(20), nullable=True)
    # Raw provider blob; "metadata" is reserved on declarative classes
    item_metadata = Column("metadata", Text, nullable=False, default="{}")
    content_hash = Column(String(64), nullable=True)  # Digest of projected fields
    first_seen_run_id = Column(Integer, nullable=True)
    last_seen_run_id = Column(Integer, nullable=True)
    last_changed_run_id = Column(Integer, nullable=True)
    last_synced = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "external_id", name="uq_catalog_item_natural_key"),
        Index("idx_catalog_item_library", library_id),
        Index("idx_catalog_item_tmdb", tmdb_id),
    )

    def get_genres(self) -> list:
        return _load_json(self.genres, [])

    def get_tags(self) -> list:
        return _load_json(self.tags, [])

    def get_collections(self) -> list:
        return _load_json(self.collections, [])

    def get_metadata(self) -> dict:
        return _load_json(self.item_metadata, {})

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "server_id": self.server_id,
            "library_id": self.library_id,
            "external_id": self.external_id,
            "tmdb_id": self.tmdb_id,
            "imdb_id": self.imdb_id,
            "tvdb_id": self.tvdb_id,
            "title": self.title,
            "year": self.year,
            "media_type": self.media_type,
            "genres": self.get_genres(),
            "tags": self.get_tags(),
            "collections": self.get_collections(),
            "studio": self.studio,
            "content_rating": self.content_rating,
            "metadata": self.get_metadata(),
            "last_synced": isoformat_z(self.last_synced),
        }

    def __repr__(self):
        return f"<CatalogItem(id={self.id}, external_id={self.external_id}, title={self.title})>"


class Collection(Base):
    """A provider-side collection (Plex collection, Jellyfin/Emby BoxSet)."""
    __tablename__ = "catalog_collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("provider_connections.id", ondelete="CASCADE"), nullable=False)
    library_id = Column(Integer, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    item_count = Column(Integer, default=0, nullable=False)
    collection_metadata = Column("metadata", Text, nullable=False, default="{}")
    last_synced = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "external_id", name="uq_collection_natural_key"),
        Index("idx_collection_library", library_id),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "server_id": self.server_id,
            "library_id": self.library_id,
            "external_id": self.external_id,
            "name": self.name,
            "item_count": self.item_count,
            "metadata": _load_json(self.collection_metadata, {}),
            "last_synced": isoformat_z(self.last_synced),
        }


class SyncRun(Base):
    """
    One execution of the sync engine against a library.
    Created in_progress, updated after every page, terminal on completed/failed.
    """
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(20), nullable=False, default="incremental")  # "incremental", "full"
    status = Column(String(20), nullable=False, default="in_progress")  # "in_progress", "completed", "failed"
    items_processed = Column(Integer, default=0, nullable=False)
    items_added = Column(Integer, default=0, nullable=False)
    items_updated = Column(Integer, default=0, nullable=False)
    items_failed = Column(Integer, default=0, nullable=False)
    items_removed = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_sync_run_library", library_id),
        Index("idx_sync_run_started_at", started_at.desc()),
    )

    @property
    def duration_seconds(self):
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "library_id": self.library_id,
            "kind": self.kind,
            "status": self.status,
            "items_processed": self.items_processed,
            "items_added": self.items_added,
            "items_updated": self.items_updated,
            "items_failed": self.items_failed,
            "items_removed": self.items_removed,
            "error_message": self.error_message,
            "started_at": isoformat_z(self.started_at),
            "completed_at": isoformat_z(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }

    def __repr__(self):
        return f"<SyncRun(id={self.id}, library_id={self.library_id}, status={self.status})>"


class Rule(Base):
    """
    A classification rule scoped to one library.
    criteria is an ordered JSON list of {field, operator, value}; all must match.
    """
    __tablename__ = "library_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    criteria = Column(Text, nullable=False, default="[]")
    priority = Column(Integer, default=0, nullable=False)  # Lower runs first
    enabled = Column(Boolean, default=True, nullable=False)
    generated_by = Column(String(50), nullable=True)  # "rule_builder", "pattern_analysis", "import"
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    library = relationship("Library", back_populates="rules")

    __table_args__ = (
        Index("idx_rule_library", library_id),
        Index("idx_rule_priority", priority),
    )

    def get_criteria(self) -> list:
        """Parse criteria JSON into a list of criterion dicts."""
        return _load_json(self.criteria, [])

    def set_criteria(self, criteria: list) -> None:
        self.criteria = json.dumps(criteria)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "library_id": self.library_id,
            "name": self.name,
            "description": self.description,
            "criteria": self.get_criteria(),
            "priority": self.priority,
            "enabled": self.enabled,
            "generated_by": self.generated_by,
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
        }

    def __repr__(self):
        return f"<Rule(id={self.id}, library_id={self.library_id}, name={self.name})>"


class PatternSuggestion(Base):
    """Latest pattern analysis for a library. One row per library."""
    __tablename__ = "library_pattern_suggestions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(
        Integer, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    detected_patterns = Column(Text, nullable=False, default="[]")
    pending_count = Column(Integer, default=0, nullable=False)
    last_analyzed = Column(DateTime, default=utcnow, nullable=False)
    dismissed = Column(Boolean, default=False, nullable=False)

    def get_patterns(self) -> list:
        return _load_json(self.detected_patterns, [])

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "library_id": self.library_id,
            "detected_patterns": self.get_patterns(),
            "pending_count": self.pending_count,
            "last_analyzed": isoformat_z(self.last_analyzed),
            "dismissed": self.dismissed,
        }


class ScheduledTask(Base):
    """
    A recurring or one-shot job driven by the scheduler.
    next_run_at is recomputed after every execution when interval_minutes is set.
    """
    __tablename__ = "scheduled_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    task_type = Column(String(50), nullable=False)  # "library_sync", "full_rescan", "pattern_analysis"
    library_id = Column(Integer, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=True)
    interval_minutes = Column(Integer, nullable=True)  # None = one-shot
    enabled = Column(Boolean, default=True, nullable=False)
    next_run_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    run_count = Column(Integer, default=0, nullable=False)
    last_result = Column(Text, nullable=True)  # JSON {status, result|error, started_at, completed_at}
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_scheduled_task_enabled", enabled),
        Index("idx_scheduled_task_next_run", next_run_at),
    )

    def get_last_result(self):
        return _load_json(self.last_result, None)

    def set_last_result(self, result: dict) -> None:
        self.last_result = json.dumps(result, default=str)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type,
            "library_id": self.library_id,
            "interval_minutes": self.interval_minutes,
            "enabled": self.enabled,
            "next_run_at": isoformat_z(self.next_run_at),
            "last_run_at": isoformat_z(self.last_run_at),
            "run_count": self.run_count,
            "last_result": self.get_last_result(),
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
        }

    def __repr__(self):
        return f"<ScheduledTask(id={self.id}, name={self.name}, task_type={self.task_type})>"
