"""
Factory functions for creating test data.

Each factory creates a model instance with sensible defaults that can be overridden.
All factories accept a session parameter and commit the created object.
"""
import json
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from clock import utcnow
from models import CatalogItem, Library, ProviderConnection, Rule, ScheduledTask, SyncRun


# Counter for generating unique IDs
_counter = {"value": 0}


def _next_id() -> int:
    """Generate a unique incrementing ID."""
    _counter["value"] += 1
    return _counter["value"]


def reset_counter() -> None:
    """Reset the counter (useful between tests)."""
    _counter["value"] = 0


# -----------------------------------------------------------------------------
# ProviderConnection Factory
# -----------------------------------------------------------------------------

def create_connection(
    session: Session,
    type: str = "plex",
    name: str = None,
    url: str = "http://plex.test:32400",
    credential: str = "test-token",
    active: bool = False,
) -> ProviderConnection:
    """Create a ProviderConnection instance."""
    conn_id = _next_id()
    connection = ProviderConnection(
        type=type,
        name=name or f"Test Server {conn_id}",
        url=url,
        credential=credential,
        active=active,
    )
    session.add(connection)
    session.commit()
    session.refresh(connection)
    return connection


# -----------------------------------------------------------------------------
# Library Factory
# -----------------------------------------------------------------------------

def create_library(
    session: Session,
    connection: Optional[ProviderConnection] = None,
    external_id: str = None,
    name: str = None,
    media_type: str = "movie",
    enabled: bool = True,
) -> Library:
    """Create a Library, creating a connection for it if none is given."""
    lib_id = _next_id()
    connection = connection or create_connection(session)
    library = Library(
        provider_connection_id=connection.id,
        external_id=external_id or str(lib_id),
        name=name or f"Test Library {lib_id}",
        media_type=media_type,
        enabled=enabled,
    )
    session.add(library)
    session.commit()
    session.refresh(library)
    return library


# -----------------------------------------------------------------------------
# CatalogItem Factory
# -----------------------------------------------------------------------------

def create_catalog_item(
    session: Session,
    library: Library,
    title: str = None,
    external_id: str = None,
    year: Optional[int] = None,
    media_type: str = None,
    genres: list = None,
    tags: list = None,
    collections: list = None,
    studio: Optional[str] = None,
    content_rating: Optional[str] = None,
    tmdb_id: Optional[str] = None,
    metadata: dict = None,
) -> CatalogItem:
    """Create a mirrored CatalogItem in a library."""
    item_id = _next_id()
    item = CatalogItem(
        server_id=library.provider_connection_id,
        library_id=library.id,
        external_id=external_id or f"item-{item_id}",
        title=title or f"Test Title {item_id}",
        year=year,
        media_type=media_type or library.media_type,
        genres=json.dumps(genres or []),
        tags=json.dumps(tags or []),
        collections=json.dumps(collections or []),
        studio=studio,
        content_rating=content_rating,
        tmdb_id=tmdb_id,
        item_metadata=json.dumps(metadata or {}),
    )
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


# -----------------------------------------------------------------------------
# Rule Factory
# -----------------------------------------------------------------------------

def create_rule(
    session: Session,
    library: Library,
    criteria: list = None,
    name: str = None,
    priority: int = 0,
    enabled: bool = True,
) -> Rule:
    """Create a Rule for a library."""
    rule_id = _next_id()
    rule = Rule(
        library_id=library.id,
        name=name or f"Test Rule {rule_id}",
        priority=priority,
        enabled=enabled,
    )
    rule.set_criteria(criteria or [{"field": "title", "operator": "contains", "value": "Test"}])
    session.add(rule)
    session.commit()
    session.refresh(rule)
    return rule


# -----------------------------------------------------------------------------
# ScheduledTask Factory
# -----------------------------------------------------------------------------

def create_scheduled_task(
    session: Session,
    task_type: str = "library_sync",
    name: str = None,
    library_id: Optional[int] = None,
    interval_minutes: Optional[int] = 60,
    enabled: bool = True,
    next_run_at: Optional[datetime] = None,
    last_run_at: Optional[datetime] = None,
    run_count: int = 0,
) -> ScheduledTask:
    """Create a ScheduledTask instance."""
    task_id = _next_id()
    task = ScheduledTask(
        name=name or f"Test Task {task_id}",
        task_type=task_type,
        library_id=library_id,
        interval_minutes=interval_minutes,
        enabled=enabled,
        next_run_at=next_run_at,
        last_run_at=last_run_at,
        run_count=run_count,
    )
    session.add(task)
    session.commit()
    session.refresh(task)
    return task


# -----------------------------------------------------------------------------
# SyncRun Factory
# -----------------------------------------------------------------------------

def create_sync_run(
    session: Session,
    library: Library,
    kind: str = "incremental",
    status: str = "completed",
    started_at: Optional[datetime] = None,
    **kwargs,
) -> SyncRun:
    """Create a SyncRun for a library."""
    run = SyncRun(
        library_id=library.id,
        kind=kind,
        status=status,
        started_at=started_at or utcnow(),
        completed_at=kwargs.pop("completed_at", None) or (utcnow() if status != "in_progress" else None),
        **kwargs,
    )
    session.add(run)
    session.commit()
    session.refresh(run)
    return run
