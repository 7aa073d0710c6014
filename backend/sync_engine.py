"""
Catalog Sync Engine.

Mirrors a provider library into the local catalog:
- Pages through the provider adapter sequentially (offset/limit)
- Upserts each item on its natural key (server_id, external_id) in one
  atomic INSERT ... ON CONFLICT DO UPDATE statement
- Classifies every item as added, updated or unchanged via a content hash
- Tolerates per-item failures (logged with the external id, then skipped)
- Persists running totals to the SyncRun after every page
- Syncs collections on a best-effort basis
- On full runs, prunes library items the provider no longer returns

A page shorter than the batch size ends the run. A failure fetching a page
aborts the run, marks the SyncRun failed, and propagates.
"""
import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import case, func, or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError

from clock import utcnow
from config import get_settings
from database import get_session
from exceptions import CatalogError, NotFoundError, PersistenceError, ValidationError
from models import CatalogItem, Collection, Library, SyncRun
from providers import create_provider_for_connection
from rule_engine import ProjectedItem, project_item

logger = logging.getLogger(__name__)

SYNC_KIND_INCREMENTAL = "incremental"
SYNC_KIND_FULL = "full"

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

OUTCOME_ADDED = "added"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"


@dataclass
class SyncResult:
    """Outcome of one sync_library call."""
    run_id: int
    library_id: int
    kind: str
    status: str = STATUS_IN_PROGRESS
    items_processed: int = 0
    items_added: int = 0
    items_updated: int = 0
    items_unchanged: int = 0
    items_failed: int = 0
    items_removed: int = 0
    collections_synced: int = 0
    pages: int = 0
    failed_items: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "run_id": self.run_id,
            "library_id": self.library_id,
            "kind": self.kind,
            "status": self.status,
            "items_processed": self.items_processed,
            "items_added": self.items_added,
            "items_updated": self.items_updated,
            "items_unchanged": self.items_unchanged,
            "items_failed": self.items_failed,
            "items_removed": self.items_removed,
            "collections_synced": self.collections_synced,
            "pages": self.pages,
            # Cap the list to keep API responses small
            "failed_items": self.failed_items[:20],
        }


def compute_content_hash(library_id: int, item: ProjectedItem) -> str:
    """Stable digest of everything the mirror stores for an item."""
    payload = dict(item.to_row())
    payload["library_id"] = library_id
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class SyncEngine:
    """
    Runs library syncs against provider adapters.

    Only one sync per library may be in flight at a time.
    """

    def __init__(
        self,
        session_factory: Callable = get_session,
        provider_factory: Callable = None,
    ):
        self._session_factory = session_factory
        self._provider_factory = provider_factory or self._default_provider_factory
        self._active_libraries: set[int] = set()
        self._lock = asyncio.Lock()

    @staticmethod
    def _default_provider_factory(connection):
        return create_provider_for_connection(connection, timeout=get_settings().provider_timeout_seconds)

    @property
    def active_library_ids(self) -> list[int]:
        """Libraries with a sync currently running."""
        return sorted(self._active_libraries)

    # -------------------------------------------------------------------------
    # Library sync
    # -------------------------------------------------------------------------

    async def sync_library(
        self,
        library_id: int,
        incremental: bool = True,
        batch_size: Optional[int] = None,
    ) -> SyncResult:
        """
        Sync one library from its provider.

        Args:
            library_id: Local library ID
            incremental: False for a full rescan that also prunes removed items
            batch_size: Items per page (defaults to settings.sync_batch_size)

        Returns:
            SyncResult with final totals

        Raises:
            NotFoundError: Library does not exist
            ValidationError: Library disabled, has no connection, or is already syncing
            ProviderError: A page fetch failed (run marked failed)
            PersistenceError: The database failed (run marked failed)
        """
        batch_size = batch_size or get_settings().sync_batch_size
        if batch_size < 1:
            raise ValidationError("batch_size must be at least 1")

        async with self._lock:
            if library_id in self._active_libraries:
                raise ValidationError(f"Library {library_id} is already syncing")
            self._active_libraries.add(library_id)

        try:
            return await self._sync_library(library_id, incremental, batch_size)
        finally:
            async with self._lock:
                self._active_libraries.discard(library_id)

    async def _sync_library(self, library_id: int, incremental: bool, batch_size: int) -> SyncResult:
        session = self._session_factory()
        try:
            library = session.query(Library).filter(Library.id == library_id).first()
            if not library:
                raise NotFoundError(f"Library {library_id} not found")
            if not library.enabled:
                raise ValidationError(f"Library {library_id} is disabled")
            connection = library.connection
            if connection is None:
                raise ValidationError(f"Library {library_id} has no provider connection")

            kind = SYNC_KIND_INCREMENTAL if incremental else SYNC_KIND_FULL
            run = SyncRun(library_id=library.id, kind=kind, status=STATUS_IN_PROGRESS, started_at=utcnow())
            session.add(run)
            session.commit()
            result = SyncResult(run_id=run.id, library_id=library.id, kind=kind)

            logger.info(
                f"[SYNC] Starting {kind} sync of library {library.name} (id={library.id}, "
                f"provider={connection.type}, run={run.id}, batch_size={batch_size})"
            )

            try:
                provider = self._provider_factory(connection)
                try:
                    await self._sync_pages(session, provider, library, connection.id, run, result, batch_size)
                    await self._sync_collections(session, provider, library, connection.id, result)
                finally:
                    await provider.close()

                if not incremental:
                    self._prune_missing(session, library, run, result)

                run.status = STATUS_COMPLETED
                run.completed_at = utcnow()
                self._apply_totals(run, result)
                session.commit()
                result.status = STATUS_COMPLETED
            except Exception as e:
                self._mark_failed(session, run.id, e)
                result.status = STATUS_FAILED
                if isinstance(e, SQLAlchemyError):
                    raise PersistenceError(f"Database error during sync of library {library_id}: {e}") from e
                raise

            logger.info(
                f"[SYNC] Completed {kind} sync of library {library.name}: {result.items_processed} processed, "
                f"{result.items_added} added, {result.items_updated} updated, {result.items_unchanged} unchanged, "
                f"{result.items_failed} failed, {result.items_removed} removed"
            )
            return result
        except SQLAlchemyError as e:
            logger.exception(f"[SYNC] Database error preparing sync of library {library_id}: {e}")
            raise PersistenceError(f"Database error during sync of library {library_id}: {e}") from e
        finally:
            session.close()

    async def _sync_pages(self, session, provider, library, server_id, run, result, batch_size) -> None:
        """Fetch and upsert pages until a short page arrives."""
        offset = 0
        seen_external_ids: set[str] = set()

        while True:
            # Fetch errors propagate and abort the run
            items = await provider.get_library_items(library.external_id, offset=offset, limit=batch_size)
            result.pages += 1

            for raw_item in items:
                result.items_processed += 1
                external_id = str(raw_item.get("external_id") or "") if isinstance(raw_item, dict) else ""

                if external_id and external_id in seen_external_ids:
                    logger.warning(
                        f"[SYNC] Library {library.id}: provider returned item {external_id} twice, skipping duplicate"
                    )
                    result.items_unchanged += 1
                    continue

                try:
                    with session.begin_nested():
                        outcome = self._upsert_item(session, library.id, server_id, run.id, raw_item)
                except (CatalogError, IntegrityError, DataError, ValueError, TypeError) as e:
                    result.items_failed += 1
                    result.failed_items.append({"external_id": external_id, "error": str(e)})
                    logger.error(
                        f"[SYNC] Library {library.id}: failed to sync item {external_id or '<missing id>'}: {e}"
                    )
                    continue
                finally:
                    if external_id:
                        seen_external_ids.add(external_id)

                if outcome == OUTCOME_ADDED:
                    result.items_added += 1
                elif outcome == OUTCOME_UPDATED:
                    result.items_updated += 1
                else:
                    result.items_unchanged += 1

            self._apply_totals(run, result)
            session.commit()
            logger.debug(
                f"[SYNC] Library {library.id}: page {result.pages} done "
                f"({len(items)} items, {result.items_processed} processed so far)"
            )

            if len(items) < batch_size:
                break
            offset += batch_size

    def _upsert_item(self, session, library_id: int, server_id: int, run_id: int, raw_item: Any) -> str:
        """Insert or update one item atomically; returns its outcome."""
        item = project_item(raw_item)
        row = item.to_row()
        now = utcnow()
        table = CatalogItem.__table__

        stmt = sqlite_insert(table).values(
            server_id=server_id,
            library_id=library_id,
            content_hash=compute_content_hash(library_id, item),
            first_seen_run_id=run_id,
            last_seen_run_id=run_id,
            last_changed_run_id=run_id,
            last_synced=now,
            **row,
        )
        excluded = stmt.excluded
        changed = table.c.content_hash.is_distinct_from(excluded.content_hash)
        update_columns = {
            key: excluded[key]
            for key in row
            if key not in ("external_id", "metadata")
        }
        update_columns.update({
            "library_id": excluded.library_id,
            # Keep keys other writers added (e.g. content_analysis)
            "metadata": func.json_patch(table.c["metadata"], excluded["metadata"]),
            "content_hash": excluded.content_hash,
            "last_seen_run_id": excluded.last_seen_run_id,
            "last_changed_run_id": case(
                (changed, excluded.last_changed_run_id),
                else_=table.c.last_changed_run_id,
            ),
            "last_synced": excluded.last_synced,
        })
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.server_id, table.c.external_id],
            set_=update_columns,
        ).returning(table.c.first_seen_run_id, table.c.last_changed_run_id)

        first_seen_run_id, last_changed_run_id = session.execute(stmt).one()
        if first_seen_run_id == run_id:
            return OUTCOME_ADDED
        if last_changed_run_id == run_id:
            return OUTCOME_UPDATED
        return OUTCOME_UNCHANGED

    async def _sync_collections(self, session, provider, library, server_id, result) -> None:
        """Upsert collections; any failure is logged and ignored."""
        try:
            collections = await provider.get_collections(library.external_id)
            now = utcnow()
            table = Collection.__table__
            with session.begin_nested():
                for collection in collections:
                    external_id = str(collection.get("external_id") or "")
                    if not external_id:
                        logger.warning(f"[SYNC] Library {library.id}: skipping collection without an id")
                        continue
                    stmt = sqlite_insert(table).values(
                        server_id=server_id,
                        library_id=library.id,
                        external_id=external_id,
                        name=collection.get("name") or external_id,
                        item_count=int(collection.get("item_count") or 0),
                        metadata=json.dumps(collection.get("metadata") or {}, sort_keys=True, default=str),
                        last_synced=now,
                    )
                    excluded = stmt.excluded
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[table.c.server_id, table.c.external_id],
                        set_={
                            "library_id": excluded.library_id,
                            "name": excluded.name,
                            "item_count": excluded.item_count,
                            "metadata": excluded["metadata"],
                            "last_synced": excluded.last_synced,
                        },
                    )
                    session.execute(stmt)
                    result.collections_synced += 1
            session.commit()
        except Exception as e:
            result.collections_synced = 0
            logger.warning(f"[SYNC] Library {library.id}: collection sync failed, continuing: {e}")

    def _prune_missing(self, session, library, run, result) -> None:
        """Delete library items a full run did not see (failed items are kept)."""
        query = session.query(CatalogItem).filter(
            CatalogItem.library_id == library.id,
            or_(CatalogItem.last_seen_run_id.is_(None), CatalogItem.last_seen_run_id != run.id),
        )
        failed_ids = [f["external_id"] for f in result.failed_items if f["external_id"]]
        if failed_ids:
            query = query.filter(~CatalogItem.external_id.in_(failed_ids))
        removed = query.delete(synchronize_session=False)
        result.items_removed = removed
        if removed:
            logger.info(f"[SYNC] Library {library.id}: removed {removed} items no longer on the server")

    @staticmethod
    def _apply_totals(run: SyncRun, result: SyncResult) -> None:
        run.items_processed = result.items_processed
        run.items_added = result.items_added
        run.items_updated = result.items_updated
        run.items_failed = result.items_failed
        run.items_removed = result.items_removed

    def _mark_failed(self, session, run_id: int, error: Exception) -> None:
        """Move a run to the failed state after an aborting error."""
        logger.error(f"[SYNC] Run {run_id} failed: {error}")
        try:
            session.rollback()
            run = session.get(SyncRun, run_id)
            if run is not None:
                run.status = STATUS_FAILED
                run.error_message = str(error) or error.__class__.__name__
                run.completed_at = utcnow()
                session.commit()
        except SQLAlchemyError as e:
            logger.exception(f"[SYNC] Could not record failure for run {run_id}: {e}")

    async def sync_all_libraries(self, incremental: bool = True) -> List[Dict[str, Any]]:
        """Sync every enabled library in turn, recording per-library outcomes."""
        session = self._session_factory()
        try:
            library_ids = [
                row.id for row in session.query(Library.id).filter(Library.enabled == True).order_by(Library.id)  # noqa: E712
            ]
        finally:
            session.close()

        results = []
        for library_id in library_ids:
            try:
                result = await self.sync_library(library_id, incremental=incremental)
                results.append({"library_id": library_id, "success": True, "result": result.to_dict()})
            except CatalogError as e:
                logger.error(f"[SYNC] Sync of library {library_id} failed: {e.message}")
                results.append({"library_id": library_id, "success": False, "error": e.message})
        return results


# =============================================================================
# Mirror queries
# =============================================================================

def get_sync_status(session, library_id: int) -> Optional[dict]:
    """Latest sync run for a library, or None if it was never synced."""
    run = (
        session.query(SyncRun)
        .filter(SyncRun.library_id == library_id)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .first()
    )
    return run.to_dict() if run else None


def list_sync_runs(session, library_id: Optional[int] = None, limit: int = 20) -> List[dict]:
    """Recent sync runs, newest first."""
    query = session.query(SyncRun)
    if library_id is not None:
        query = query.filter(SyncRun.library_id == library_id)
    runs = query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()
    return [run.to_dict() for run in runs]


def get_library_items(
    session, library_id: int, limit: int = 50, offset: int = 0, search: Optional[str] = None
) -> Dict[str, Any]:
    """Page through a library's mirrored items, optionally filtered by title."""
    query = session.query(CatalogItem).filter(CatalogItem.library_id == library_id)
    if search:
        query = query.filter(CatalogItem.title.ilike(f"%{search}%"))
    total = query.count()
    items = query.order_by(CatalogItem.title, CatalogItem.id).offset(offset).limit(limit).all()
    return {
        "items": [item.to_dict() for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def get_item_by_external_id(session, server_id: int, external_id: str) -> dict:
    """Look up a mirrored item by its natural key."""
    item = session.query(CatalogItem).filter(
        CatalogItem.server_id == server_id,
        CatalogItem.external_id == external_id,
    ).first()
    if not item:
        raise NotFoundError(f"Item {external_id} not found on server {server_id}")
    return item.to_dict()


def find_existing_media(session, tmdb_id, media_type: str) -> Optional[dict]:
    """Find a mirrored item by TMDB id in any library."""
    row = (
        session.query(CatalogItem, Library)
        .join(Library, CatalogItem.library_id == Library.id)
        .filter(CatalogItem.tmdb_id == str(tmdb_id), CatalogItem.media_type == media_type)
        .order_by(CatalogItem.id)
        .first()
    )
    if not row:
        return None
    item, library = row
    data = item.to_dict()
    data["library_name"] = library.name
    return data


def get_library_context(session, tmdb_id, media_type: str) -> Optional[dict]:
    """Summarize where an already-owned title lives, for request routing."""
    existing = find_existing_media(session, tmdb_id, media_type)
    if not existing:
        return None
    return {
        "exists": True,
        "library_id": existing["library_id"],
        "library_name": existing["library_name"],
        "title": existing["title"],
        "year": existing["year"],
        "collections": existing["collections"],
        "tags": existing["tags"],
    }


# Global engine instance
_sync_engine: Optional[SyncEngine] = None


def get_sync_engine() -> SyncEngine:
    """Get the global sync engine instance."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = SyncEngine()
    return _sync_engine
