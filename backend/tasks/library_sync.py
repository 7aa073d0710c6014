"""
Library Sync Tasks.

Scheduled mirror refreshes:
- library_sync: incremental sync (upsert only)
- full_rescan: full sync that also prunes items the server no longer has

With no library set, every enabled library is synced in turn.
"""
import logging
from typing import Optional

from task_registry import register_task
from task_scheduler import TaskHandler

logger = logging.getLogger(__name__)


class _SyncTask(TaskHandler):
    incremental = True

    async def run(self, library_id: Optional[int] = None) -> dict:
        # Import here to avoid circular imports
        from sync_engine import get_sync_engine

        engine = get_sync_engine()
        if library_id is None:
            results = await engine.sync_all_libraries(incremental=self.incremental)
            failed = sum(1 for r in results if not r["success"])
            logger.info(f"[{self.task_type}] Synced {len(results) - failed}/{len(results)} libraries")
            return {"libraries": results, "failed": failed}

        result = await engine.sync_library(library_id, incremental=self.incremental)
        logger.info(
            f"[{self.task_type}] Library {library_id}: {result.items_added} added, "
            f"{result.items_updated} updated, {result.items_failed} failed"
        )
        return result.to_dict()


@register_task
class LibrarySyncTask(_SyncTask):
    """Incremental sync of one library (or all enabled libraries)."""

    task_type = "library_sync"
    task_name = "Library Sync"
    task_description = "Mirror new and changed items from the media server"
    incremental = True


@register_task
class FullRescanTask(_SyncTask):
    """Full rescan: sync every item and remove ones no longer on the server."""

    task_type = "full_rescan"
    task_name = "Full Rescan"
    task_description = "Re-read the whole library and prune removed items"
    incremental = False
