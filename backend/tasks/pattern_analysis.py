"""
Pattern Analysis Task.

Scheduled task that recomputes rule suggestions from the mirrored catalog
and stores them as the library's PatternSuggestion row.
"""
import logging
from typing import Optional

from database import get_session
from exceptions import CatalogError
from models import Library
from task_registry import register_task
from task_scheduler import TaskHandler

logger = logging.getLogger(__name__)


@register_task
class PatternAnalysisTask(TaskHandler):
    """
    Analyze one library, or every enabled library when none is set.

    In the all-libraries case a failure on one library is logged and the
    rest still run.
    """

    task_type = "pattern_analysis"
    task_name = "Pattern Analysis"
    task_description = "Detect common metadata patterns and refresh rule suggestions"

    async def run(self, library_id: Optional[int] = None) -> dict:
        # Import here to avoid circular imports
        from pattern_analyzer import analyze_and_save

        session = get_session()
        try:
            if library_id is not None:
                return analyze_and_save(session, library_id)

            library_ids = [
                row.id for row in session.query(Library.id).filter(Library.enabled == True).order_by(Library.id)  # noqa: E712
            ]
            results = []
            for lib_id in library_ids:
                try:
                    results.append(analyze_and_save(session, lib_id))
                except CatalogError as e:
                    session.rollback()
                    logger.error(f"[{self.task_type}] Pattern analysis failed for library {lib_id}: {e.message}")
            logger.info(f"[{self.task_type}] Pattern analysis complete for {len(results)} libraries")
            return {"libraries": results}
        finally:
            session.close()
