"""
Scheduled Tasks Package.

Importing this package registers every built-in task handler with the
task registry.
"""

from tasks.library_sync import LibrarySyncTask, FullRescanTask
from tasks.pattern_analysis import PatternAnalysisTask

__all__ = [
    "LibrarySyncTask",
    "FullRescanTask",
    "PatternAnalysisTask",
]
