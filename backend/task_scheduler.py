"""
Task Handler Framework.

Defines the capability every scheduled task type implements and the
structured result the task engine records after each execution:
- TaskHandler: one implementation per task_type, run(library_id) -> dict
- TaskResult: {status, result | error, started_at, completed_at}
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Outcome of one task execution."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class TaskResult:
    """Result of a task execution, stored as the task's last_result."""
    status: TaskStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == TaskStatus.SUCCESS

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for storage and API responses."""
        data: dict[str, Any] = {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
        return data


class TaskHandler(ABC):
    """
    Abstract base class for scheduled task types.

    Subclasses must define:
    - task_type: Registry key stored in ScheduledTask.task_type
    - task_name: Human-readable name
    - run(): The task logic

    run() returns a JSON-serializable summary. Raising marks the execution
    failed; the engine records the error and moves on.
    """

    task_type: str = ""
    task_name: str = ""
    task_description: str = ""

    @abstractmethod
    async def run(self, library_id: Optional[int] = None) -> dict:
        """
        Execute the task.

        Args:
            library_id: Library the task is scoped to, or None for all libraries

        Returns:
            Summary dict stored in last_result["result"]
        """
        pass

    def describe(self) -> dict:
        return {
            "task_type": self.task_type,
            "task_name": self.task_name,
            "description": self.task_description,
        }
