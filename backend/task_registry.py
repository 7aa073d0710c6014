"""
Task Registry System.

Central registry mapping ScheduledTask.task_type values to handler classes.
Handlers register themselves with the @register_task decorator when the
tasks package is imported.
"""
import logging
from typing import Optional, Type

from task_scheduler import TaskHandler

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    Registry of task handler types.

    Handlers are stateless, so one shared instance per type is created on
    first lookup.
    """

    def __init__(self):
        self._handlers: dict[str, Type[TaskHandler]] = {}
        self._instances: dict[str, TaskHandler] = {}

    def register(self, handler_class: Type[TaskHandler]) -> None:
        """
        Register a handler class.

        Args:
            handler_class: A TaskHandler subclass to register
        """
        if not handler_class.task_type:
            raise ValueError(f"Task handler {handler_class.__name__} has no task_type defined")

        if handler_class.task_type in self._handlers:
            logger.warning(f"Task type {handler_class.task_type} already registered, replacing")
            self._instances.pop(handler_class.task_type, None)

        self._handlers[handler_class.task_type] = handler_class
        logger.debug(f"Registered task type: {handler_class.task_type} ({handler_class.task_name})")

    def unregister(self, task_type: str) -> bool:
        """Remove a handler; returns False if it was not registered."""
        if task_type in self._handlers:
            del self._handlers[task_type]
            self._instances.pop(task_type, None)
            logger.debug(f"Unregistered task type: {task_type}")
            return True
        return False

    def get_handler_class(self, task_type: str) -> Optional[Type[TaskHandler]]:
        return self._handlers.get(task_type)

    def get_handler(self, task_type: str) -> Optional[TaskHandler]:
        """Get the handler instance for a task type, or None if unknown."""
        if task_type not in self._instances and task_type in self._handlers:
            self._instances[task_type] = self._handlers[task_type]()
        return self._instances.get(task_type)

    def is_registered(self, task_type: str) -> bool:
        return task_type in self._handlers

    def list_task_types(self) -> list[dict]:
        """List registered task types with their metadata."""
        return [
            {
                "task_type": handler_class.task_type,
                "task_name": handler_class.task_name,
                "description": handler_class.task_description,
            }
            for handler_class in self._handlers.values()
        ]


# Global registry instance
_registry: Optional[TaskRegistry] = None


def get_registry() -> TaskRegistry:
    """Get the global task registry instance."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry


def register_task(handler_class: Type[TaskHandler]) -> Type[TaskHandler]:
    """
    Decorator to register a task handler with the global registry.

    Usage:
        @register_task
        class MyTask(TaskHandler):
            task_type = "my_task"
            ...
    """
    get_registry().register(handler_class)
    return handler_class
