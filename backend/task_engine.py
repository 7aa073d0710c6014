"""
Task Execution Engine.

Background service that drives scheduled catalog work:
- Runs a single cooperative poll loop that checks for due tasks
- Executes due tasks one at a time through the task registry
- Records every execution on the ScheduledTask row (last_run_at,
  run_count, last_result, next_run_at)
- Provides CRUD for scheduled tasks and out-of-band run_now()

The clock is injectable so next_run_at arithmetic can be tested without
real sleeps.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

import tasks  # noqa: F401  Registers the built-in task handlers
from clock import Clock, utcnow
from config import get_settings
from database import get_session
from exceptions import NotFoundError, PersistenceError, ValidationError
from models import Library, ScheduledTask
from task_registry import TaskRegistry, get_registry
from task_scheduler import TaskResult, TaskStatus

logger = logging.getLogger(__name__)

# Configuration
DEFAULT_CHECK_INTERVAL = 60  # Check for due tasks every 60 seconds
DEFAULT_BATCH_LIMIT = 10  # Tasks considered per tick
MIN_INTERVAL_MINUTES = 5

_UPDATABLE_FIELDS = ("name", "task_type", "library_id", "interval_minutes", "enabled")


class TaskEngine:
    """
    Background execution engine for scheduled tasks.

    Ticks never overlap: a tick that starts while another is still running
    is skipped.
    """

    def __init__(
        self,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        min_interval_minutes: int = MIN_INTERVAL_MINUTES,
        clock: Clock = utcnow,
        session_factory: Callable = get_session,
        registry: Optional[TaskRegistry] = None,
    ):
        self.check_interval = check_interval
        self.batch_limit = batch_limit
        self.min_interval_minutes = min_interval_minutes
        self._clock = clock
        self._session_factory = session_factory
        self._registry = registry or get_registry()
        self._running = False
        self._polling = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the poll loop."""
        if self._running:
            logger.warning("Task engine already running")
            return

        logger.info("Starting task execution engine")
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Task engine started (check_interval={self.check_interval}s, batch_limit={self.batch_limit})")

    async def stop(self) -> None:
        """
        Stop the poll loop.

        No new ticks start; a tick already executing a task finishes first.
        """
        if not self._running:
            return

        logger.info("Stopping task execution engine")
        self._running = False

        if self._task:
            if not self._polling:
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Task engine stopped")

    @property
    def is_running(self) -> bool:
        """Check if engine is running."""
        return self._running

    @property
    def is_polling(self) -> bool:
        """Check if a tick is in progress."""
        return self._polling

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop - checks for due tasks and executes them."""
        logger.info("Scheduler loop started")

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            if not self._running:
                break

            # Wait for next check
            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break

        logger.info("Scheduler loop stopped")

    async def tick(self) -> int:
        """
        Run every task that is due right now.

        Returns:
            Number of tasks executed (0 if another tick is in progress)
        """
        if self._polling:
            logger.debug("Previous tick still running, skipping")
            return 0

        self._polling = True
        try:
            due_ids = self.get_due_tasks()
            if due_ids:
                logger.info(f"{len(due_ids)} scheduled tasks due")
            executed = 0
            for task_id in due_ids:
                try:
                    await self.execute_task(task_id)
                    executed += 1
                except NotFoundError:
                    logger.warning(f"Task {task_id} was deleted before it could run")
            return executed
        finally:
            self._polling = False

    def get_due_tasks(self, now=None) -> list[int]:
        """
        IDs of enabled tasks due at `now`, oldest next_run_at first.

        A task with no next_run_at is due only if it has never run; a
        one-shot task that already ran stays idle until run_now().
        """
        now = now or self._clock()
        session = self._session_factory()
        try:
            rows = (
                session.query(ScheduledTask.id)
                .filter(
                    ScheduledTask.enabled == True,  # noqa: E712
                    or_(
                        and_(ScheduledTask.next_run_at.is_(None), ScheduledTask.last_run_at.is_(None)),
                        ScheduledTask.next_run_at <= now,
                    ),
                )
                .order_by(ScheduledTask.next_run_at.asc().nullsfirst(), ScheduledTask.id)
                .limit(self.batch_limit)
                .all()
            )
            return [row.id for row in rows]
        finally:
            session.close()

    async def execute_task(self, task_id: int) -> dict:
        """
        Execute one task and record the outcome.

        Handler failures and unknown task types are captured in the result,
        never raised.

        Returns:
            The stored last_result dict

        Raises:
            NotFoundError: Task does not exist
        """
        session = self._session_factory()
        try:
            task = session.query(ScheduledTask).filter(ScheduledTask.id == task_id).first()
            if not task:
                raise NotFoundError(f"Scheduled task {task_id} not found")
            task_type = task.task_type
            task_name = task.name
            library_id = task.library_id
        finally:
            session.close()

        started_at = self._clock()
        handler = self._registry.get_handler(task_type)
        if handler is None:
            logger.error(f"Task {task_name} (id={task_id}) has unknown task type: {task_type}")
            result = TaskResult(
                status=TaskStatus.FAILED,
                error=f"Unknown task type: {task_type}",
                started_at=started_at,
            )
        else:
            logger.info(f"Running task {task_name} (id={task_id}, type={task_type}, library={library_id})")
            try:
                summary = await handler.run(library_id)
                result = TaskResult(status=TaskStatus.SUCCESS, result=summary or {}, started_at=started_at)
            except Exception as e:
                logger.exception(f"Task {task_name} (id={task_id}) failed: {e}")
                result = TaskResult(status=TaskStatus.FAILED, error=str(e) or e.__class__.__name__, started_at=started_at)

        result.completed_at = self._clock()
        return self._record_execution(task_id, result)

    def _record_execution(self, task_id: int, result: TaskResult) -> dict:
        """Apply post-run bookkeeping; identical for scheduled and manual runs."""
        now = result.completed_at or self._clock()
        record = result.to_dict()
        session = self._session_factory()
        try:
            task = session.query(ScheduledTask).filter(ScheduledTask.id == task_id).first()
            if not task:
                logger.warning(f"Task {task_id} was deleted while running, result not recorded")
                return record
            task.last_run_at = now
            task.run_count = (task.run_count or 0) + 1
            task.set_last_result(record)
            task.next_run_at = now + timedelta(minutes=task.interval_minutes) if task.interval_minutes else None
            session.commit()
            logger.debug(f"Task {task.name} next run: {task.next_run_at}")
            return record
        except SQLAlchemyError as e:
            session.rollback()
            logger.exception(f"Failed to record execution of task {task_id}: {e}")
            raise PersistenceError(f"Failed to record execution of task {task_id}: {e}") from e
        finally:
            session.close()

    async def run_now(self, task_id: int) -> dict:
        """Execute a task immediately, outside the poll loop."""
        logger.info(f"Manual run requested for task {task_id}")
        return await self.execute_task(task_id)

    # -------------------------------------------------------------------------
    # Task CRUD
    # -------------------------------------------------------------------------

    def _validate(self, session, data: dict) -> None:
        if "name" in data and not (data["name"] or "").strip():
            raise ValidationError("Task name is required")
        if "task_type" in data and not self._registry.is_registered(data["task_type"]):
            raise ValidationError(
                f"Unknown task type: {data['task_type']}",
                details={"available": [t["task_type"] for t in self._registry.list_task_types()]},
            )
        interval = data.get("interval_minutes")
        if interval is not None:
            if isinstance(interval, bool) or not isinstance(interval, int):
                raise ValidationError("interval_minutes must be an integer")
            if interval < self.min_interval_minutes:
                raise ValidationError(f"interval_minutes must be at least {self.min_interval_minutes}")
        library_id = data.get("library_id")
        if library_id is not None:
            if not session.query(Library.id).filter(Library.id == library_id).first():
                raise NotFoundError(f"Library {library_id} not found")

    def create_task(
        self,
        name: str,
        task_type: str,
        library_id: Optional[int] = None,
        interval_minutes: Optional[int] = None,
        enabled: bool = True,
    ) -> dict:
        """
        Create a scheduled task.

        Recurring tasks first run one interval from now; one-shot tasks run
        on the next tick.
        """
        session = self._session_factory()
        try:
            self._validate(session, {
                "name": name,
                "task_type": task_type,
                "library_id": library_id,
                "interval_minutes": interval_minutes,
            })
            now = self._clock()
            task = ScheduledTask(
                name=name.strip(),
                task_type=task_type,
                library_id=library_id,
                interval_minutes=interval_minutes,
                enabled=enabled,
                next_run_at=now + timedelta(minutes=interval_minutes) if interval_minutes else None,
            )
            session.add(task)
            session.commit()
            session.refresh(task)
            logger.info(f"Created scheduled task {task.name} (id={task.id}, type={task_type})")
            return task.to_dict()
        finally:
            session.close()

    def update_task(self, task_id: int, **changes: Any) -> dict:
        """Update task fields; a new interval reschedules from now."""
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        session = self._session_factory()
        try:
            task = session.query(ScheduledTask).filter(ScheduledTask.id == task_id).first()
            if not task:
                raise NotFoundError(f"Scheduled task {task_id} not found")
            self._validate(session, changes)

            if "name" in changes:
                changes["name"] = changes["name"].strip()
            interval_changed = (
                "interval_minutes" in changes and changes["interval_minutes"] != task.interval_minutes
            )
            for key, value in changes.items():
                setattr(task, key, value)
            if interval_changed:
                task.next_run_at = (
                    self._clock() + timedelta(minutes=task.interval_minutes) if task.interval_minutes else None
                )
            session.commit()
            session.refresh(task)
            logger.info(f"Updated scheduled task {task.name} (id={task.id}): {sorted(changes)}")
            return task.to_dict()
        finally:
            session.close()

    def delete_task(self, task_id: int) -> None:
        session = self._session_factory()
        try:
            task = session.query(ScheduledTask).filter(ScheduledTask.id == task_id).first()
            if not task:
                raise NotFoundError(f"Scheduled task {task_id} not found")
            session.delete(task)
            session.commit()
            logger.info(f"Deleted scheduled task {task_id}")
        finally:
            session.close()

    def get_task(self, task_id: int) -> dict:
        session = self._session_factory()
        try:
            task = session.query(ScheduledTask).filter(ScheduledTask.id == task_id).first()
            if not task:
                raise NotFoundError(f"Scheduled task {task_id} not found")
            return task.to_dict()
        finally:
            session.close()

    def list_tasks(self, library_id: Optional[int] = None) -> list[dict]:
        session = self._session_factory()
        try:
            query = session.query(ScheduledTask)
            if library_id is not None:
                query = query.filter(ScheduledTask.library_id == library_id)
            return [task.to_dict() for task in query.order_by(ScheduledTask.id).all()]
        finally:
            session.close()

    def list_task_types(self) -> list[dict]:
        return self._registry.list_task_types()


# Global engine instance
_engine: Optional[TaskEngine] = None


def get_engine() -> TaskEngine:
    """Get the global task engine instance."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = TaskEngine(
            check_interval=settings.scheduler_check_interval,
            batch_limit=settings.scheduler_batch_limit,
            min_interval_minutes=settings.min_task_interval_minutes,
        )
    return _engine


async def start_engine() -> None:
    """Start the global task engine."""
    await get_engine().start()


async def stop_engine() -> None:
    """Stop the global task engine."""
    await get_engine().stop()
