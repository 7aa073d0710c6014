"""
Unit tests for the task engine, registry and built-in task handlers.

A fake clock drives next_run_at arithmetic, so nothing here sleeps.
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from exceptions import NotFoundError, ValidationError
from models import ScheduledTask
from task_engine import TaskEngine
from task_registry import TaskRegistry
from task_scheduler import TaskHandler, TaskResult, TaskStatus
from tests.fixtures.factories import create_catalog_item, create_library, create_scheduled_task


T0 = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingTask(TaskHandler):
    task_type = "recording"
    task_name = "Recording"
    task_description = "Remembers which libraries it ran for"

    def __init__(self):
        self.calls = []

    async def run(self, library_id=None) -> dict:
        self.calls.append(library_id)
        return {"library_id": library_id}


class FailingTask(TaskHandler):
    task_type = "failing"
    task_name = "Failing"

    async def run(self, library_id=None) -> dict:
        raise RuntimeError("provider exploded")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    registry = TaskRegistry()
    registry.register(RecordingTask)
    registry.register(FailingTask)
    return registry


@pytest.fixture
def engine(session_factory, clock, registry):
    return TaskEngine(
        check_interval=3600,
        batch_limit=10,
        min_interval_minutes=5,
        clock=clock,
        session_factory=session_factory,
        registry=registry,
    )


def _load(session_factory, task_id) -> ScheduledTask:
    session = session_factory()
    try:
        return session.get(ScheduledTask, task_id)
    finally:
        session.close()


class TestExecuteTask:
    """Tests for execute_task() bookkeeping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("task_type", ["recording", "failing"])
    async def test_next_run_is_interval_after_execution(self, engine, clock, session_factory, task_type):
        """Scenario D: next_run_at = T + interval on success and on failure."""
        task = engine.create_task("Every five", task_type, interval_minutes=5)
        clock.advance(minutes=7)
        executed_at = clock.now

        await engine.execute_task(task["id"])

        stored = _load(session_factory, task["id"])
        assert stored.last_run_at == executed_at
        assert stored.next_run_at == executed_at + timedelta(minutes=5)
        assert stored.run_count == 1

    @pytest.mark.asyncio
    async def test_success_result_recorded(self, engine, registry):
        task = engine.create_task("Scoped", "recording", interval_minutes=10)

        record = await engine.execute_task(task["id"])

        assert record["status"] == "success"
        assert record["result"] == {"library_id": None}
        assert engine.get_task(task["id"])["last_result"]["status"] == "success"
        assert registry.get_handler("recording").calls == [None]

    @pytest.mark.asyncio
    async def test_failure_is_captured(self, engine):
        task = engine.create_task("Broken", "failing", interval_minutes=10)

        record = await engine.execute_task(task["id"])

        assert record["status"] == "failed"
        assert record["error"] == "provider exploded"
        assert "result" not in record

    @pytest.mark.asyncio
    async def test_unknown_task_type_is_captured(self, engine, test_session, session_factory):
        task = create_scheduled_task(test_session, task_type="ghost", interval_minutes=5)

        record = await engine.execute_task(task.id)

        assert record["status"] == "failed"
        assert record["error"] == "Unknown task type: ghost"
        assert _load(session_factory, task.id).run_count == 1

    @pytest.mark.asyncio
    async def test_missing_task(self, engine):
        with pytest.raises(NotFoundError):
            await engine.execute_task(999)

    @pytest.mark.asyncio
    async def test_handler_receives_library_scope(self, engine, registry, test_session):
        library = create_library(test_session)
        task = engine.create_task("Scoped", "recording", library_id=library.id, interval_minutes=5)

        await engine.execute_task(task["id"])

        assert registry.get_handler("recording").calls == [library.id]

    @pytest.mark.asyncio
    async def test_run_now_reschedules(self, engine, clock, session_factory):
        task = engine.create_task("Hourly", "recording", interval_minutes=60)
        clock.advance(minutes=10)

        await engine.run_now(task["id"])

        stored = _load(session_factory, task["id"])
        assert stored.next_run_at == clock.now + timedelta(minutes=60)


class TestTick:
    """Tests for due-task selection and the tick loop."""

    @pytest.mark.asyncio
    async def test_due_selection(self, engine, clock, test_session):
        past = create_scheduled_task(test_session, task_type="recording", next_run_at=T0 - timedelta(minutes=1))
        create_scheduled_task(test_session, task_type="recording", next_run_at=T0 + timedelta(minutes=1))
        never_run = create_scheduled_task(test_session, task_type="recording", interval_minutes=None)
        create_scheduled_task(
            test_session, task_type="recording", interval_minutes=None, last_run_at=T0 - timedelta(days=1),
        )
        create_scheduled_task(test_session, task_type="recording", enabled=False, next_run_at=T0 - timedelta(days=1))

        assert engine.get_due_tasks() == [never_run.id, past.id]

    @pytest.mark.asyncio
    async def test_one_shot_runs_once(self, engine, registry, clock):
        engine.create_task("Once", "recording")

        assert await engine.tick() == 1
        clock.advance(days=1)
        assert await engine.tick() == 0
        assert len(registry.get_handler("recording").calls) == 1

    @pytest.mark.asyncio
    async def test_recurring_task_runs_again_when_due(self, engine, clock):
        engine.create_task("Every five", "recording", interval_minutes=5)

        assert await engine.tick() == 0
        clock.advance(minutes=5)
        assert await engine.tick() == 1
        clock.advance(minutes=4)
        assert await engine.tick() == 0
        clock.advance(minutes=1)
        assert await engine.tick() == 1

    @pytest.mark.asyncio
    async def test_batch_limit(self, session_factory, clock, registry, test_session):
        engine = TaskEngine(batch_limit=2, clock=clock, session_factory=session_factory, registry=registry)
        for _ in range(3):
            create_scheduled_task(test_session, task_type="recording", next_run_at=T0)

        assert await engine.tick() == 2
        assert await engine.tick() == 1

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, engine):
        engine.create_task("Once", "recording")
        engine._polling = True

        assert await engine.tick() == 0

    @pytest.mark.asyncio
    async def test_failing_task_does_not_stop_tick(self, engine, registry):
        engine.create_task("Broken", "failing")
        engine.create_task("Fine", "recording")

        assert await engine.tick() == 2
        assert registry.get_handler("recording").calls == [None]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine, registry):
        engine.create_task("Once", "recording")

        await engine.start()
        assert engine.is_running
        for _ in range(10):
            await asyncio.sleep(0)
            if registry.get_handler("recording").calls:
                break
        await engine.stop()

        assert not engine.is_running
        assert registry.get_handler("recording").calls == [None]


class TestTaskCrud:
    """Tests for scheduled task CRUD and validation."""

    def test_recurring_task_first_runs_after_one_interval(self, engine):
        task = engine.create_task("  Nightly  ", "recording", interval_minutes=1440)

        assert task["name"] == "Nightly"
        assert task["next_run_at"] == (T0 + timedelta(days=1)).isoformat() + "Z"

    def test_one_shot_task_has_no_next_run(self, engine):
        assert engine.create_task("Once", "recording")["next_run_at"] is None

    @pytest.mark.parametrize("kwargs, message", [
        ({"name": " ", "task_type": "recording"}, "name is required"),
        ({"name": "x", "task_type": "nope"}, "Unknown task type"),
        ({"name": "x", "task_type": "recording", "interval_minutes": 4}, "at least 5"),
        ({"name": "x", "task_type": "recording", "interval_minutes": 7.5}, "integer"),
    ])
    def test_validation(self, engine, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            engine.create_task(**kwargs)

    def test_unknown_library(self, engine):
        with pytest.raises(NotFoundError):
            engine.create_task("x", "recording", library_id=42)

    def test_update_interval_reschedules(self, engine, clock):
        task = engine.create_task("Hourly", "recording", interval_minutes=60)
        clock.advance(minutes=30)

        updated = engine.update_task(task["id"], interval_minutes=10)

        assert updated["next_run_at"] == (clock.now + timedelta(minutes=10)).isoformat() + "Z"

    def test_update_other_fields_keeps_schedule(self, engine, clock):
        task = engine.create_task("Hourly", "recording", interval_minutes=60)
        clock.advance(minutes=30)

        updated = engine.update_task(task["id"], name="Renamed", enabled=False)

        assert updated["name"] == "Renamed"
        assert updated["enabled"] is False
        assert updated["next_run_at"] == task["next_run_at"]

    def test_update_rejects_unknown_fields(self, engine):
        task = engine.create_task("Hourly", "recording", interval_minutes=60)
        with pytest.raises(ValidationError, match="run_count"):
            engine.update_task(task["id"], run_count=5)

    def test_update_missing_task(self, engine):
        with pytest.raises(NotFoundError):
            engine.update_task(999, name="x")

    def test_delete_and_list(self, engine, test_session):
        library = create_library(test_session)
        scoped = engine.create_task("Scoped", "recording", library_id=library.id)
        engine.create_task("Global", "recording")

        assert [t["id"] for t in engine.list_tasks(library_id=library.id)] == [scoped["id"]]
        engine.delete_task(scoped["id"])
        assert [t["name"] for t in engine.list_tasks()] == ["Global"]
        with pytest.raises(NotFoundError):
            engine.get_task(scoped["id"])

    def test_list_task_types(self, engine):
        types = {t["task_type"] for t in engine.list_task_types()}
        assert types == {"recording", "failing"}


class TestTaskRegistry:
    """Tests for the task registry."""

    def test_handler_requires_task_type(self):
        class Nameless(TaskHandler):
            async def run(self, library_id=None):
                return {}

        with pytest.raises(ValueError):
            TaskRegistry().register(Nameless)

    def test_handler_instance_is_shared(self, registry):
        assert registry.get_handler("recording") is registry.get_handler("recording")
        assert registry.get_handler("missing") is None

    def test_unregister(self, registry):
        assert registry.unregister("failing") is True
        assert registry.unregister("failing") is False
        assert not registry.is_registered("failing")

    def test_builtin_tasks_registered(self):
        from task_registry import get_registry
        import tasks  # noqa: F401

        registered = {t["task_type"] for t in get_registry().list_task_types()}
        assert {"library_sync", "full_rescan", "pattern_analysis"} <= registered


class TestTaskResult:
    def test_duration_and_dict(self):
        result = TaskResult(
            status=TaskStatus.SUCCESS,
            started_at=T0,
            completed_at=T0 + timedelta(seconds=90),
            result={"ok": 1},
        )
        data = result.to_dict()
        assert data["duration_seconds"] == 90
        assert data["started_at"] == "2024-06-01T12:00:00Z"
        assert data["result"] == {"ok": 1}


class TestBuiltinHandlers:
    """Tests for the shipped task handlers."""

    @pytest.mark.asyncio
    async def test_library_sync_scoped(self):
        from tasks.library_sync import FullRescanTask, LibrarySyncTask

        sync_result = MagicMock()
        sync_result.to_dict.return_value = {"items_added": 3}
        mock_engine = MagicMock()
        mock_engine.sync_library = AsyncMock(return_value=sync_result)

        with patch("sync_engine.get_sync_engine", return_value=mock_engine):
            assert await LibrarySyncTask().run(7) == {"items_added": 3}
            await FullRescanTask().run(7)

        assert mock_engine.sync_library.await_args_list[0].kwargs == {"incremental": True}
        assert mock_engine.sync_library.await_args_list[1].kwargs == {"incremental": False}

    @pytest.mark.asyncio
    async def test_library_sync_all(self):
        from tasks.library_sync import LibrarySyncTask

        mock_engine = MagicMock()
        mock_engine.sync_all_libraries = AsyncMock(return_value=[
            {"library_id": 1, "success": True},
            {"library_id": 2, "success": False, "error": "boom"},
        ])

        with patch("sync_engine.get_sync_engine", return_value=mock_engine):
            result = await LibrarySyncTask().run(None)

        assert result["failed"] == 1
        assert len(result["libraries"]) == 2

    @pytest.mark.asyncio
    async def test_pattern_analysis_all_libraries(self, patched_sessions, test_session):
        from tasks.pattern_analysis import PatternAnalysisTask

        first = create_library(test_session)
        second = create_library(test_session)
        create_library(test_session, enabled=False)
        create_catalog_item(test_session, first, genres=["Drama"])

        result = await PatternAnalysisTask().run(None)

        assert result["libraries"] == [
            {"library_id": first.id, "patterns_detected": 1},
            {"library_id": second.id, "patterns_detected": 0},
        ]
