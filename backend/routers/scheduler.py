"""
Scheduler router: scheduled task CRUD, manual runs and engine status.
"""
import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from task_engine import get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scheduler", tags=["Scheduler"])


class CreateTaskRequest(BaseModel):
    name: str
    task_type: str
    library_id: Optional[int] = None
    interval_minutes: Optional[int] = None
    enabled: bool = True


class UpdateTaskRequest(BaseModel):
    name: Optional[str] = None
    task_type: Optional[str] = None
    library_id: Optional[int] = None
    interval_minutes: Optional[int] = None
    enabled: Optional[bool] = None


@router.get("/status")
async def engine_status():
    engine = get_engine()
    return {
        "running": engine.is_running,
        "polling": engine.is_polling,
        "check_interval": engine.check_interval,
    }


@router.get("/task-types")
async def list_task_types():
    return {"task_types": get_engine().list_task_types()}


@router.get("/tasks")
async def list_tasks(library_id: Optional[int] = None):
    return {"tasks": get_engine().list_tasks(library_id=library_id)}


@router.post("/tasks")
async def create_task(request: CreateTaskRequest):
    return get_engine().create_task(
        name=request.name,
        task_type=request.task_type,
        library_id=request.library_id,
        interval_minutes=request.interval_minutes,
        enabled=request.enabled,
    )


@router.get("/tasks/{task_id}")
async def get_task(task_id: int):
    return get_engine().get_task(task_id)


@router.put("/tasks/{task_id}")
async def update_task(task_id: int, request: UpdateTaskRequest):
    """Update a task; only fields present in the request body change."""
    changes = request.model_dump(exclude_unset=True)
    return get_engine().update_task(task_id, **changes)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: int):
    get_engine().delete_task(task_id)
    return {"status": "deleted", "id": task_id}


@router.post("/tasks/{task_id}/run")
async def run_task_now(task_id: int):
    """Run a task immediately; its next_run_at is recomputed as after a scheduled run."""
    result = await get_engine().run_now(task_id)
    return {"task_id": task_id, "result": result}
