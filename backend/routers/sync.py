"""
Sync router: trigger library syncs and inspect runs and mirrored items.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from database import get_session
from models import Library
from sync_engine import (
    find_existing_media,
    get_item_by_external_id,
    get_library_context,
    get_sync_engine,
    get_sync_status,
    list_sync_runs,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["Sync"])


class SyncRequest(BaseModel):
    incremental: bool = True
    batch_size: Optional[int] = None


@router.post("/libraries/{library_id}")
async def sync_library(library_id: int, request: Optional[SyncRequest] = None):
    """Sync one library and return the run totals."""
    request = request or SyncRequest()
    logger.info(f"[SYNC] Manual {'incremental' if request.incremental else 'full'} sync requested for library {library_id}")
    result = await get_sync_engine().sync_library(
        library_id, incremental=request.incremental, batch_size=request.batch_size
    )
    return result.to_dict()


@router.post("/all")
async def sync_all(incremental: bool = True):
    """Sync every enabled library in turn."""
    return {"results": await get_sync_engine().sync_all_libraries(incremental=incremental)}


@router.get("/active")
async def get_active_syncs():
    return {"library_ids": get_sync_engine().active_library_ids}


@router.get("/libraries/{library_id}/status")
async def get_library_sync_status(library_id: int):
    """Latest run for a library."""
    session = get_session()
    try:
        if not session.get(Library, library_id):
            raise HTTPException(status_code=404, detail="Library not found")
        return {
            "library_id": library_id,
            "syncing": library_id in get_sync_engine().active_library_ids,
            "last_run": get_sync_status(session, library_id),
        }
    finally:
        session.close()


@router.get("/runs")
async def get_sync_runs(library_id: Optional[int] = None, limit: int = 20):
    session = get_session()
    try:
        return {"runs": list_sync_runs(session, library_id=library_id, limit=min(max(limit, 1), 200))}
    finally:
        session.close()


@router.get("/items/{server_id}/{external_id}")
async def lookup_item(server_id: int, external_id: str):
    """Look up a mirrored item by its natural key."""
    session = get_session()
    try:
        return get_item_by_external_id(session, server_id, external_id)
    finally:
        session.close()


@router.get("/existing")
async def lookup_existing_media(tmdb_id: str, media_type: str = "movie"):
    """Check whether a title is already in any mirrored library."""
    session = get_session()
    try:
        item = find_existing_media(session, tmdb_id, media_type)
        return {
            "exists": item is not None,
            "item": item,
            "context": get_library_context(session, tmdb_id, media_type) if item else None,
        }
    finally:
        session.close()
