"""
Libraries router: library CRUD and browsing of mirrored items.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from database import get_session
from models import Library, ProviderConnection
from sync_engine import get_library_items

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/libraries", tags=["Libraries"])

MEDIA_TYPES = ("movie", "tv")


class CreateLibraryRequest(BaseModel):
    provider_connection_id: int
    external_id: str
    name: str
    media_type: str = "movie"
    enabled: bool = True


class UpdateLibraryRequest(BaseModel):
    name: Optional[str] = None
    media_type: Optional[str] = None
    enabled: Optional[bool] = None


def _check_media_type(media_type: str) -> None:
    if media_type not in MEDIA_TYPES:
        raise HTTPException(status_code=400, detail=f"media_type must be one of {', '.join(MEDIA_TYPES)}")


@router.get("")
async def list_libraries(connection_id: Optional[int] = None):
    session = get_session()
    try:
        query = session.query(Library)
        if connection_id is not None:
            query = query.filter(Library.provider_connection_id == connection_id)
        return {"libraries": [lib.to_dict() for lib in query.order_by(Library.id).all()]}
    finally:
        session.close()


@router.post("")
async def create_library(request: CreateLibraryRequest):
    """Start mirroring a server library."""
    _check_media_type(request.media_type)
    session = get_session()
    try:
        if not session.get(ProviderConnection, request.provider_connection_id):
            raise HTTPException(status_code=404, detail="Connection not found")
        library = Library(
            provider_connection_id=request.provider_connection_id,
            external_id=request.external_id,
            name=request.name,
            media_type=request.media_type,
            enabled=request.enabled,
        )
        session.add(library)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=400, detail="Library already added for this connection")
        session.refresh(library)
        logger.info(f"[LIBRARIES] Added library '{library.name}' (id={library.id})")
        return library.to_dict()
    finally:
        session.close()


@router.get("/{library_id}")
async def get_library(library_id: int):
    session = get_session()
    try:
        library = session.get(Library, library_id)
        if not library:
            raise HTTPException(status_code=404, detail="Library not found")
        return library.to_dict()
    finally:
        session.close()


@router.put("/{library_id}")
async def update_library(library_id: int, request: UpdateLibraryRequest):
    session = get_session()
    try:
        library = session.get(Library, library_id)
        if not library:
            raise HTTPException(status_code=404, detail="Library not found")
        if request.name is not None:
            library.name = request.name
        if request.media_type is not None:
            _check_media_type(request.media_type)
            library.media_type = request.media_type
        if request.enabled is not None:
            library.enabled = request.enabled
        session.commit()
        session.refresh(library)
        return library.to_dict()
    finally:
        session.close()


@router.delete("/{library_id}")
async def delete_library(library_id: int):
    """Stop mirroring a library; its items, rules and runs go with it."""
    session = get_session()
    try:
        library = session.get(Library, library_id)
        if not library:
            raise HTTPException(status_code=404, detail="Library not found")
        session.delete(library)
        session.commit()
        logger.info(f"[LIBRARIES] Deleted library {library_id}")
        return {"status": "deleted", "id": library_id}
    finally:
        session.close()


@router.get("/{library_id}/items")
async def list_library_items(library_id: int, limit: int = 50, offset: int = 0, search: Optional[str] = None):
    """Page through the mirrored items of a library."""
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    session = get_session()
    try:
        if not session.get(Library, library_id):
            raise HTTPException(status_code=404, detail="Library not found")
        return get_library_items(session, library_id, limit=limit, offset=max(offset, 0), search=search)
    finally:
        session.close()
