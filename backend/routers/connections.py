"""
Connections router: media-server connection CRUD, activation, connection
tests and library discovery.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from config import get_settings
from database import get_session
from models import Library, ProviderConnection
from providers import create_provider, create_provider_for_connection, get_provider_class, get_provider_types

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["Connections"])


class CreateConnectionRequest(BaseModel):
    type: str
    name: str
    url: str
    credential: str
    active: bool = False


class UpdateConnectionRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    credential: Optional[str] = None


class TestConnectionRequest(BaseModel):
    type: str
    url: str
    credential: str


def _deactivate_others(session, connection_id: Optional[int]) -> None:
    # Clear the old active row first so the partial unique index never sees two
    query = session.query(ProviderConnection).filter(ProviderConnection.active == True)  # noqa: E712
    if connection_id is not None:
        query = query.filter(ProviderConnection.id != connection_id)
    query.update({"active": False}, synchronize_session=False)
    session.flush()


@router.get("/types")
async def list_provider_types():
    """List the provider types a connection can use."""
    return {"types": get_provider_types()}


@router.post("/test")
async def test_connection_settings(request: TestConnectionRequest):
    """Test connection details before saving them."""
    provider = create_provider(
        request.type, request.url, request.credential, timeout=get_settings().provider_timeout_seconds
    )
    try:
        return await provider.test_connection()
    finally:
        await provider.close()


@router.get("")
async def list_connections():
    session = get_session()
    try:
        connections = session.query(ProviderConnection).order_by(ProviderConnection.id).all()
        return {"connections": [c.to_dict() for c in connections]}
    finally:
        session.close()


@router.post("")
async def create_connection(request: CreateConnectionRequest):
    """Create a connection; creating it active deactivates the current one."""
    get_provider_class(request.type)
    session = get_session()
    try:
        if request.active:
            _deactivate_others(session, None)
        connection = ProviderConnection(
            type=request.type,
            name=request.name,
            url=request.url.rstrip("/"),
            credential=request.credential,
            active=request.active,
        )
        session.add(connection)
        session.commit()
        session.refresh(connection)
        logger.info(f"[CONNECTIONS] Created {connection.type} connection '{connection.name}' (id={connection.id})")
        return connection.to_dict()
    finally:
        session.close()


@router.get("/active")
async def get_active_connection():
    session = get_session()
    try:
        connection = session.query(ProviderConnection).filter(ProviderConnection.active == True).first()  # noqa: E712
        if not connection:
            raise HTTPException(status_code=404, detail="No active connection")
        return connection.to_dict()
    finally:
        session.close()


@router.get("/{connection_id}")
async def get_connection(connection_id: int):
    session = get_session()
    try:
        connection = session.get(ProviderConnection, connection_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        return connection.to_dict()
    finally:
        session.close()


@router.put("/{connection_id}")
async def update_connection(connection_id: int, request: UpdateConnectionRequest):
    session = get_session()
    try:
        connection = session.get(ProviderConnection, connection_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        if request.name is not None:
            connection.name = request.name
        if request.url is not None:
            connection.url = request.url.rstrip("/")
        if request.credential is not None:
            connection.credential = request.credential
        session.commit()
        session.refresh(connection)
        return connection.to_dict()
    finally:
        session.close()


@router.delete("/{connection_id}")
async def delete_connection(connection_id: int):
    """Delete a connection along with its libraries and mirrored items."""
    session = get_session()
    try:
        connection = session.get(ProviderConnection, connection_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        session.delete(connection)
        session.commit()
        logger.info(f"[CONNECTIONS] Deleted connection {connection_id}")
        return {"status": "deleted", "id": connection_id}
    finally:
        session.close()


@router.post("/{connection_id}/activate")
async def activate_connection(connection_id: int):
    """Make this the single active connection."""
    session = get_session()
    try:
        connection = session.get(ProviderConnection, connection_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        _deactivate_others(session, connection_id)
        connection.active = True
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=409, detail="Another connection became active concurrently")
        session.refresh(connection)
        logger.info(f"[CONNECTIONS] Activated connection '{connection.name}' (id={connection.id})")
        return connection.to_dict()
    finally:
        session.close()


@router.post("/{connection_id}/test")
async def test_saved_connection(connection_id: int):
    session = get_session()
    try:
        connection = session.get(ProviderConnection, connection_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        provider = create_provider_for_connection(connection, timeout=get_settings().provider_timeout_seconds)
    finally:
        session.close()
    try:
        return await provider.test_connection()
    finally:
        await provider.close()


@router.get("/{connection_id}/libraries")
async def discover_libraries(connection_id: int):
    """List the server's libraries, flagging the ones already mirrored."""
    session = get_session()
    try:
        connection = session.get(ProviderConnection, connection_id)
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        provider = create_provider_for_connection(connection, timeout=get_settings().provider_timeout_seconds)
        known = {
            row.external_id: row.id
            for row in session.query(Library.external_id, Library.id).filter(
                Library.provider_connection_id == connection_id
            )
        }
    finally:
        session.close()

    try:
        libraries = await provider.get_libraries()
    finally:
        await provider.close()

    for library in libraries:
        library["library_id"] = known.get(library["external_id"])
    return {"libraries": libraries}
