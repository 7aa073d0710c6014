"""
Patterns router: run pattern analysis and manage rule suggestions.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from database import get_session
from pattern_analyzer import (
    analyze_library,
    create_rule_from_patterns,
    dismiss_suggestions,
    get_suggestions,
    save_suggestions,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patterns", tags=["Patterns"])


class ApplyPatternsRequest(BaseModel):
    name: str
    fields: Optional[List[str]] = None
    priority: Optional[int] = None


@router.post("/libraries/{library_id}/analyze")
async def analyze(library_id: int, content_type: Optional[str] = None, save: bool = True):
    """Analyze a library; by default the result replaces its stored suggestions."""
    session = get_session()
    try:
        result = analyze_library(session, library_id, content_type=content_type)
        if save:
            save_suggestions(session, library_id, result["patterns"])
        return result
    finally:
        session.close()


@router.get("/libraries/{library_id}/suggestions")
async def suggestions(library_id: int):
    session = get_session()
    try:
        data = get_suggestions(session, library_id)
        if data is None:
            raise HTTPException(status_code=404, detail="No suggestions for this library")
        return data
    finally:
        session.close()


@router.post("/libraries/{library_id}/dismiss")
async def dismiss(library_id: int):
    session = get_session()
    try:
        return dismiss_suggestions(session, library_id)
    finally:
        session.close()


@router.post("/libraries/{library_id}/apply")
async def apply(library_id: int, request: ApplyPatternsRequest):
    """Create a rule from stored suggestions (pre-selected ones unless fields are given)."""
    session = get_session()
    try:
        return create_rule_from_patterns(
            session, library_id, request.name, fields=request.fields, priority=request.priority
        )
    finally:
        session.close()
