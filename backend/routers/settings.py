"""
Settings router: read and update the service's tunable settings.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ai_chat import reset_chat_client
from config import VALID_LOG_LEVELS, CatalogSettings, get_settings, save_settings, set_log_level

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["Settings"])

# Settings read once when the scheduler or rule builder is built
RESTART_REQUIRED_FIELDS = (
    "scheduler_check_interval",
    "scheduler_batch_limit",
    "min_task_interval_minutes",
    "session_ttl_minutes",
    "session_sweep_interval_seconds",
)

_POSITIVE_FIELDS = (
    "sync_batch_size",
    "provider_timeout_seconds",
    "scheduler_check_interval",
    "scheduler_batch_limit",
    "min_task_interval_minutes",
    "session_ttl_minutes",
    "session_sweep_interval_seconds",
    "ai_chat_timeout_seconds",
    "preview_default_limit",
)


class SettingsRequest(BaseModel):
    sync_batch_size: Optional[int] = None
    provider_timeout_seconds: Optional[float] = None
    scheduler_check_interval: Optional[int] = None
    scheduler_batch_limit: Optional[int] = None
    min_task_interval_minutes: Optional[int] = None
    session_ttl_minutes: Optional[int] = None
    session_sweep_interval_seconds: Optional[int] = None
    ai_chat_url: Optional[str] = None
    ai_chat_model: Optional[str] = None
    ai_chat_temperature: Optional[float] = None
    ai_chat_timeout_seconds: Optional[float] = None
    preview_default_limit: Optional[int] = None
    backend_log_level: Optional[str] = None


def _settings_response(settings: CatalogSettings) -> dict:
    data = settings.model_dump()
    data["ai_configured"] = settings.is_ai_configured()
    return data


@router.get("")
async def get_current_settings():
    logger.debug("[SETTINGS] GET /api/settings")
    return _settings_response(get_settings())


@router.post("")
async def update_settings(request: SettingsRequest):
    """Update the fields present in the request; the rest keep their values."""
    changes = {key: value for key, value in request.model_dump(exclude_unset=True).items() if value is not None}

    for key in _POSITIVE_FIELDS:
        if key in changes and changes[key] <= 0:
            raise HTTPException(status_code=400, detail=f"{key} must be greater than 0")
    if "backend_log_level" in changes:
        changes["backend_log_level"] = changes["backend_log_level"].upper()
        if changes["backend_log_level"] not in VALID_LOG_LEVELS:
            raise HTTPException(
                status_code=400, detail=f"backend_log_level must be one of {', '.join(VALID_LOG_LEVELS)}"
            )

    current = get_settings()
    try:
        new_settings = CatalogSettings(**{**current.model_dump(), **changes})
    except PydanticValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    save_settings(new_settings)

    if new_settings.backend_log_level != current.backend_log_level:
        set_log_level(new_settings.backend_log_level)
    if any(key.startswith("ai_chat_") for key in changes):
        reset_chat_client()

    restart_required = sorted(key for key in changes if key in RESTART_REQUIRED_FIELDS)
    logger.info(f"[SETTINGS] Updated settings: {sorted(changes)}")
    response = _settings_response(new_settings)
    response["restart_required"] = restart_required
    return response
