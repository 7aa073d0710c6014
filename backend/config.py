from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import logging
from pathlib import Path

# Set up logging
logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """App settings from environment (for container config)."""
    config_dir: str = "/config"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


# Config file location
CONFIG_DIR = Path(Settings().config_dir)
CONFIG_FILE = CONFIG_DIR / "settings.json"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class CatalogSettings(BaseModel):
    """User-configurable catalog sync and classification settings."""
    # Sync engine
    sync_batch_size: int = 100  # Items requested per provider page
    provider_timeout_seconds: float = 30.0  # Per-request timeout for media server calls
    # Scheduler
    scheduler_check_interval: int = 60  # Seconds between due-task polls
    scheduler_batch_limit: int = 10  # Max tasks dispatched per poll
    min_task_interval_minutes: int = 5  # Smallest allowed recurring interval
    # Rule builder sessions
    session_ttl_minutes: int = 30  # Idle time before a session expires
    session_sweep_interval_seconds: int = 300  # How often expired sessions are purged
    # AI chat collaborator (Ollama-compatible /api/chat endpoint)
    ai_chat_url: str = "http://localhost:11434"
    ai_chat_model: str = "llama3.2"
    ai_chat_temperature: float = 0.3
    ai_chat_timeout_seconds: float = 120.0
    # Rule preview
    preview_default_limit: int = 50
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"

    def is_ai_configured(self) -> bool:
        return bool(self.ai_chat_url and self.ai_chat_model)


# In-memory cache of settings
_cached_settings: CatalogSettings | None = None


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.info(f"Ensured config directory exists: {CONFIG_DIR}")


def load_settings() -> CatalogSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    logger.info(f"Loading settings from {CONFIG_FILE}")

    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            _cached_settings = CatalogSettings(**data)
            logger.info("Loaded settings successfully")
            return _cached_settings
        except Exception as e:
            logger.error(f"Failed to load settings from {CONFIG_FILE}: {e}")

    logger.info("Using default settings (no config file found or failed to parse)")
    _cached_settings = CatalogSettings()
    return _cached_settings


def save_settings(settings: CatalogSettings) -> None:
    """Save settings to file."""
    global _cached_settings

    ensure_config_dir()

    try:
        CONFIG_FILE.write_text(json.dumps(settings.model_dump(), indent=2))
        _cached_settings = settings
        logger.info(f"Settings saved successfully to {CONFIG_FILE}")
    except Exception as e:
        logger.error(f"Failed to save settings to {CONFIG_FILE}: {e}")
        raise


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("Settings cache cleared")


def get_settings() -> CatalogSettings:
    """Get the current catalog settings."""
    return load_settings()


def log_config_status():
    """Log the current configuration status for debugging."""
    logger.info(f"CONFIG_DIR: {CONFIG_DIR}")
    logger.info(f"CONFIG_FILE: {CONFIG_FILE}")
    logger.info(f"CONFIG_DIR exists: {CONFIG_DIR.exists()}")
    logger.info(f"CONFIG_FILE exists: {CONFIG_FILE.exists()}")


def get_log_level_from_env() -> str:
    """Get log level from environment variable or default to INFO."""
    return Settings().log_level.upper()


def set_log_level(level: str) -> None:
    """Set the logging level for all loggers dynamically."""
    level_upper = level.upper()

    if level_upper not in VALID_LOG_LEVELS:
        logger.warning(f"Invalid log level '{level}', using INFO")
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)

    # Set root logger level
    logging.getLogger().setLevel(numeric_level)

    # Set level for all existing loggers
    for logger_name in logging.root.manager.loggerDict:
        logging.getLogger(logger_name).setLevel(numeric_level)

    logger.info(f"Log level set to {level_upper}")
