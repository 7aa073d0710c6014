"""
Error taxonomy for the catalog backend.

Every failure the service reports is one of four kinds:
- ValidationError: bad or missing input, no state was changed
- NotFoundError: a library, task, rule or session does not exist
- ProviderError: a media server or AI chat call failed
- PersistenceError: the database rejected an operation

The API layer maps these onto HTTP status codes in main.py.
"""
from typing import Optional


class CatalogError(Exception):
    """Base class for all catalog backend errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        data = {"error": self.__class__.__name__, "detail": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(CatalogError):
    """Input was malformed or incomplete."""

    status_code = 400


class NotFoundError(CatalogError):
    """A referenced entity does not exist."""

    status_code = 404


class ProviderError(CatalogError):
    """An external provider (media server or AI chat) failed."""

    status_code = 502

    def __init__(self, message: str, provider: str = "", details: Optional[dict] = None):
        super().__init__(message, details)
        self.provider = provider


class PersistenceError(CatalogError):
    """A database operation failed."""

    status_code = 500
