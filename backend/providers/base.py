"""
Catalog Provider Framework.

Provides an abstract base class and registry for media-server catalog
adapters (Plex, Jellyfin, Emby). Every adapter exposes the same paging
interface so the sync engine never branches on provider type:

- test_connection(): reachability check with server info
- get_libraries(): movie/tv libraries available on the server
- get_library_items(library_id, offset, limit): one stateless page of items
- get_collections(library_id): collections within a library

A page shorter than the requested limit (including an empty page) is the
end-of-data signal.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

import httpx

from exceptions import ProviderError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class CatalogProvider(ABC):
    """
    Abstract base class for media-server catalog adapters.

    Subclasses must define:
    - provider_type: Registry key ("plex", "jellyfin", ...)
    - display_name: Human-readable provider name
    - auth_header: Header carrying the credential
    - health_path: Endpoint used by test_connection()
    """

    provider_type: str = ""
    display_name: str = ""
    auth_header: str = ""
    health_path: str = ""

    def __init__(self, url: str, credential: str, timeout: Optional[float] = None):
        self.base_url = url.rstrip("/")
        self.credential = credential
        self.timeout = timeout or DEFAULT_TIMEOUT_SECONDS
        self._client = httpx.AsyncClient(timeout=self.timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {self.auth_header: self.credential, "Accept": "application/json"}

    async def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        """GET a JSON document, wrapping transport and HTTP errors in ProviderError."""
        try:
            response = await self._client.get(
                f"{self.base_url}{path}", headers=self._headers(), params=params
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{self.display_name} returned HTTP {e.response.status_code} for {path}",
                provider=self.provider_type,
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"{self.display_name} request to {path} failed: {e}",
                provider=self.provider_type,
            ) from e
        except ValueError as e:
            raise ProviderError(
                f"{self.display_name} returned invalid JSON for {path}",
                provider=self.provider_type,
            ) from e

    async def test_connection(self) -> Dict[str, Any]:
        """
        Check that the server is reachable with the configured credential.

        Returns:
            {"ok": True, "server_info": {...}} or {"ok": False, "error": "..."}
        """
        try:
            data = await self._get_json(self.health_path)
        except ProviderError as e:
            logger.warning(f"[{self.provider_type}] Connection test failed: {e.message}")
            return {"ok": False, "error": e.message}
        return {"ok": True, "server_info": self.parse_server_info(data)}

    def parse_server_info(self, data: Any) -> Dict[str, Any]:
        """Extract a small server summary from the health endpoint payload."""
        return data if isinstance(data, dict) else {}

    @abstractmethod
    async def get_libraries(self) -> List[Dict[str, Any]]:
        """Return [{external_id, name, media_type}] for movie and tv libraries."""
        pass

    @abstractmethod
    async def get_library_items(self, library_id: str, offset: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Return one page of normalized catalog items.

        Each item has: external_id, title, year, media_type, genres, tags,
        collections, studio, content_rating, tmdb_id, imdb_id, tvdb_id, metadata.
        """
        pass

    @abstractmethod
    async def get_collections(self, library_id: str) -> List[Dict[str, Any]]:
        """Return [{external_id, name, item_count, metadata}] for a library."""
        pass


# =============================================================================
# Provider Registry
# =============================================================================

_provider_registry: Dict[str, Type[CatalogProvider]] = {}


def register_provider(provider_class: Type[CatalogProvider]) -> Type[CatalogProvider]:
    """Decorator to register a catalog provider type."""
    if not provider_class.provider_type:
        raise ValueError(f"Provider class {provider_class.__name__} must define provider_type")

    _provider_registry[provider_class.provider_type] = provider_class
    logger.debug(f"Registered catalog provider type: {provider_class.provider_type}")
    return provider_class


def get_provider_types() -> List[Dict[str, str]]:
    """Get list of available provider types."""
    return [
        {"type": cls.provider_type, "display_name": cls.display_name}
        for cls in _provider_registry.values()
    ]


def get_provider_class(provider_type: str) -> Type[CatalogProvider]:
    """Look up a provider class, raising ValidationError for unknown types."""
    provider_class = _provider_registry.get(provider_type)
    if provider_class is None:
        raise ValidationError(
            f"Unknown provider type: {provider_type}",
            details={"available": sorted(_provider_registry.keys())},
        )
    return provider_class


def create_provider(
    provider_type: str, url: str, credential: str, timeout: Optional[float] = None
) -> CatalogProvider:
    """Create an adapter instance for the given provider type."""
    return get_provider_class(provider_type)(url, credential, timeout=timeout)


def create_provider_for_connection(connection, timeout: Optional[float] = None) -> CatalogProvider:
    """Create an adapter from a ProviderConnection row."""
    return create_provider(connection.type, connection.url, connection.credential, timeout=timeout)
