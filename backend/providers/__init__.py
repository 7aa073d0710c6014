"""
Catalog Providers Package.

Importing this package registers every built-in adapter with the
provider registry.
"""

from providers.base import (
    CatalogProvider,
    register_provider,
    get_provider_types,
    get_provider_class,
    create_provider,
    create_provider_for_connection,
)
from providers.plex import PlexProvider
from providers.jellyfin import JellyfinProvider
from providers.emby import EmbyProvider

__all__ = [
    "CatalogProvider",
    "register_provider",
    "get_provider_types",
    "get_provider_class",
    "create_provider",
    "create_provider_for_connection",
    "PlexProvider",
    "JellyfinProvider",
    "EmbyProvider",
]
