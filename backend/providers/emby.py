"""
Emby catalog adapter.

Emby and Jellyfin share the same item and library API, so this adapter
only changes the registry key and display name.
"""
from providers.base import register_provider
from providers.jellyfin import JellyfinProvider


@register_provider
class EmbyProvider(JellyfinProvider):
    """Adapter for Emby servers."""

    provider_type = "emby"
    display_name = "Emby"
