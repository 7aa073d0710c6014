"""
Plex catalog adapter.

Pages through /library/sections/{key}/all using the X-Plex-Container-Start
and X-Plex-Container-Size parameters. External identifiers come from the
item's Guid list (tmdb://, imdb://, tvdb://).
"""
import logging
from typing import Any, Dict, List, Optional

from providers.base import CatalogProvider, register_provider

logger = logging.getLogger(__name__)

_GUID_PREFIXES = {
    "tmdb://": "tmdb_id",
    "imdb://": "imdb_id",
    "tvdb://": "tvdb_id",
}


def parse_guids(item: dict) -> Dict[str, Optional[str]]:
    """Extract tmdb/imdb/tvdb ids from a Plex Guid list."""
    result = {"tmdb_id": None, "imdb_id": None, "tvdb_id": None}
    for guid in item.get("Guid") or []:
        guid_id = guid.get("id") or ""
        for prefix, key in _GUID_PREFIXES.items():
            if guid_id.startswith(prefix):
                result[key] = guid_id[len(prefix):]
    return result


def _tags(item: dict, key: str) -> List[str]:
    return [entry["tag"] for entry in item.get(key) or [] if entry.get("tag")]


@register_provider
class PlexProvider(CatalogProvider):
    """Adapter for Plex Media Server."""

    provider_type = "plex"
    display_name = "Plex"
    auth_header = "X-Plex-Token"
    health_path = "/identity"

    def parse_server_info(self, data: Any) -> Dict[str, Any]:
        container = (data or {}).get("MediaContainer", {})
        return {
            "machine_identifier": container.get("machineIdentifier"),
            "version": container.get("version"),
        }

    async def get_libraries(self) -> List[Dict[str, Any]]:
        data = await self._get_json("/library/sections")
        sections = data.get("MediaContainer", {}).get("Directory") or []
        return [
            {
                "external_id": str(section["key"]),
                "name": section.get("title", ""),
                "media_type": "tv" if section.get("type") == "show" else "movie",
            }
            for section in sections
            if section.get("type") in ("movie", "show")
        ]

    async def get_library_items(self, library_id: str, offset: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        data = await self._get_json(
            f"/library/sections/{library_id}/all",
            params={
                "X-Plex-Container-Start": offset,
                "X-Plex-Container-Size": limit,
            },
        )
        container = data.get("MediaContainer", {})
        items = container.get("Metadata") or []
        logger.debug(
            f"[plex] Section {library_id}: fetched {len(items)} items at offset {offset} "
            f"(server total {container.get('totalSize')})"
        )
        return [self._normalize_item(item) for item in items]

    def _normalize_item(self, item: dict) -> Dict[str, Any]:
        return {
            "external_id": str(item.get("ratingKey", "")),
            "title": item.get("title"),
            "year": item.get("year"),
            "media_type": "tv" if item.get("type") == "show" else "movie",
            "genres": _tags(item, "Genre"),
            "tags": _tags(item, "Label"),
            "collections": _tags(item, "Collection"),
            "studio": item.get("studio"),
            "content_rating": item.get("contentRating"),
            **parse_guids(item),
            "metadata": {
                "original_title": item.get("originalTitle"),
                "rating": item.get("rating"),
                "summary": item.get("summary"),
                "thumb": item.get("thumb"),
                "added_at": item.get("addedAt"),
            },
        }

    async def get_collections(self, library_id: str) -> List[Dict[str, Any]]:
        data = await self._get_json(f"/library/sections/{library_id}/collections")
        items = data.get("MediaContainer", {}).get("Metadata") or []
        return [
            {
                "external_id": str(item.get("ratingKey", "")),
                "name": item.get("title", ""),
                "item_count": int(item.get("childCount") or 0),
                "metadata": {"summary": item.get("summary"), "thumb": item.get("thumb")},
            }
            for item in items
        ]
