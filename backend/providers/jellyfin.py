"""
Jellyfin catalog adapter.

Items are read from /Items with StartIndex/Limit paging, scoped to the
library by ParentId. Collections are BoxSet items in the same library;
an item's collections are the BoxSets listing it as a child, looked up
once per library for the lifetime of the adapter.
"""
import logging
from typing import Any, Dict, List, Optional

from exceptions import ProviderError
from providers.base import CatalogProvider, register_provider

logger = logging.getLogger(__name__)

ITEM_FIELDS = "ProviderIds,Genres,Tags,Studios,Overview,OriginalTitle,DateCreated"


def parse_provider_ids(item: dict) -> Dict[str, Any]:
    """Extract tmdb/imdb/tvdb ids from a ProviderIds mapping."""
    provider_ids = item.get("ProviderIds") or {}
    return {
        "tmdb_id": provider_ids.get("Tmdb") or None,
        "imdb_id": provider_ids.get("Imdb") or None,
        "tvdb_id": provider_ids.get("Tvdb") or None,
    }


@register_provider
class JellyfinProvider(CatalogProvider):
    """Adapter for Jellyfin servers."""

    provider_type = "jellyfin"
    display_name = "Jellyfin"
    auth_header = "X-Emby-Token"
    health_path = "/System/Info"

    def __init__(self, url: str, credential: str, timeout: Optional[float] = None):
        super().__init__(url, credential, timeout)
        self._membership: Dict[str, Dict[str, List[str]]] = {}

    def parse_server_info(self, data: Any) -> Dict[str, Any]:
        data = data or {}
        return {
            "server_name": data.get("ServerName"),
            "version": data.get("Version"),
            "id": data.get("Id"),
        }

    async def get_libraries(self) -> List[Dict[str, Any]]:
        folders = await self._get_json("/Library/VirtualFolders")
        return [
            {
                "external_id": str(folder.get("ItemId")),
                "name": folder.get("Name", ""),
                "media_type": "tv" if folder.get("CollectionType") == "tvshows" else "movie",
            }
            for folder in folders or []
            if folder.get("CollectionType") in ("movies", "tvshows")
        ]

    async def get_library_items(self, library_id: str, offset: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        membership = await self._collection_membership(library_id)
        data = await self._get_json(
            "/Items",
            params={
                "ParentId": library_id,
                "Recursive": "true",
                "IncludeItemTypes": "Movie,Series",
                "StartIndex": offset,
                "Limit": limit,
                "Fields": ITEM_FIELDS,
            },
        )
        items = data.get("Items") or []
        logger.debug(
            f"[{self.provider_type}] Library {library_id}: fetched {len(items)} items at offset {offset} "
            f"(server total {data.get('TotalRecordCount')})"
        )
        return [self._normalize_item(item, membership) for item in items]

    def _normalize_item(self, item: dict, membership: Optional[Dict[str, List[str]]] = None) -> Dict[str, Any]:
        studios = item.get("Studios") or []
        item_id = str(item.get("Id", ""))
        return {
            "external_id": item_id,
            "title": item.get("Name"),
            "year": item.get("ProductionYear"),
            "media_type": "tv" if item.get("Type") == "Series" else "movie",
            "genres": list(item.get("Genres") or []),
            "tags": list(item.get("Tags") or []),
            "collections": list((membership or {}).get(item_id, [])),
            "studio": studios[0].get("Name") if studios else None,
            "content_rating": item.get("OfficialRating"),
            **parse_provider_ids(item),
            "metadata": {
                "original_title": item.get("OriginalTitle"),
                "rating": item.get("CommunityRating"),
                "summary": item.get("Overview"),
                "added_at": item.get("DateCreated"),
            },
        }

    async def _get_box_sets(self, library_id: str) -> List[dict]:
        data = await self._get_json(
            "/Items",
            params={
                "ParentId": library_id,
                "IncludeItemTypes": "BoxSet",
                "Recursive": "true",
            },
        )
        return data.get("Items") or []

    async def _collection_membership(self, library_id: str) -> Dict[str, List[str]]:
        """Map item id to the names of the BoxSets that contain it."""
        if library_id in self._membership:
            return self._membership[library_id]
        membership: Dict[str, List[str]] = {}
        try:
            for box_set in await self._get_box_sets(library_id):
                children = await self._get_json(
                    "/Items",
                    params={"ParentId": box_set.get("Id"), "IncludeItemTypes": "Movie,Series"},
                )
                for child in children.get("Items") or []:
                    membership.setdefault(str(child.get("Id", "")), []).append(box_set.get("Name", ""))
        except ProviderError as e:
            # Membership is best-effort; items still sync without it
            logger.warning(f"[{self.provider_type}] Collection membership for library {library_id} unavailable: {e}")
            membership = {}
        self._membership[library_id] = membership
        return membership

    async def get_collections(self, library_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "external_id": str(item.get("Id", "")),
                "name": item.get("Name", ""),
                "item_count": int(item.get("ChildCount") or 0),
                "metadata": {},
            }
            for item in await self._get_box_sets(library_id)
        ]
