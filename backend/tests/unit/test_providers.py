"""
Unit tests for the catalog provider adapters.

Media server HTTP traffic is mocked with respx.
"""
import httpx
import pytest
import respx

from exceptions import ProviderError, ValidationError
from providers import (
    EmbyProvider,
    JellyfinProvider,
    PlexProvider,
    create_provider,
    get_provider_class,
    get_provider_types,
)
from providers.plex import parse_guids
from tests.fixtures.mock_providers import make_jellyfin_item, make_plex_metadata


PLEX_URL = "http://plex.test:32400"
JELLYFIN_URL = "http://jellyfin.test:8096"


class TestRegistry:
    """Tests for the provider registry."""

    def test_builtin_types(self):
        types = {t["type"] for t in get_provider_types()}
        assert {"plex", "jellyfin", "emby"} <= types

    def test_unknown_type(self):
        with pytest.raises(ValidationError, match="Unknown provider type"):
            get_provider_class("kodi")

    @pytest.mark.asyncio
    async def test_create_provider(self):
        provider = create_provider("emby", "http://emby.test/", "key", timeout=5)
        try:
            assert isinstance(provider, EmbyProvider)
            assert provider.base_url == "http://emby.test"
            assert provider.timeout == 5
        finally:
            await provider.close()


class TestPlexProvider:
    """Tests for the Plex adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_library_items_page(self):
        route = respx.get(host="plex.test", path="/library/sections/1/all").mock(
            return_value=httpx.Response(200, json={
                "MediaContainer": {"totalSize": 1, "Metadata": [make_plex_metadata("101", title="The Matrix")]}
            })
        )
        async with PlexProvider(PLEX_URL, "plex-token") as provider:
            items = await provider.get_library_items("1", offset=200, limit=100)

        request = route.calls.last.request
        assert request.headers["X-Plex-Token"] == "plex-token"
        assert request.url.params["X-Plex-Container-Start"] == "200"
        assert request.url.params["X-Plex-Container-Size"] == "100"
        (item,) = items
        assert item["external_id"] == "101"
        assert item["title"] == "The Matrix"
        assert item["media_type"] == "movie"
        assert item["genres"] == ["Action", "Sci-Fi"]
        assert item["tags"] == ["favorite"]
        assert item["collections"] == ["Matrix Collection"]
        assert item["content_rating"] == "R"
        assert item["tmdb_id"] == "603"
        assert item["imdb_id"] == "tt0133093"
        assert item["metadata"]["rating"] == 8.7

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_page(self):
        respx.get(host="plex.test", path="/library/sections/1/all").mock(
            return_value=httpx.Response(200, json={"MediaContainer": {"size": 0}})
        )
        async with PlexProvider(PLEX_URL, "t") as provider:
            assert await provider.get_library_items("1") == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_libraries_filtered_to_movies_and_shows(self):
        respx.get(host="plex.test", path="/library/sections").mock(
            return_value=httpx.Response(200, json={"MediaContainer": {"Directory": [
                {"key": "1", "title": "Movies", "type": "movie"},
                {"key": "2", "title": "TV", "type": "show"},
                {"key": "3", "title": "Music", "type": "artist"},
            ]}})
        )
        async with PlexProvider(PLEX_URL, "t") as provider:
            libraries = await provider.get_libraries()

        assert libraries == [
            {"external_id": "1", "name": "Movies", "media_type": "movie"},
            {"external_id": "2", "name": "TV", "media_type": "tv"},
        ]

    @pytest.mark.asyncio
    @respx.mock
    async def test_collections(self):
        respx.get(host="plex.test", path="/library/sections/1/collections").mock(
            return_value=httpx.Response(200, json={"MediaContainer": {"Metadata": [
                {"ratingKey": 900, "title": "Pixar", "childCount": "12"},
            ]}})
        )
        async with PlexProvider(PLEX_URL, "t") as provider:
            (collection,) = await provider.get_collections("1")

        assert collection["external_id"] == "900"
        assert collection["item_count"] == 12

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_ok(self):
        respx.get(host="plex.test", path="/identity").mock(
            return_value=httpx.Response(200, json={"MediaContainer": {"machineIdentifier": "abc", "version": "1.40"}})
        )
        async with PlexProvider(PLEX_URL, "t") as provider:
            result = await provider.test_connection()

        assert result == {"ok": True, "server_info": {"machine_identifier": "abc", "version": "1.40"}}

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_unauthorized(self):
        respx.get(host="plex.test", path="/identity").mock(return_value=httpx.Response(401))
        async with PlexProvider(PLEX_URL, "bad") as provider:
            result = await provider.test_connection()

        assert result["ok"] is False
        assert "401" in result["error"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_page_http_error_raises(self):
        respx.get(host="plex.test", path="/library/sections/1/all").mock(return_value=httpx.Response(503))
        async with PlexProvider(PLEX_URL, "t") as provider:
            with pytest.raises(ProviderError) as exc_info:
                await provider.get_library_items("1")

        assert exc_info.value.provider == "plex"
        assert exc_info.value.details == {"status_code": 503}

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_raises(self):
        respx.get(host="plex.test", path="/library/sections/1/all").mock(side_effect=httpx.ConnectError("refused"))
        async with PlexProvider(PLEX_URL, "t") as provider:
            with pytest.raises(ProviderError, match="failed"):
                await provider.get_library_items("1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json_raises(self):
        respx.get(host="plex.test", path="/library/sections/1/all").mock(
            return_value=httpx.Response(200, content=b"<html>", headers={"Content-Type": "text/html"})
        )
        async with PlexProvider(PLEX_URL, "t") as provider:
            with pytest.raises(ProviderError, match="invalid JSON"):
                await provider.get_library_items("1")

    def test_parse_guids(self):
        assert parse_guids({"Guid": [{"id": "tvdb://81189"}]}) == {
            "tmdb_id": None, "imdb_id": None, "tvdb_id": "81189",
        }


class TestJellyfinProvider:
    """Tests for the Jellyfin and Emby adapters."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_library_items_page(self):
        respx.get(host="jellyfin.test", path="/Items", params={"IncludeItemTypes": "BoxSet"}).mock(
            return_value=httpx.Response(200, json={"Items": []})
        )
        route = respx.get(host="jellyfin.test", path="/Items").mock(
            return_value=httpx.Response(200, json={
                "Items": [make_jellyfin_item("abc", name="Inception")],
                "TotalRecordCount": 1,
            })
        )
        async with JellyfinProvider(JELLYFIN_URL, "api-key") as provider:
            (item,) = await provider.get_library_items("lib1", offset=50, limit=25)

        request = route.calls.last.request
        assert request.headers["X-Emby-Token"] == "api-key"
        assert request.url.params["ParentId"] == "lib1"
        assert request.url.params["StartIndex"] == "50"
        assert request.url.params["Limit"] == "25"
        assert item["external_id"] == "abc"
        assert item["title"] == "Inception"
        assert item["studio"] == "Legendary"
        assert item["content_rating"] == "PG-13"
        assert item["tmdb_id"] == "27205"
        assert item["tvdb_id"] is None
        assert item["metadata"]["rating"] == 8.8

    @pytest.mark.asyncio
    @respx.mock
    async def test_series_map_to_tv(self):
        respx.get(host="jellyfin.test", path="/Items", params={"IncludeItemTypes": "BoxSet"}).mock(
            return_value=httpx.Response(200, json={"Items": []})
        )
        respx.get(host="jellyfin.test", path="/Items").mock(
            return_value=httpx.Response(200, json={"Items": [make_jellyfin_item("s1", Type="Series", Studios=[])]})
        )
        async with JellyfinProvider(JELLYFIN_URL, "k") as provider:
            (item,) = await provider.get_library_items("lib1")

        assert item["media_type"] == "tv"
        assert item["studio"] is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_items_list_their_box_sets(self):
        box_sets = respx.get(host="jellyfin.test", path="/Items", params={"IncludeItemTypes": "BoxSet"}).mock(
            return_value=httpx.Response(200, json={"Items": [{"Id": "bs1", "Name": "Nolan Collection", "ChildCount": 1}]})
        )
        respx.get(host="jellyfin.test", path="/Items", params={"ParentId": "bs1"}).mock(
            return_value=httpx.Response(200, json={"Items": [{"Id": "abc", "Type": "Movie"}]})
        )
        respx.get(host="jellyfin.test", path="/Items").mock(
            return_value=httpx.Response(200, json={
                "Items": [make_jellyfin_item("abc", name="Inception"), make_jellyfin_item("xyz", name="Heat")],
            })
        )
        async with JellyfinProvider(JELLYFIN_URL, "k") as provider:
            first_page = await provider.get_library_items("lib1", offset=0, limit=2)
            await provider.get_library_items("lib1", offset=2, limit=2)

        assert [item["collections"] for item in first_page] == [["Nolan Collection"], []]
        assert box_sets.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_box_set_failure_still_returns_items(self):
        respx.get(host="jellyfin.test", path="/Items", params={"IncludeItemTypes": "BoxSet"}).mock(
            return_value=httpx.Response(500)
        )
        respx.get(host="jellyfin.test", path="/Items").mock(
            return_value=httpx.Response(200, json={"Items": [make_jellyfin_item("abc")]})
        )
        async with JellyfinProvider(JELLYFIN_URL, "k") as provider:
            (item,) = await provider.get_library_items("lib1")

        assert item["external_id"] == "abc"
        assert item["collections"] == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_libraries(self):
        respx.get(host="jellyfin.test", path="/Library/VirtualFolders").mock(
            return_value=httpx.Response(200, json=[
                {"ItemId": "m", "Name": "Movies", "CollectionType": "movies"},
                {"ItemId": "t", "Name": "Shows", "CollectionType": "tvshows"},
                {"ItemId": "b", "Name": "Books", "CollectionType": "books"},
            ])
        )
        async with JellyfinProvider(JELLYFIN_URL, "k") as provider:
            libraries = await provider.get_libraries()

        assert [lib["media_type"] for lib in libraries] == ["movie", "tv"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_emby_uses_same_api(self):
        respx.get(host="emby.test", path="/System/Info").mock(
            return_value=httpx.Response(200, json={"ServerName": "Den", "Version": "4.8", "Id": "x"})
        )
        async with EmbyProvider("http://emby.test", "k") as provider:
            result = await provider.test_connection()

        assert result["ok"] is True
        assert result["server_info"]["server_name"] == "Den"
