"""
Integration tests for the Patterns API endpoints.
"""
import pytest

from tests.fixtures.factories import create_catalog_item, create_library


@pytest.fixture
def anime_library(test_session):
    library = create_library(test_session, name="Anime")
    for i, title in enumerate(["Akira", "Paprika", "Perfect Blue", "Redline"]):
        create_catalog_item(
            test_session, library, title=title, content_rating="R", genres=["Anime"],
            studio="Madhouse" if i == 0 else None,
        )
    return library


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_analyze_saves_suggestions(self, async_client, anime_library):
        response = await async_client.post(f"/api/patterns/libraries/{anime_library.id}/analyze")

        assert response.status_code == 200
        data = response.json()
        assert data["total_items"] == 4
        by_field = {p["field"]: p for p in data["patterns"]}
        assert by_field["content_rating"]["operator"] == "equals"
        assert by_field["content_rating"]["pre_selected"] is True
        assert by_field["studio"]["match_percentage"] == 25
        assert by_field["studio"]["pre_selected"] is False

        response = await async_client.get(f"/api/patterns/libraries/{anime_library.id}/suggestions")
        assert response.status_code == 200
        assert response.json()["pending_count"] == len(data["patterns"])

    @pytest.mark.asyncio
    async def test_analyze_without_saving(self, async_client, anime_library):
        await async_client.post(f"/api/patterns/libraries/{anime_library.id}/analyze?save=false")
        response = await async_client.get(f"/api/patterns/libraries/{anime_library.id}/suggestions")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_analyze_unknown_library(self, async_client):
        response = await async_client.post("/api/patterns/libraries/404/analyze")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"


class TestSuggestions:
    @pytest.mark.asyncio
    async def test_apply_preselected_patterns(self, async_client, anime_library):
        await async_client.post(f"/api/patterns/libraries/{anime_library.id}/analyze")

        response = await async_client.post(
            f"/api/patterns/libraries/{anime_library.id}/apply", json={"name": "anime"}
        )

        assert response.status_code == 200
        rule = response.json()
        assert rule["generated_by"] == "pattern_analysis"
        assert {c["field"] for c in rule["criteria"]} == {"content_rating", "genres"}

        # The generated rule selects every analyzed item
        response = await async_client.post(f"/api/rules/{rule['id']}/test")
        assert response.json()["total"] == 4

        response = await async_client.get(f"/api/patterns/libraries/{anime_library.id}/suggestions")
        assert response.json()["pending_count"] == 0

    @pytest.mark.asyncio
    async def test_apply_nothing_selected(self, async_client, anime_library):
        await async_client.post(f"/api/patterns/libraries/{anime_library.id}/analyze")
        response = await async_client.post(
            f"/api/patterns/libraries/{anime_library.id}/apply", json={"name": "x", "fields": ["tags"]}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_dismiss(self, async_client, anime_library):
        response = await async_client.post(f"/api/patterns/libraries/{anime_library.id}/dismiss")
        assert response.status_code == 404

        await async_client.post(f"/api/patterns/libraries/{anime_library.id}/analyze")
        response = await async_client.post(f"/api/patterns/libraries/{anime_library.id}/dismiss")
        assert response.json()["dismissed"] is True
