"""
Unit tests for the pattern analyzer.
"""
import pytest

from exceptions import NotFoundError, ValidationError
from models import Rule
from pattern_analyzer import (
    analyze_and_save,
    analyze_library,
    calculate_match_percentage,
    create_rule_from_patterns,
    dismiss_suggestions,
    extract_array_pattern,
    extract_patterns,
    extract_scalar_pattern,
    get_suggestions,
    item_matches_pattern,
    save_suggestions,
)
from rule_engine import project_item
from tests.fixtures.factories import create_catalog_item, create_library


def _items(*specs):
    return [project_item(spec, require_identity=False) for spec in specs]


class TestExtractScalarPattern:
    """Tests for single-valued field patterns."""

    def test_single_value_uses_equals(self):
        items = _items({"studio": "A24"}, {"studio": "A24"}, {})
        pattern = extract_scalar_pattern(items, "studio")

        assert pattern["operator"] == "equals"
        assert pattern["values"] == ["A24"]
        assert pattern["match_count"] == 2
        assert pattern["total_count"] == 3
        assert pattern["match_percentage"] == 67

    def test_several_values_use_is_one_of(self):
        items = _items({"content_rating": "R"}, {"content_rating": "PG"}, {"content_rating": "R"})
        pattern = extract_scalar_pattern(items, "content_rating")

        assert pattern["operator"] == "is_one_of"
        assert pattern["values"] == ["R", "PG"]
        assert pattern["value_counts"] == {"R": 2, "PG": 1}
        assert pattern["match_percentage"] == 100
        assert pattern["pre_selected"] is True
        assert pattern["confidence"] == 100

    def test_no_values_means_no_pattern(self):
        assert extract_scalar_pattern(_items({}, {}), "studio") is None


class TestExtractArrayPattern:
    """Tests for multi-valued field patterns."""

    def test_rare_values_dropped(self):
        # 20 items: Drama on all, Horror on 3 (15%), Western on 2 (10%)
        specs = [{"genres": ["Drama"]} for _ in range(20)]
        for i in range(3):
            specs[i]["genres"] = ["Drama", "Horror"]
        specs[3]["genres"] = ["Drama", "Western"]
        specs[4]["genres"] = ["Drama", "Western"]

        pattern = extract_array_pattern(_items(*specs), "genres")

        assert pattern["values"] == ["Drama", "Horror"]
        assert "Western" not in pattern["value_counts"]
        assert pattern["match_percentage"] == 100

    def test_value_counted_once_per_item(self):
        pattern = extract_array_pattern(_items({"tags": ["4k", "4k"]}, {"tags": []}), "tags")
        assert pattern["value_counts"] == {"4k": 1}
        assert pattern["match_percentage"] == 50

    def test_nothing_frequent_means_no_pattern(self):
        specs = [{"genres": [f"G{i}"]} for i in range(10)]
        assert extract_array_pattern(_items(*specs), "genres", threshold=0.2) is None

    def test_ties_sorted_by_value(self):
        pattern = extract_array_pattern(_items({"genres": ["b", "a"]}, {"genres": ["a", "b"]}), "genres")
        assert pattern["values"] == ["a", "b"]


class TestExtractPatterns:
    """Tests for the combined extractor."""

    def test_sorted_by_percentage(self):
        items = _items(
            {"genres": ["Comedy"], "content_rating": "PG", "studio": "Pixar"},
            {"genres": ["Comedy"], "content_rating": "G"},
            {"genres": ["Comedy"]},
            {"genres": ["Comedy"], "collections": ["Toy Story"]},
        )
        patterns = extract_patterns(items)

        assert [p["field"] for p in patterns] == ["genres", "content_rating", "collections", "studio"]
        assert [p["match_percentage"] for p in patterns] == [100, 50, 25, 25]

    def test_collections_use_contains(self):
        items = _items({"collections": ["Marvel"]}, {"collections": ["Marvel"]})
        (pattern,) = extract_patterns(items)
        assert pattern["operator"] == "contains"

    def test_empty_library(self):
        assert extract_patterns([]) == []

    def test_pre_selection_threshold(self):
        # 4 of 5 rated -> 80% pre-selected; 3 of 5 studios -> 60% not
        items = _items(
            {"content_rating": "R", "studio": "A24"},
            {"content_rating": "R", "studio": "A24"},
            {"content_rating": "R", "studio": "A24"},
            {"content_rating": "R"},
            {},
        )
        by_field = {p["field"]: p for p in extract_patterns(items)}
        assert by_field["content_rating"]["pre_selected"] is True
        assert by_field["studio"]["pre_selected"] is False


class TestPatternMatching:
    """Patterns evaluate with rule engine semantics."""

    def test_item_matches_pattern(self):
        pattern = {"field": "genres", "operator": "is_one_of", "values": ["Horror", "Thriller"]}
        horror, comedy = _items({"genres": ["Horror"]}, {"genres": ["Comedy"]})
        assert item_matches_pattern(horror, pattern)
        assert not item_matches_pattern(comedy, pattern)

    def test_calculate_match_percentage_rounds_half_up(self):
        pattern = {"field": "studio", "operator": "equals", "values": ["A24"]}
        items = _items({"studio": "A24"}, {"studio": "Pixar"}, {"studio": "Pixar"}, {"studio": "Pixar"},
                       {"studio": "Pixar"}, {"studio": "Pixar"}, {"studio": "Pixar"}, {"studio": "Pixar"})
        # 1/8 = 12.5% -> 13
        assert calculate_match_percentage(items, pattern) == 13

    def test_malformed_pattern_raises(self):
        with pytest.raises(ValidationError):
            item_matches_pattern(_items({})[0], {"field": "studio", "operator": "resembles", "values": ["x"]})


class TestAnalyzeLibrary:
    """Tests for analyze_library() and suggestion persistence."""

    def test_missing_library(self, test_session):
        with pytest.raises(NotFoundError):
            analyze_library(test_session, 999)

    def test_analyzes_mirrored_items(self, test_session):
        library = create_library(test_session)
        for _ in range(4):
            create_catalog_item(test_session, library, genres=["Anime"], content_rating="TV-14")

        result = analyze_library(test_session, library.id)

        assert result["total_items"] == 4
        assert {p["field"] for p in result["patterns"]} == {"genres", "content_rating"}
        assert result["analyzed_at"].endswith("Z")

    def test_content_type_filter(self, test_session):
        library = create_library(test_session)
        create_catalog_item(test_session, library, studio="Netflix", metadata={"content_analysis": {"type": "standup"}})
        create_catalog_item(test_session, library, studio="HBO")

        result = analyze_library(test_session, library.id, content_type="standup")

        assert result["total_items"] == 1
        assert result["patterns"][0]["values"] == ["Netflix"]

    def test_content_type_without_matches_uses_all_items(self, test_session):
        library = create_library(test_session)
        create_catalog_item(test_session, library, studio="HBO")
        create_catalog_item(test_session, library, studio="HBO")

        result = analyze_library(test_session, library.id, content_type="holiday")

        assert result["total_items"] == 2

    def test_analyze_and_save(self, test_session):
        library = create_library(test_session)
        create_catalog_item(test_session, library, genres=["Drama"])

        summary = analyze_and_save(test_session, library.id)
        stored = get_suggestions(test_session, library.id)

        assert summary == {"library_id": library.id, "patterns_detected": 1}
        assert stored["pending_count"] == 1
        assert stored["detected_patterns"][0]["field"] == "genres"

    def test_save_overwrites_and_clears_dismissal(self, test_session):
        library = create_library(test_session)
        save_suggestions(test_session, library.id, [{"field": "studio"}])
        dismiss_suggestions(test_session, library.id)

        save_suggestions(test_session, library.id, [])
        stored = get_suggestions(test_session, library.id)

        assert stored["dismissed"] is False
        assert stored["detected_patterns"] == []

    def test_dismiss_without_suggestions(self, test_session):
        library = create_library(test_session)
        with pytest.raises(NotFoundError):
            dismiss_suggestions(test_session, library.id)


class TestCreateRuleFromPatterns:
    """Tests for turning suggestions into a rule."""

    def _seed(self, session):
        library = create_library(session)
        for i in range(5):
            create_catalog_item(
                session, library,
                genres=["Horror"],
                studio="Blumhouse" if i < 2 else None,
            )
        analyze_and_save(session, library.id)
        return library

    def test_uses_pre_selected_patterns(self, test_session):
        library = self._seed(test_session)

        rule = create_rule_from_patterns(test_session, library.id, "Horror")

        assert rule["criteria"] == [{"field": "genres", "operator": "is_one_of", "value": ["Horror"]}]
        assert rule["generated_by"] == "pattern_analysis"
        assert get_suggestions(test_session, library.id)["pending_count"] == 0

    def test_explicit_fields(self, test_session):
        library = self._seed(test_session)

        rule = create_rule_from_patterns(test_session, library.id, "Blumhouse", fields=["studio"], priority=3)

        assert rule["criteria"] == [{"field": "studio", "operator": "equals", "value": "Blumhouse"}]
        assert rule["priority"] == 3
        assert test_session.query(Rule).count() == 1

    def test_nothing_selected(self, test_session):
        library = self._seed(test_session)
        with pytest.raises(ValidationError):
            create_rule_from_patterns(test_session, library.id, "Empty", fields=["tags"])

    def test_no_suggestions(self, test_session):
        library = create_library(test_session)
        with pytest.raises(NotFoundError):
            create_rule_from_patterns(test_session, library.id, "x")
