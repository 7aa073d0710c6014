"""
Pattern Analyzer.

Reads a library's mirrored items and derives frequency-based filter
suggestions ("patterns") for the rule editor:
- Scalar fields (content rating, studio): share of items with any value
- Array fields (genres, tags): values that recur in at least 15% of items
- Collections: values that recur in at least 20% of items

Patterns are statistics over authoritative catalog data, so confidence is
always 100. Matching a pattern against an item goes through the Rule
Engine's criterion semantics, so a suggestion accepted as a rule selects
the same items the analyzer counted.
"""
import json
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from clock import isoformat_z, utcnow
from exceptions import NotFoundError, ValidationError
from models import CatalogItem, Library, PatternSuggestion, Rule
from rule_engine import ProjectedItem, matches_criteria, normalize_criteria, project_catalog_item

logger = logging.getLogger(__name__)

# Patterns at or above this share are pre-selected in the editor
PRE_SELECT_THRESHOLD = 80

# Minimum share of items a value must appear in to be suggested
ARRAY_VALUE_THRESHOLD = 0.15
COLLECTION_VALUE_THRESHOLD = 0.20

PATTERN_CONFIDENCE = 100


def _round_percentage(count: int, total: int) -> int:
    """round(100 * count / total), halves rounded up."""
    if total <= 0:
        return 0
    return (200 * count + total) // (2 * total)


def _min_count(total: int, threshold: float) -> int:
    """ceil(total * threshold) computed without float drift."""
    numerator = round(threshold * 100)
    return -(-total * numerator // 100)


def _build_pattern(field: str, operator: str, value_counts: Counter, match_count: int, total: int) -> dict:
    ordered = sorted(value_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    match_percentage = _round_percentage(match_count, total)
    return {
        "field": field,
        "operator": operator,
        "values": [value for value, _ in ordered],
        "value_counts": {value: count for value, count in ordered},
        "match_count": match_count,
        "total_count": total,
        "match_percentage": match_percentage,
        "pre_selected": match_percentage >= PRE_SELECT_THRESHOLD,
        "confidence": PATTERN_CONFIDENCE,
    }


def extract_scalar_pattern(items: List[ProjectedItem], field: str) -> Optional[dict]:
    """Pattern for a single-valued field, or None if no item has a value."""
    counts: Counter = Counter()
    for item in items:
        value = getattr(item, field)
        if value is not None and value != "":
            counts[value] += 1
    if not counts:
        return None
    operator = "equals" if len(counts) == 1 else "is_one_of"
    return _build_pattern(field, operator, counts, sum(counts.values()), len(items))


def extract_array_pattern(
    items: List[ProjectedItem],
    field: str,
    threshold: float = ARRAY_VALUE_THRESHOLD,
    operator: str = "is_one_of",
) -> Optional[dict]:
    """
    Pattern for a multi-valued field.

    Only values present on at least ceil(total * threshold) items survive;
    the pattern is dropped when none do.
    """
    counts: Counter = Counter()
    with_values = 0
    for item in items:
        values = getattr(item, field) or []
        if values:
            with_values += 1
        # An item counts once per distinct value
        counts.update(set(values))

    minimum = _min_count(len(items), threshold)
    frequent = Counter({value: count for value, count in counts.items() if count >= minimum})
    if not frequent:
        return None
    return _build_pattern(field, operator, frequent, with_values, len(items))


def extract_patterns(items: List[ProjectedItem]) -> List[dict]:
    """Run every field extractor and sort by match percentage, highest first."""
    if not items:
        return []

    candidates = [
        extract_scalar_pattern(items, "content_rating"),
        extract_array_pattern(items, "genres"),
        extract_array_pattern(items, "collections", COLLECTION_VALUE_THRESHOLD, operator="contains"),
        extract_array_pattern(items, "tags"),
        extract_scalar_pattern(items, "studio"),
    ]
    patterns = [p for p in candidates if p is not None]
    patterns.sort(key=lambda p: p["match_percentage"], reverse=True)
    return patterns


def pattern_to_criterion(pattern: dict) -> dict:
    """Express a pattern as a Rule Engine criterion."""
    values = list(pattern.get("values") or [])
    operator = pattern.get("operator")
    if operator == "equals":
        value = values[0] if values else None
    else:
        value = values
    return {"field": pattern.get("field"), "operator": operator, "value": value}


def item_matches_pattern(item, pattern: dict) -> bool:
    """
    Check one item against a pattern.

    Raises ValidationError for a malformed pattern.
    """
    return matches_criteria([pattern_to_criterion(pattern)], item)


def calculate_match_percentage(items: List[ProjectedItem], pattern: dict) -> int:
    """Share of items the pattern selects, as a rounded percentage."""
    if not items:
        return 0
    matches = sum(1 for item in items if item_matches_pattern(item, pattern))
    return _round_percentage(matches, len(items))


def _load_items(session, library_id: int) -> List[ProjectedItem]:
    items = []
    rows = session.query(CatalogItem).filter(CatalogItem.library_id == library_id).order_by(CatalogItem.id)
    for row in rows:
        try:
            items.append(project_catalog_item(row))
        except Exception as e:
            logger.warning(f"[PATTERNS] Skipping item {row.external_id} with malformed metadata: {e}")
    return items


def analyze_library(session, library_id: int, content_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Analyze every mirrored item in a library.

    Args:
        session: Database session
        library_id: Local library ID
        content_type: Only analyze items whose derived content type matches
            (falls back to all items when none do)

    Raises:
        NotFoundError: Library does not exist
    """
    library = session.query(Library).filter(Library.id == library_id).first()
    if not library:
        raise NotFoundError(f"Library {library_id} not found")

    items = _load_items(session, library_id)
    if content_type:
        filtered = [
            item for item in items
            if (item.metadata.get("content_analysis") or {}).get("type") == content_type
        ]
        if filtered:
            items = filtered
        else:
            logger.info(
                f"[PATTERNS] No items tagged '{content_type}' in library {library_id}, analyzing all items"
            )

    patterns = extract_patterns(items)
    logger.info(f"[PATTERNS] Library {library.name}: {len(patterns)} patterns from {len(items)} items")
    return {
        "library_id": library_id,
        "total_items": len(items),
        "patterns": patterns,
        "analyzed_at": isoformat_z(utcnow()),
        "content_type": content_type,
    }


def save_suggestions(session, library_id: int, patterns: List[dict], pending_count: Optional[int] = None) -> PatternSuggestion:
    """Overwrite the library's suggestion row and clear any dismissal."""
    suggestion = session.query(PatternSuggestion).filter(PatternSuggestion.library_id == library_id).first()
    if suggestion is None:
        suggestion = PatternSuggestion(library_id=library_id)
        session.add(suggestion)
    suggestion.detected_patterns = json.dumps(patterns)
    suggestion.pending_count = len(patterns) if pending_count is None else pending_count
    suggestion.last_analyzed = utcnow()
    suggestion.dismissed = False
    session.commit()
    return suggestion


def get_suggestions(session, library_id: int) -> Optional[dict]:
    suggestion = session.query(PatternSuggestion).filter(PatternSuggestion.library_id == library_id).first()
    return suggestion.to_dict() if suggestion else None


def dismiss_suggestions(session, library_id: int) -> dict:
    """Hide the current suggestions until the next analysis pass."""
    suggestion = session.query(PatternSuggestion).filter(PatternSuggestion.library_id == library_id).first()
    if not suggestion:
        raise NotFoundError(f"No pattern suggestions for library {library_id}")
    suggestion.dismissed = True
    session.commit()
    return suggestion.to_dict()


def analyze_and_save(session, library_id: int) -> dict:
    """Analyze a library and store the result as its suggestion row."""
    result = analyze_library(session, library_id)
    save_suggestions(session, library_id, result["patterns"])
    return {"library_id": library_id, "patterns_detected": len(result["patterns"])}


def create_rule_from_patterns(
    session,
    library_id: int,
    name: str,
    fields: Optional[List[str]] = None,
    priority: Optional[int] = None,
) -> dict:
    """
    Turn stored suggestions into a Rule.

    Args:
        fields: Pattern fields to include; defaults to the pre-selected ones

    Raises:
        NotFoundError: No suggestions stored for the library
        ValidationError: No pattern was selected
    """
    suggestion = session.query(PatternSuggestion).filter(PatternSuggestion.library_id == library_id).first()
    if not suggestion:
        raise NotFoundError(f"No pattern suggestions for library {library_id}")

    patterns = suggestion.get_patterns()
    if fields is None:
        selected = [p for p in patterns if p.get("pre_selected")]
    else:
        selected = [p for p in patterns if p.get("field") in fields]
    if not selected:
        raise ValidationError("No patterns selected for the rule")

    criteria = [pattern_to_criterion(p) for p in selected]
    normalize_criteria(criteria)

    rule = Rule(
        library_id=library_id,
        name=name,
        description="Generated from detected library patterns",
        priority=priority or 0,
        enabled=True,
        generated_by="pattern_analysis",
    )
    rule.set_criteria(criteria)
    session.add(rule)
    suggestion.pending_count = 0
    session.commit()
    session.refresh(rule)
    logger.info(f"[PATTERNS] Created rule '{name}' for library {library_id} from {len(selected)} patterns")
    return rule.to_dict()
