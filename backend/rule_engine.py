"""
Rule Engine.

Evaluates classification criteria over mirrored catalog items in two ways:
- Pushdown: compile an ordered criteria list into one conjunctive SQL filter
  scoped to a library (used by rule preview and testing)
- In-process: evaluate the same criteria, or the compact mapping form
  {field: scalar | [values] | {min, max}}, against one item's metadata
  (used for request-time routing)

Both surfaces share one field catalogue and one operator table, and they
must select exactly the same items. Text comparisons (contains, equals,
is_one_of) fold ASCII case only, because that is what SQLite's LIKE and
lower() do.

A typed projection step (project_item) sits at the boundary: raw provider
or request metadata is validated and normalized eagerly, so malformed data
fails fast instead of silently mismatching.
"""
import json
import logging
import math
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from exceptions import ValidationError

logger = logging.getLogger(__name__)

TEXT = "text"
NUMBER = "number"
ARRAY = "array"

OPERATORS = ("contains", "equals", "greater_than", "less_than", "is_one_of", "between")

# Operators each field kind accepts
_KIND_OPERATORS = {
    TEXT: {"contains", "equals", "is_one_of"},
    NUMBER: {"equals", "greater_than", "less_than", "is_one_of", "between"},
    ARRAY: {"contains", "equals", "is_one_of"},
}

_ASCII_FOLD = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


@dataclass(frozen=True)
class FieldSpec:
    """Where a rule field lives and how it compares."""
    name: str
    kind: str
    column: Optional[str] = None  # catalog_items column
    path: Optional[str] = None  # JSON path inside the metadata blob

    @property
    def path_keys(self) -> List[str]:
        return self.path[2:].split(".") if self.path else []

    def sql_expression(self) -> str:
        if self.column:
            return f"catalog_items.{self.column}"
        return f"json_extract(catalog_items.metadata, '{self.path}')"


FIELD_SPECS: Dict[str, FieldSpec] = {
    "title": FieldSpec("title", TEXT, column="title"),
    "studio": FieldSpec("studio", TEXT, column="studio"),
    "content_rating": FieldSpec("content_rating", TEXT, column="content_rating"),
    "media_type": FieldSpec("media_type", TEXT, column="media_type"),
    "year": FieldSpec("year", NUMBER, column="year"),
    "genres": FieldSpec("genres", ARRAY, column="genres"),
    "tags": FieldSpec("tags", ARRAY, column="tags"),
    "collections": FieldSpec("collections", ARRAY, column="collections"),
    # Derived fields inside the metadata blob
    "content_type": FieldSpec("content_type", TEXT, path="$.content_analysis.type"),
    "original_language": FieldSpec("original_language", TEXT, path="$.original_language"),
    "rating": FieldSpec("rating", NUMBER, path="$.rating"),
}

FIELD_ALIASES = {
    "certification": "content_rating",
    "keywords": "tags",
}

# Top-level item attributes; anything else in a flat request mapping is blob data
ITEM_FIELDS = (
    "external_id", "title", "year", "media_type", "genres", "tags", "collections",
    "studio", "content_rating", "tmdb_id", "imdb_id", "tvdb_id",
)


def resolve_field(name: str) -> FieldSpec:
    """Look up a field by name or alias, raising ValidationError if unknown."""
    canonical = FIELD_ALIASES.get(name, name)
    spec = FIELD_SPECS.get(canonical)
    if spec is None:
        raise ValidationError(
            f"Unknown rule field: {name}",
            details={"available": sorted(set(FIELD_SPECS) | set(FIELD_ALIASES))},
        )
    return spec


def fold_case(value: str) -> str:
    """Lowercase ASCII letters only, mirroring SQLite LIKE."""
    return value.translate(_ASCII_FOLD)


# =============================================================================
# Value coercion
# =============================================================================

def coerce_number(value: Any, label: str = "value") -> Union[int, float]:
    """
    Coerce a bound value to a number.

    Integral strings bind as int ("2000" -> 2000), other numeric strings as
    float. Booleans and non-numeric strings are rejected.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Expected a number for {label}, got a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"Expected a finite number for {label}")
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return coerce_number(float(text), label)
        except ValueError:
            raise ValidationError(f"Expected a number for {label}, got '{value}'")
    raise ValidationError(f"Expected a number for {label}, got {type(value).__name__}")


def _coerce_text(value: Any, label: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValidationError(f"Expected text for {label}, got {type(value).__name__}")
    return value if isinstance(value, str) else str(value)


def _coerce_scalar(kind: str, value: Any, label: str):
    if kind == NUMBER:
        return coerce_number(value, label)
    return _coerce_text(value, label)


# =============================================================================
# Typed projection
# =============================================================================

@dataclass
class ProjectedItem:
    """Validated, normalized view of one catalog item or request."""
    external_id: Optional[str] = None
    title: Optional[str] = None
    year: Optional[int] = None
    media_type: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    collections: List[str] = field(default_factory=list)
    studio: Optional[str] = None
    content_rating: Optional[str] = None
    tmdb_id: Optional[str] = None
    imdb_id: Optional[str] = None
    tvdb_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def value_of(self, spec: FieldSpec):
        """Return the item's value for a field, or None/[] when absent."""
        if spec.column:
            return getattr(self, spec.column)
        node: Any = self.metadata
        for key in spec.path_keys:
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return node

    def to_row(self) -> Dict[str, Any]:
        """Column values for the catalog_items table."""
        return {
            "external_id": self.external_id,
            "title": self.title,
            "year": self.year,
            "media_type": self.media_type,
            "genres": json.dumps(self.genres),
            "tags": json.dumps(self.tags),
            "collections": json.dumps(self.collections),
            "studio": self.studio,
            "content_rating": self.content_rating,
            "tmdb_id": self.tmdb_id,
            "imdb_id": self.imdb_id,
            "tvdb_id": self.tvdb_id,
            "metadata": json.dumps(self.metadata, sort_keys=True, default=str),
        }


def _optional_text(data: Mapping, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return _coerce_text(value, key)


def _string_list(data: Mapping, key: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"Expected a list for {key}, got {type(value).__name__}")
    result = []
    for entry in value:
        if entry is None or entry == "":
            continue
        result.append(_coerce_text(entry, key))
    return result


def _project_blob(blob: Any) -> Dict[str, Any]:
    """Validate the derived paths rule fields read from the metadata blob."""
    if blob is None:
        return {}
    if not isinstance(blob, dict):
        raise ValidationError(f"Expected an object for metadata, got {type(blob).__name__}")
    normalized = dict(blob)

    analysis = normalized.get("content_analysis")
    if analysis is not None:
        if not isinstance(analysis, dict):
            raise ValidationError("metadata.content_analysis must be an object")
        if analysis.get("type") is not None:
            analysis = dict(analysis)
            analysis["type"] = _coerce_text(analysis["type"], "metadata.content_analysis.type")
            normalized["content_analysis"] = analysis

    if normalized.get("original_language") is not None:
        normalized["original_language"] = _coerce_text(
            normalized["original_language"], "metadata.original_language"
        )

    if normalized.get("rating") is not None:
        normalized["rating"] = coerce_number(normalized["rating"], "metadata.rating")

    return normalized


def project_item(data: Mapping, require_identity: bool = True) -> ProjectedItem:
    """
    Validate and normalize raw item data.

    Accepts the adapter item shape (with a nested "metadata" object) or a
    flat request mapping, in which case keys other than the item fields
    form the metadata blob.

    Args:
        data: Raw item or request mapping
        require_identity: Require external_id, title and media_type (sync ingest)

    Raises:
        ValidationError: If a field or derived metadata path is malformed
    """
    if not isinstance(data, Mapping):
        raise ValidationError(f"Expected an object for item, got {type(data).__name__}")

    if "metadata" in data:
        blob = data.get("metadata")
    else:
        blob = {k: v for k, v in data.items() if k not in ITEM_FIELDS}

    item = ProjectedItem(
        external_id=_optional_text(data, "external_id"),
        title=_optional_text(data, "title"),
        media_type=_optional_text(data, "media_type"),
        genres=_string_list(data, "genres"),
        tags=_string_list(data, "tags"),
        collections=_string_list(data, "collections"),
        studio=_optional_text(data, "studio"),
        content_rating=_optional_text(data, "content_rating"),
        tmdb_id=_optional_text(data, "tmdb_id"),
        imdb_id=_optional_text(data, "imdb_id"),
        tvdb_id=_optional_text(data, "tvdb_id"),
        metadata=_project_blob(blob),
    )

    year = data.get("year")
    if year is not None and year != "":
        year = coerce_number(year, "year")
        if not isinstance(year, int):
            raise ValidationError(f"Expected an integer year, got {data.get('year')}")
        item.year = year

    if require_identity:
        for key in ("external_id", "title", "media_type"):
            if not getattr(item, key):
                raise ValidationError(f"Item is missing required field '{key}'")

    return item


def project_catalog_item(row) -> ProjectedItem:
    """Project a mirrored CatalogItem row."""
    return project_item({
        "external_id": row.external_id,
        "title": row.title,
        "year": row.year,
        "media_type": row.media_type,
        "genres": row.get_genres(),
        "tags": row.get_tags(),
        "collections": row.get_collections(),
        "studio": row.studio,
        "content_rating": row.content_rating,
        "tmdb_id": row.tmdb_id,
        "imdb_id": row.imdb_id,
        "tvdb_id": row.tvdb_id,
        "metadata": row.get_metadata(),
    }, require_identity=False)


# =============================================================================
# Criteria
# =============================================================================

@dataclass
class Criterion:
    """One validated {field, operator, value} triple."""
    field: str
    operator: str
    value: Any
    spec: FieldSpec

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


def _normalize_value(spec: FieldSpec, operator: str, value: Any, label: str):
    if operator == "contains":
        values = value if isinstance(value, (list, tuple)) else [value]
        needles = [_coerce_text(v, label) for v in values]
        if not needles or any(n == "" for n in needles):
            raise ValidationError(f"Empty value for {label}")
        return needles[0] if len(needles) == 1 else needles

    if operator == "is_one_of":
        values = value if isinstance(value, (list, tuple)) else [value]
        if not values:
            raise ValidationError(f"Empty value list for {label}")
        return [_coerce_scalar(spec.kind, v, label) for v in values]

    if operator == "between":
        if not isinstance(value, Mapping) or not ({"min", "max"} & set(value)):
            raise ValidationError(f"{label} expects an object with 'min' and/or 'max'")
        bounds = {}
        for key in ("min", "max"):
            if value.get(key) is not None:
                bounds[key] = coerce_number(value[key], f"{label}.{key}")
        if not bounds:
            raise ValidationError(f"Empty range for {label}")
        if "min" in bounds and "max" in bounds and bounds["min"] > bounds["max"]:
            raise ValidationError(f"Range minimum exceeds maximum for {label}")
        return bounds

    # equals, greater_than, less_than take one scalar
    if value is None or value == "" or isinstance(value, (list, tuple, dict)):
        raise ValidationError(f"{label} expects a single non-empty value")
    if operator in ("greater_than", "less_than"):
        return coerce_number(value, label)
    return _coerce_scalar(spec.kind, value, label)


def normalize_criterion(raw: Any, index: int = 0) -> Criterion:
    """Validate one raw criterion dict."""
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Criterion {index + 1} must be an object")
    field_name = raw.get("field")
    operator = raw.get("operator")
    if not field_name or not operator:
        raise ValidationError(f"Criterion {index + 1} requires 'field' and 'operator'")
    if operator not in OPERATORS:
        raise ValidationError(
            f"Unknown operator: {operator}", details={"available": list(OPERATORS)}
        )
    spec = resolve_field(field_name)
    if operator not in _KIND_OPERATORS[spec.kind]:
        raise ValidationError(
            f"Operator '{operator}' is not supported for {spec.kind} field '{field_name}'"
        )
    value = _normalize_value(spec, operator, raw.get("value"), f"criterion {index + 1} ({field_name})")
    return Criterion(field=field_name, operator=operator, value=value, spec=spec)


def normalize_criteria(raw_criteria: Any) -> List[Criterion]:
    """Validate an ordered criteria list."""
    if not isinstance(raw_criteria, (list, tuple)):
        raise ValidationError("Criteria must be a list")
    return [normalize_criterion(raw, i) for i, raw in enumerate(raw_criteria)]


def criteria_from_mapping(rule: Mapping) -> List[dict]:
    """
    Convert the compact mapping form into criteria.

    scalar -> equals, list -> is_one_of, {min, max} -> between.
    """
    criteria = []
    for field_name, value in rule.items():
        if isinstance(value, Mapping):
            operator = "between"
        elif isinstance(value, (list, tuple)):
            operator = "is_one_of"
        else:
            operator = "equals"
        criteria.append({"field": field_name, "operator": operator, "value": value})
    return criteria


# =============================================================================
# Pushdown compilation
# =============================================================================

@dataclass
class CompiledQuery:
    """A conjunctive WHERE clause with named parameters p1..pN in bind order."""
    where_clause: str
    params: Dict[str, Any]

    @property
    def positional_params(self) -> List[Any]:
        return list(self.params.values())

    @property
    def sql(self) -> str:
        return f"SELECT catalog_items.* FROM catalog_items WHERE {self.where_clause}"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards with a backslash."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class _ParamBinder:
    def __init__(self):
        self.params: Dict[str, Any] = {}

    def bind(self, value: Any) -> str:
        name = f"p{len(self.params) + 1}"
        self.params[name] = value
        return f":{name}"


def _compile_criterion(criterion: Criterion, binder: _ParamBinder) -> str:
    spec = criterion.spec
    op = criterion.operator
    value = criterion.value

    if spec.kind == ARRAY:
        element = "je.value"
        source = f"json_each({spec.sql_expression()}) AS je"
    else:
        element = spec.sql_expression()
        source = None

    if op == "contains":
        needles = value if isinstance(value, list) else [value]
        parts = [f"{element} LIKE {binder.bind('%' + escape_like(n) + '%')} ESCAPE '\\'" for n in needles]
        predicate = parts[0] if len(parts) == 1 else "(" + " OR ".join(parts) + ")"
    elif op == "equals" and spec.kind != NUMBER:
        predicate = f"lower({element}) = lower({binder.bind(value)})"
    elif op == "equals":
        predicate = f"{element} = {binder.bind(value)}"
    elif op == "greater_than":
        predicate = f"{element} > {binder.bind(value)}"
    elif op == "less_than":
        predicate = f"{element} < {binder.bind(value)}"
    elif op == "is_one_of" and spec.kind != NUMBER:
        predicate = f"lower({element}) IN (SELECT lower(value) FROM json_each({binder.bind(json.dumps(value))}))"
    elif op == "is_one_of":
        predicate = f"{element} IN (SELECT value FROM json_each({binder.bind(json.dumps(value))}))"
    elif op == "between":
        parts = []
        if "min" in value:
            parts.append(f"{element} >= {binder.bind(value['min'])}")
        if "max" in value:
            parts.append(f"{element} <= {binder.bind(value['max'])}")
        predicate = " AND ".join(parts)
    else:
        raise ValidationError(f"Unknown operator: {op}")

    if source:
        return f"EXISTS (SELECT 1 FROM {source} WHERE {predicate})"
    return f"({predicate})"


def compile_preview(library_id: int, raw_criteria: Any) -> CompiledQuery:
    """
    Compile criteria into a single filter over one library's items.

    The library id is always p1; criterion parameters follow in criteria
    order. Raises ValidationError for malformed criteria.
    """
    criteria = normalize_criteria(raw_criteria)
    binder = _ParamBinder()
    clauses = [f"catalog_items.library_id = {binder.bind(library_id)}"]
    for criterion in criteria:
        clauses.append(_compile_criterion(criterion, binder))
    return CompiledQuery(where_clause=" AND ".join(clauses), params=binder.params)


def preview_rule(session, library_id: int, raw_criteria: Any, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    """
    Run the pushdown query and return matching items.

    Returns:
        {"items": [...], "total": int, "sql": str, "params": [...]}
    """
    from sqlalchemy import text
    from models import CatalogItem

    compiled = compile_preview(library_id, raw_criteria)
    query = session.query(CatalogItem).filter(text(compiled.where_clause)).params(**compiled.params)
    total = query.count()
    items = query.order_by(CatalogItem.title, CatalogItem.id).offset(offset).limit(limit).all()
    logger.debug(f"[RULES] Preview for library {library_id}: {total} matches")
    return {
        "items": [item.to_dict() for item in items],
        "total": total,
        "sql": compiled.where_clause,
        "params": compiled.positional_params,
    }


def test_rule(session, rule_id: int, limit: int = 50) -> Dict[str, Any]:
    """Preview a stored rule against its own library."""
    from models import Rule
    from exceptions import NotFoundError

    rule = session.query(Rule).filter(Rule.id == rule_id).first()
    if not rule:
        raise NotFoundError(f"Rule {rule_id} not found")
    result = preview_rule(session, rule.library_id, rule.get_criteria(), limit=limit)
    result["rule"] = rule.to_dict()
    return result


# Not a pytest test function
test_rule.__test__ = False


# =============================================================================
# In-process evaluation
# =============================================================================

def _match_scalar(op: str, value, item_value) -> bool:
    """Compare one text or number item value (None = absent)."""
    if item_value is None:
        return False
    if isinstance(item_value, str) and op in ("equals", "is_one_of"):
        folded = fold_case(item_value)
        if op == "equals":
            return folded == fold_case(value)
        return any(folded == fold_case(v) for v in value)
    if op == "contains":
        needles = value if isinstance(value, list) else [value]
        haystack = fold_case(item_value)
        return any(fold_case(n) in haystack for n in needles)
    if op == "equals":
        return item_value == value
    if op == "greater_than":
        return item_value > value
    if op == "less_than":
        return item_value < value
    if op == "is_one_of":
        return item_value in value
    if op == "between":
        if "min" in value and item_value < value["min"]:
            return False
        if "max" in value and item_value > value["max"]:
            return False
        return True
    raise ValidationError(f"Unknown operator: {op}")


def match_criterion(criterion: Criterion, item: ProjectedItem) -> bool:
    """Evaluate one criterion with the same semantics as its SQL translation."""
    item_value = item.value_of(criterion.spec)
    if criterion.spec.kind == ARRAY:
        return any(_match_scalar(criterion.operator, criterion.value, element) for element in item_value or [])
    return _match_scalar(criterion.operator, criterion.value, item_value)


def matches_criteria(raw_criteria: Any, item: Union[ProjectedItem, Mapping]) -> bool:
    """
    Evaluate an ordered criteria list against one item (AND across criteria).

    Raises ValidationError on malformed criteria or item data.
    """
    criteria = normalize_criteria(raw_criteria)
    if not isinstance(item, ProjectedItem):
        item = project_item(item, require_identity=False)
    return all(match_criterion(criterion, item) for criterion in criteria)


def evaluate_rule(rule: Union[Mapping, List[dict]], metadata: Union[ProjectedItem, Mapping]) -> bool:
    """
    Evaluate a rule against one item's metadata.

    The rule may be an ordered criteria list or the compact mapping form
    {field: scalar | [values] | {min, max}}:
    - list value: matches if the item's value equals or contains any listed value
    - {min, max}: inclusive numeric range
    - scalar: exact equality (membership for array fields)

    Every key must match. A field absent on the item is a non-match. Any
    error during evaluation is logged and treated as a non-match.
    """
    try:
        criteria = criteria_from_mapping(rule) if isinstance(rule, Mapping) else rule
        return matches_criteria(criteria, metadata)
    except Exception as e:
        logger.warning(f"[RULES] Rule evaluation failed, treating as non-match: {e}")
        return False


def route_request(session, metadata: Mapping) -> Optional[Dict[str, Any]]:
    """
    Find the library for an incoming request.

    Walks enabled rules of enabled libraries in priority order and returns
    the first match as {"library": ..., "rule": ...}, or None. Libraries of
    a different media type are skipped when the request names one.
    """
    from models import Library, Rule

    try:
        item = project_item(metadata, require_identity=False)
    except ValidationError as e:
        logger.warning(f"[RULES] Request metadata rejected: {e.message}")
        return None

    rules = (
        session.query(Rule)
        .join(Library, Rule.library_id == Library.id)
        .filter(Rule.enabled == True, Library.enabled == True)  # noqa: E712
        .order_by(Rule.priority, Rule.id)
        .all()
    )
    for rule in rules:
        if item.media_type and rule.library.media_type != item.media_type:
            continue
        if evaluate_rule(rule.get_criteria(), item):
            logger.info(
                f"[RULES] Request '{item.title}' routed to library {rule.library.name} by rule '{rule.name}'"
            )
            return {"library": rule.library.to_dict(), "rule": rule.to_dict()}

    logger.info(f"[RULES] No rule matched request '{item.title}'")
    return None
