"""
Rules router: rule CRUD, pushdown preview, request routing and YAML
import/export.
"""
import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from clock import isoformat_z, utcnow
from config import get_settings
from database import get_session
from exceptions import CatalogError, ValidationError
from models import Library, Rule
from rule_engine import evaluate_rule, normalize_criteria, preview_rule, route_request, test_rule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rules", tags=["Rules"])


# =============================================================================
# Pydantic models
# =============================================================================


class CreateRuleRequest(BaseModel):
    library_id: int
    name: str
    description: Optional[str] = None
    criteria: list
    priority: int = 0
    enabled: bool = True


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    criteria: Optional[list] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None


class PreviewRequest(BaseModel):
    library_id: int
    criteria: list
    limit: Optional[int] = None
    offset: int = 0


class EvaluateRequest(BaseModel):
    rule: Union[dict, list]
    metadata: dict


class RouteRequest(BaseModel):
    metadata: dict


class ImportYAMLRequest(BaseModel):
    yaml_content: str
    overwrite: bool = False


def _validated_criteria(criteria: Any) -> list:
    """Reject malformed or empty criteria lists."""
    normalize_criteria(criteria)
    if not criteria:
        raise ValidationError("A rule needs at least one criterion")
    return criteria


# =============================================================================
# Evaluation endpoints
# =============================================================================


@router.post("/preview")
async def preview(request: PreviewRequest):
    """Run criteria against a library's mirror without saving a rule."""
    session = get_session()
    try:
        if not session.get(Library, request.library_id):
            raise HTTPException(status_code=404, detail="Library not found")
        limit = request.limit or get_settings().preview_default_limit
        return preview_rule(session, request.library_id, request.criteria, limit=limit, offset=request.offset)
    finally:
        session.close()


@router.post("/evaluate")
async def evaluate(request: EvaluateRequest):
    """Evaluate a rule against one item's metadata in process."""
    return {"matches": evaluate_rule(request.rule, request.metadata)}


@router.post("/route")
async def route(request: RouteRequest):
    """Find the library an incoming request belongs to."""
    session = get_session()
    try:
        match = route_request(session, request.metadata)
        return {"matched": match is not None, **(match or {})}
    finally:
        session.close()


# =============================================================================
# Rule CRUD Endpoints
# =============================================================================


@router.get("")
async def list_rules(library_id: Optional[int] = None):
    """List rules in evaluation order."""
    session = get_session()
    try:
        query = session.query(Rule)
        if library_id is not None:
            query = query.filter(Rule.library_id == library_id)
        rules = query.order_by(Rule.priority, Rule.id).all()
        return {"rules": [r.to_dict() for r in rules]}
    finally:
        session.close()


@router.post("")
async def create_rule(request: CreateRuleRequest):
    try:
        criteria = _validated_criteria(request.criteria)
        session = get_session()
        try:
            if not session.get(Library, request.library_id):
                raise HTTPException(status_code=404, detail="Library not found")
            rule = Rule(
                library_id=request.library_id,
                name=request.name,
                description=request.description,
                priority=request.priority,
                enabled=request.enabled,
            )
            rule.set_criteria(criteria)
            session.add(rule)
            session.commit()
            session.refresh(rule)
            logger.info(f"[RULES] Created rule id={rule.id} name='{rule.name}'")
            return rule.to_dict()
        finally:
            session.close()
    except (HTTPException, CatalogError):
        raise
    except Exception as e:
        logger.exception(f"[RULES] Failed to create rule: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/export/yaml")
async def export_rules_yaml(library_id: Optional[int] = None):
    """Export rules as YAML, with library names for portability."""
    import yaml

    session = get_session()
    try:
        query = session.query(Rule)
        if library_id is not None:
            query = query.filter(Rule.library_id == library_id)
        rules = query.order_by(Rule.library_id, Rule.priority, Rule.id).all()
        export_data = {
            "version": 1,
            "exported_at": isoformat_z(utcnow()),
            "rules": [
                {
                    "name": rule.name,
                    "description": rule.description,
                    "library_id": rule.library_id,
                    "library_name": rule.library.name if rule.library else None,
                    "priority": rule.priority,
                    "enabled": rule.enabled,
                    "criteria": rule.get_criteria(),
                }
                for rule in rules
            ],
        }
        yaml_content = yaml.dump(export_data, default_flow_style=False, sort_keys=False)
        return PlainTextResponse(
            content=yaml_content,
            media_type="text/yaml",
            headers={"Content-Disposition": "attachment; filename=library-rules.yaml"},
        )
    finally:
        session.close()


@router.post("/import/yaml")
async def import_rules_yaml(request: ImportYAMLRequest):
    """
    Import rules from YAML.

    library_name is resolved to a local library when library_id is missing.
    With overwrite, an existing rule of the same name in the same library is
    replaced; otherwise it is skipped.
    """
    import yaml

    try:
        data = yaml.safe_load(request.yaml_content)
    except yaml.YAMLError as e:
        raise HTTPException(status_code=400, detail=f"Invalid YAML: {e}")

    # Accept both {"rules": [...]} and a bare list of rules
    if isinstance(data, list):
        data = {"rules": data}
    if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
        raise HTTPException(status_code=400, detail="YAML must contain a 'rules' array or be a list of rules")

    session = get_session()
    try:
        libraries = session.query(Library).all()
        ids = {lib.id for lib in libraries}
        names = {lib.name.lower(): lib.id for lib in libraries}

        imported, skipped, errors = [], [], []
        for index, entry in enumerate(data["rules"]):
            if not isinstance(entry, dict) or not entry.get("name"):
                errors.append({"index": index, "error": "Rule must be an object with a name"})
                continue
            library_id = entry.get("library_id")
            if library_id not in ids:
                library_id = names.get(str(entry.get("library_name") or "").lower())
            if library_id is None:
                errors.append({"index": index, "name": entry["name"], "error": "Library not found"})
                continue
            try:
                criteria = _validated_criteria(entry.get("criteria") or [])
            except ValidationError as e:
                errors.append({"index": index, "name": entry["name"], "error": e.message})
                continue

            existing = session.query(Rule).filter(Rule.library_id == library_id, Rule.name == entry["name"]).first()
            if existing and not request.overwrite:
                skipped.append(entry["name"])
                continue
            rule = existing or Rule(library_id=library_id, name=entry["name"])
            rule.description = entry.get("description")
            rule.priority = int(entry.get("priority") or 0)
            rule.enabled = bool(entry.get("enabled", True))
            rule.generated_by = rule.generated_by or "import"
            rule.set_criteria(criteria)
            if not existing:
                session.add(rule)
            imported.append(entry["name"])

        session.commit()
        logger.info(f"[RULES] YAML import: {len(imported)} imported, {len(skipped)} skipped, {len(errors)} errors")
        return {"imported": imported, "skipped": skipped, "errors": errors}
    finally:
        session.close()


@router.get("/{rule_id}")
async def get_rule(rule_id: int):
    session = get_session()
    try:
        rule = session.get(Rule, rule_id)
        if not rule:
            raise HTTPException(status_code=404, detail="Rule not found")
        return rule.to_dict()
    finally:
        session.close()


@router.put("/{rule_id}")
async def update_rule(rule_id: int, request: UpdateRuleRequest):
    try:
        session = get_session()
        try:
            rule = session.get(Rule, rule_id)
            if not rule:
                raise HTTPException(status_code=404, detail="Rule not found")
            if request.criteria is not None:
                rule.set_criteria(_validated_criteria(request.criteria))
            if request.name is not None:
                rule.name = request.name
            if request.description is not None:
                rule.description = request.description
            if request.priority is not None:
                rule.priority = request.priority
            if request.enabled is not None:
                rule.enabled = request.enabled
            session.commit()
            session.refresh(rule)
            logger.info(f"[RULES] Updated rule id={rule.id}")
            return rule.to_dict()
        finally:
            session.close()
    except (HTTPException, CatalogError):
        raise
    except Exception as e:
        logger.exception(f"[RULES] Failed to update rule {rule_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/{rule_id}")
async def delete_rule(rule_id: int):
    session = get_session()
    try:
        rule = session.get(Rule, rule_id)
        if not rule:
            raise HTTPException(status_code=404, detail="Rule not found")
        session.delete(rule)
        session.commit()
        logger.info(f"[RULES] Deleted rule id={rule_id}")
        return {"status": "deleted", "id": rule_id}
    finally:
        session.close()


@router.post("/{rule_id}/test")
async def test_saved_rule(rule_id: int, limit: Optional[int] = None):
    """Preview a stored rule against its library."""
    session = get_session()
    try:
        return test_rule(session, rule_id, limit=limit or get_settings().preview_default_limit)
    finally:
        session.close()
