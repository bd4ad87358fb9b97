"""
Form rules for service reports.

Rules are plain dicts as stored on a ReportTemplate: conditions decide when
a rule fires, auto requirements make fields or evidence mandatory, fee rules
suggest fees and default rules prefill values.
"""
import ast
import operator
import re
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

import structlog

logger = structlog.get_logger(__name__)

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "in_list")
DEFAULT_SOURCES = ("job_data", "last_visit", "static", "system", "formula")

_FIELD_REF = re.compile(r"\{(\w+)\}")
_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: Dict[str, Any], data: Dict[str, Any]) -> bool:
    field_value = data.get(condition.get("field"))
    op = condition.get("operator")
    expected = condition.get("value")

    if op == "equals":
        return field_value == expected
    if op == "not_equals":
        return field_value != expected
    if op in ("greater_than", "less_than"):
        left, right = _number(field_value), _number(expected)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "contains":
        return str(expected) in str(field_value or "")
    if op == "in_list":
        return isinstance(expected, list) and field_value in expected
    return False


def evaluate_conditions(conditions: List[Dict[str, Any]], data: Dict[str, Any]) -> bool:
    """
    Combine conditions. Any condition with logic OR makes the whole list
    any-of; otherwise every condition must hold. An empty list never matches.
    """
    if not conditions:
        return False
    if any(c.get("logic") == "OR" for c in conditions):
        return any(evaluate_condition(c, data) for c in conditions)
    return all(evaluate_condition(c, data) for c in conditions)


def evaluate_auto_requirements(form: Dict[str, Any], rules: List[Dict[str, Any]],
                               unit: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Work out which fields and evidence become mandatory.

    Args:
        form: Whole form data
        rules: Auto requirement rules of the template
        unit: Evaluate against this unit instead of the form

    Returns:
        Dict with required_fields (set), evidence_requirements (rule id -> requirements)
        and triggered_rules (list)
    """
    data = unit if unit is not None else form
    required = set()
    evidence: Dict[str, Dict[str, Any]] = {}
    triggered = []
    for rule in rules or []:
        if not rule.get("is_active", True):
            continue
        if not evaluate_conditions(rule.get("conditions") or [], data):
            continue
        triggered.append(rule)
        required.update(rule.get("required_fields") or [])
        if rule.get("evidence_requirements"):
            evidence[rule.get("id")] = rule["evidence_requirements"]
    return {"required_fields": required, "evidence_requirements": evidence, "triggered_rules": triggered}


def _reason(conditions: List[Dict[str, Any]], data: Dict[str, Any]) -> str:
    for c in conditions:
        if evaluate_condition(c, data):
            return f"{c.get('field')} {str(c.get('operator')).replace('_', ' ', 1)} {c.get('value')}"
    return "Condition met"


def evaluate_fee_suggestions(form: Dict[str, Any], fee_rules: List[Dict[str, Any]],
                             units: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    recommendations = []
    seen = set()
    for rule in fee_rules or []:
        if not rule.get("is_active", True):
            continue
        conditions = rule.get("conditions") or []
        dedupe = bool(rule.get("prevent_duplicates"))

        if rule.get("scope") == "per_unit" and units:
            for index, unit in enumerate(units):
                if not evaluate_conditions(conditions, unit):
                    continue
                label = unit.get("unit_id") or f"#{index + 1}"
                key = rule.get("fee_id") if dedupe else f"{rule.get('fee_id')}-{unit.get('unit_id') or index}"
                if key in seen:
                    continue
                recommendations.append({
                    "fee_id": rule.get("fee_id"),
                    "fee_name": rule.get("fee_name"),
                    "fee_amount": rule.get("fee_amount", 0),
                    "reason": f"From unit {label}: {_reason(conditions, unit)}",
                    "unit_id": unit.get("unit_id"),
                    "auto_added": bool(rule.get("auto_add")),
                    "rule_id": rule.get("id"),
                })
                if dedupe:
                    seen.add(key)
        elif rule.get("scope") == "per_job":
            if not evaluate_conditions(conditions, form):
                continue
            key = rule.get("fee_id")
            if dedupe and key in seen:
                continue
            recommendations.append({
                "fee_id": rule.get("fee_id"),
                "fee_name": rule.get("fee_name"),
                "fee_amount": rule.get("fee_amount", 0),
                "reason": _reason(conditions, form),
                "unit_id": None,
                "auto_added": bool(rule.get("auto_add")),
                "rule_id": rule.get("id"),
            })
            if dedupe:
                seen.add(key)
    return recommendations


# ---------- DEFAULT VALUES ----------
def _eval_node(node):
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval_node(node.left), _eval_node(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"Unsupported expression: {type(node).__name__}")


def evaluate_formula(formula: str, data: Dict[str, Any]) -> Optional[float]:
    """
    Substitute {field} references and evaluate the arithmetic.
    Only numbers, + - * /, unary signs and parentheses are accepted.
    """
    if not formula:
        return None

    def _sub(match):
        key = match.group(1)
        return str(data[key]) if key in data and data[key] is not None else match.group(0)

    expression = _FIELD_REF.sub(_sub, formula)
    try:
        return _eval_node(ast.parse(expression, mode="eval"))
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError) as e:
        logger.info("formula_evaluation_failed", formula=formula, error=str(e))
        return None


def _system_value(name: Optional[str], now: datetime):
    if name == "current_date":
        return now.date().isoformat()
    if name == "current_time":
        return now.strftime("%H:%M:%S")
    if name == "current_datetime":
        return now.isoformat()
    return None


def _as_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def evaluate_default_values(job_data: Dict[str, Any], rules: List[Dict[str, Any]],
                            history: Optional[Dict[str, Any]] = None, today: Optional[date] = None,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    today = today or now.date()
    defaults: Dict[str, Any] = {}
    for rule in rules or []:
        conditions = rule.get("conditions") or []
        if conditions and not evaluate_conditions(conditions, job_data):
            continue
        source = rule.get("source")
        source_field = rule.get("source_field")
        value = None

        if source == "job_data":
            value = job_data.get(source_field) if source_field else None
        elif source == "last_visit":
            visited = _as_date((history or {}).get("date"))
            threshold = rule.get("days_threshold")
            if visited and source_field and threshold and (today - visited).days <= threshold:
                value = history.get(source_field)
        elif source == "static":
            value = rule.get("static_value")
        elif source == "system":
            value = _system_value(source_field, now)
        elif source == "formula":
            value = evaluate_formula(rule.get("formula") or "", job_data)

        if value is not None:
            defaults[rule["field_id"]] = value
    return defaults


# ---------- SUBMIT VALIDATION ----------
def _issue(field_id: str, issue_type: str, message: str, label: Optional[str] = None,
           unit: Optional[Dict[str, Any]] = None, index: Optional[int] = None) -> Dict[str, Any]:
    issue = {
        "field_id": field_id,
        "field_label": label or field_id.replace("_", " "),
        "issue_type": issue_type,
        "message": message,
    }
    if unit is not None:
        issue["unit_id"] = unit.get("unit_id")
        issue["unit_index"] = index
    return issue


def _photo_count(unit: Dict[str, Any]) -> int:
    return sum(len(v) for k, v in unit.items() if "photo" in k and isinstance(v, list))


def validate_submit(form: Dict[str, Any], rules: List[Dict[str, Any]],
                    units: Optional[List[Dict[str, Any]]] = None,
                    unit_loop_enabled: bool = False) -> List[Dict[str, Any]]:
    """Blocking issues that prevent a report from being submitted."""
    issues = []
    if unit_loop_enabled and units:
        for index, unit in enumerate(units):
            result = evaluate_auto_requirements(form, rules, unit)
            for field_id in sorted(result["required_fields"]):
                if not unit.get(field_id):
                    issues.append(_issue(field_id, "required_field", "Required field missing", unit=unit, index=index))
            for req in result["evidence_requirements"].values():
                min_photos = req.get("min_photos")
                if min_photos:
                    found = _photo_count(unit)
                    if found < min_photos:
                        issues.append(_issue("photos", "missing_evidence",
                                             f"Requires at least {min_photos} photo(s), found {found}",
                                             label="Photos", unit=unit, index=index))
                if req.get("gps_required") and not unit.get("gps_location"):
                    issues.append(_issue("gps_location", "missing_evidence", "GPS lock required",
                                         label="GPS Location", unit=unit, index=index))
                if req.get("signature_required") and not unit.get("signature"):
                    issues.append(_issue("signature", "missing_evidence", "Signature required",
                                         label="Signature", unit=unit, index=index))
    else:
        result = evaluate_auto_requirements(form, rules)
        for field_id in sorted(result["required_fields"]):
            if not form.get(field_id):
                issues.append(_issue(field_id, "required_field", "Required field missing"))
    return issues


def create_automation_audit(form: Dict[str, Any], rules: List[Dict[str, Any]], fee_rules: List[Dict[str, Any]],
                            units: Optional[List[Dict[str, Any]]] = None, unit_loop_enabled: bool = False,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    result = evaluate_auto_requirements(form, rules)
    triggered_ids = {r.get("id") for r in result["triggered_rules"]}
    fees = evaluate_fee_suggestions(form, fee_rules, units)
    return {
        "rules_evaluated": [
            {"rule_id": r.get("id"), "rule_name": r.get("name"), "triggered": r.get("id") in triggered_ids,
             "timestamp": timestamp}
            for r in rules or []
        ],
        "auto_requirements_triggered": [
            {"rule_id": r.get("id"), "rule_name": r.get("name"), "fields_required": r.get("required_fields") or []}
            for r in result["triggered_rules"]
        ],
        "fees_suggested": [
            {k: f[k] for k in ("fee_id", "fee_name", "fee_amount", "reason", "auto_added")} for f in fees
        ],
        "validation_results": {
            "blocking_issues": validate_submit(form, rules, units, unit_loop_enabled),
            "warnings": [],
        },
    }
