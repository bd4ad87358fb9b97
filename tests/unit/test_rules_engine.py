from datetime import date, datetime, timezone

from fieldops.services import rules_engine as engine


def test_conditions_all_of_by_default():
    conditions = [
        {"field": "unit_type", "operator": "equals", "value": "ada"},
        {"field": "waste_level", "operator": "greater_than", "value": 75},
    ]
    assert engine.evaluate_conditions(conditions, {"unit_type": "ada", "waste_level": 80})
    assert not engine.evaluate_conditions(conditions, {"unit_type": "ada", "waste_level": 50})


def test_conditions_any_of_when_one_is_or():
    conditions = [
        {"field": "damaged", "operator": "equals", "value": True, "logic": "OR"},
        {"field": "graffiti", "operator": "equals", "value": True},
    ]
    assert engine.evaluate_conditions(conditions, {"graffiti": True})


def test_empty_conditions_never_match():
    assert engine.evaluate_conditions([], {"anything": 1}) is False


def test_unknown_operator_is_false():
    assert not engine.evaluate_condition({"field": "a", "operator": "matches", "value": 1}, {"a": 1})


def test_numeric_comparison_with_non_numbers_is_false():
    cond = {"field": "level", "operator": "less_than", "value": 10}
    assert not engine.evaluate_condition(cond, {"level": "n/a"})
    assert engine.evaluate_condition(cond, {"level": "4"})


def test_contains_and_in_list():
    assert engine.evaluate_condition({"field": "notes", "operator": "contains", "value": "leak"},
                                     {"notes": "small leak at base"})
    assert engine.evaluate_condition({"field": "color", "operator": "in_list", "value": ["blue", "green"]},
                                     {"color": "green"})
    assert not engine.evaluate_condition({"field": "color", "operator": "in_list", "value": "green"},
                                         {"color": "green"})


def test_auto_requirements_skip_inactive_rules():
    rules = [
        {"id": "r1", "conditions": [{"field": "damaged", "operator": "equals", "value": True}],
         "required_fields": ["damage_notes"], "evidence_requirements": {"min_photos": 2}},
        {"id": "r2", "is_active": False, "conditions": [{"field": "damaged", "operator": "equals", "value": True}],
         "required_fields": ["supervisor"]},
    ]
    result = engine.evaluate_auto_requirements({"damaged": True}, rules)
    assert result["required_fields"] == {"damage_notes"}
    assert result["evidence_requirements"] == {"r1": {"min_photos": 2}}
    assert [r["id"] for r in result["triggered_rules"]] == ["r1"]


def test_fee_suggestions_per_unit_and_dedupe():
    fee = {
        "id": "f1", "fee_id": "damage", "fee_name": "Damage fee", "fee_amount": 75, "scope": "per_unit",
        "conditions": [{"field": "damaged", "operator": "equals", "value": True}],
    }
    units = [{"unit_id": "U1", "damaged": True}, {"unit_id": "U2", "damaged": True}, {"unit_id": "U3"}]

    per_unit = engine.evaluate_fee_suggestions({}, [fee], units)
    assert [f["unit_id"] for f in per_unit] == ["U1", "U2"]
    assert per_unit[0]["reason"] == "From unit U1: damaged equals True"

    deduped = engine.evaluate_fee_suggestions({}, [dict(fee, prevent_duplicates=True)], units)
    assert len(deduped) == 1


def test_fee_suggestions_per_job_reason_replaces_first_underscore():
    fee = {
        "fee_id": "overflow", "fee_name": "Overflow", "fee_amount": 40, "scope": "per_job", "auto_add": True,
        "conditions": [{"field": "waste_level", "operator": "greater_than", "value": 90}],
    }
    [suggestion] = engine.evaluate_fee_suggestions({"waste_level": 95}, [fee])
    assert suggestion["reason"] == "waste_level greater than 90"
    assert suggestion["auto_added"] is True
    assert suggestion["unit_id"] is None


def test_default_values_from_every_source():
    now = datetime(2026, 5, 4, 13, 30, tzinfo=timezone.utc)
    rules = [
        {"field_id": "customer", "source": "job_data", "source_field": "customer_name"},
        {"field_id": "last_level", "source": "last_visit", "source_field": "waste_level", "days_threshold": 14},
        {"field_id": "crew", "source": "static", "static_value": "A"},
        {"field_id": "visit_date", "source": "system", "source_field": "current_date"},
        {"field_id": "gallons", "source": "formula", "formula": "{units} * 12.5 + (2 - 1)"},
        {"field_id": "broken", "source": "formula", "formula": "__import__('os')"},
    ]
    job = {"customer_name": "Riverside", "units": 4}
    history = {"date": "2026-04-28", "waste_level": 60}

    defaults = engine.evaluate_default_values(job, rules, history, now=now)
    assert defaults == {
        "customer": "Riverside",
        "last_level": 60,
        "crew": "A",
        "visit_date": "2026-05-04",
        "gallons": 51.0,
    }


def test_last_visit_outside_threshold_is_ignored():
    rules = [{"field_id": "last_level", "source": "last_visit", "source_field": "waste_level", "days_threshold": 3}]
    defaults = engine.evaluate_default_values({}, rules, {"date": date(2026, 4, 1), "waste_level": 60},
                                              today=date(2026, 5, 1))
    assert defaults == {}


def test_formula_rejects_names_and_division_by_zero():
    assert engine.evaluate_formula("{a} / 0", {"a": 3}) is None
    assert engine.evaluate_formula("a + 1", {}) is None
    assert engine.evaluate_formula("-{a} * 2", {"a": 3}) == -6


def test_validate_submit_whole_form():
    rules = [{"id": "r1", "conditions": [{"field": "damaged", "operator": "equals", "value": True}],
              "required_fields": ["damage_notes"]}]
    issues = engine.validate_submit({"damaged": True}, rules)
    assert issues == [{
        "field_id": "damage_notes",
        "field_label": "damage notes",
        "issue_type": "required_field",
        "message": "Required field missing",
    }]
    assert engine.validate_submit({"damaged": True, "damage_notes": "cracked door"}, rules) == []


def test_validate_submit_per_unit_evidence():
    rules = [{
        "id": "r1",
        "conditions": [{"field": "damaged", "operator": "equals", "value": True}],
        "required_fields": [],
        "evidence_requirements": {"min_photos": 2, "gps_required": True, "signature_required": True},
    }]
    units = [
        {"unit_id": "U1", "damaged": True, "before_photos": ["a.jpg"], "after_photos": ["b.jpg"],
         "gps_location": "41.8,-87.6", "signature": "JD"},
        {"unit_id": "U2", "damaged": True, "before_photos": ["c.jpg"]},
    ]
    issues = engine.validate_submit({}, rules, units, unit_loop_enabled=True)
    assert {(i["unit_id"], i["field_id"]) for i in issues} == {
        ("U2", "photos"), ("U2", "gps_location"), ("U2", "signature"),
    }
    photo_issue = next(i for i in issues if i["field_id"] == "photos")
    assert photo_issue["message"] == "Requires at least 2 photo(s), found 1"
    assert photo_issue["unit_index"] == 1


def test_automation_audit_lists_every_rule():
    rules = [
        {"id": "r1", "name": "Damage", "conditions": [{"field": "damaged", "operator": "equals", "value": True}],
         "required_fields": ["damage_notes"]},
        {"id": "r2", "name": "Never", "conditions": []},
    ]
    audit = engine.create_automation_audit({"damaged": True}, rules, [])
    assert [(r["rule_id"], r["triggered"]) for r in audit["rules_evaluated"]] == [("r1", True), ("r2", False)]
    assert audit["auto_requirements_triggered"][0]["fields_required"] == ["damage_notes"]
    assert len(audit["validation_results"]["blocking_issues"]) == 1
