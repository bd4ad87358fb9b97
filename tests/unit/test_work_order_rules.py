from datetime import date, datetime, timezone

from fieldops.services import work_order_rules as rules


def _wo(**overrides):
    wo = {
        "asset_id": "veh-1",
        "asset_type": "vehicle",
        "description": "Brake pads worn",
        "priority": "high",
        "status": "in_progress",
        "parts": [],
    }
    wo.update(overrides)
    return wo


def test_validate_requires_asset_description_priority():
    assert rules.validate_work_order(_wo()).allowed
    assert rules.validate_work_order(_wo(asset_id=None)).reason == "Asset/vehicle is required"
    assert rules.validate_work_order(_wo(description="  ")).reason == "Problem description is required"
    assert rules.validate_work_order(_wo(priority=None)).reason == "Priority level is required"


def test_completion_requirements_checked_in_order():
    wo = _wo(status="verification")
    assert rules.can_move_to_status(wo, "completed").reason == "Technician signature is required before completion"
    wo["technician_signature"] = "Sam"
    assert rules.can_move_to_status(wo, "completed").reason == "Resolution notes are required before completion"
    wo["resolution_notes"] = "Replaced pads"
    assert "Meter reading" in rules.can_move_to_status(wo, "completed").reason
    wo["meter_close_miles"] = 42100
    assert rules.can_move_to_status(wo, "completed").allowed


def test_driver_verification_blocks_completion():
    wo = _wo(status="verification", technician_signature="Sam", resolution_notes="done",
             meter_close_miles=10, driver_verification_required=True)
    assert not rules.can_move_to_status(wo, "completed").allowed
    wo["driver_verification"] = {"name": "Dana"}
    assert rules.can_move_to_status(wo, "completed").allowed


def test_status_specific_requirements():
    assert "at least one part" in rules.can_move_to_status(_wo(), "awaiting_parts").reason
    assert "vendor" in rules.can_move_to_status(_wo(), "vendor").reason
    assert "sign off" in rules.can_move_to_status(_wo(), "verification").reason
    assert rules.can_move_to_status(_wo(vendor_id="v1"), "vendor").allowed


def test_transition_table_is_enforced():
    result = rules.can_move_to_status(_wo(status="open"), "on_hold")
    assert not result.allowed
    assert result.reason == "Cannot move from open to on_hold"
    assert rules.get_next_logical_status("completed") == []


def test_default_due_dates():
    today = date(2026, 3, 10)
    assert rules.get_default_due_date_for_priority("critical", today) == date(2026, 3, 11)
    assert rules.get_default_due_date_for_priority("HIGH", today) == date(2026, 3, 13)
    assert rules.get_default_due_date_for_priority("normal", today) == date(2026, 3, 17)
    assert rules.get_default_due_date_for_priority("low", today) is None


def test_short_parts_only_for_stocked_sources():
    parts = [
        {"name": "Pads", "source": "warehouse", "quantity": 4, "on_hand_qty": 2},
        {"name": "Rotor", "source": "vendor", "quantity": 2, "on_hand_qty": 0},
        {"name": "Fluid", "source": "truck_stock", "quantity": 1, "on_hand_qty": 5},
    ]
    assert [p["name"] for p in rules.get_short_parts(parts)] == ["Pads"]
    assert rules.should_auto_set_awaiting_parts(parts)
    assert rules.get_part_shortage(parts[0]) == 2
    assert rules.get_part_shortage({"quantity": 3}) == 0


def test_transition_messages():
    assert rules.get_status_transition_message(None, "open") == "Work order created with status: open"
    assert rules.get_status_transition_message("open", "in_progress") == "Work started"
    assert rules.get_status_transition_message("vendor", "in_progress") == "Status changed from vendor to in_progress"


def test_overdue_and_age():
    assert rules.is_work_order_overdue({"status": "open", "due_date": date(2026, 1, 1)}, date(2026, 1, 2))
    assert not rules.is_work_order_overdue({"status": "completed", "due_date": date(2026, 1, 1)}, date(2026, 1, 2))
    assert not rules.is_work_order_overdue({"status": "open", "due_date": None})

    created = datetime(2026, 1, 1, 8, 0)
    closed = datetime(2026, 1, 3, 9, 0, tzinfo=timezone.utc)
    assert rules.get_work_order_age({"created_at": created, "closed_at": closed}) == 3
    assert rules.get_work_order_age({"created_at": None}) == 0


def test_summarize_rules_lists_next_statuses():
    summary = rules.summarize_rules(_wo(status="in_progress", technician_signature="Sam"))
    allowed = {s["status"]: s["allowed"] for s in summary["next_statuses"]}
    assert allowed == {"awaiting_parts": False, "vendor": False, "on_hold": True, "verification": True}
    assert summary["requirements"]["awaiting_parts"] == ["At least one part added"]
