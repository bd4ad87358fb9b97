"""
Work order business rules.

Pure functions over a work order (ORM object or dict) so they can be used
both by the service layer and for previews in the API.
"""
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

WORK_ORDER_STATUSES = ("open", "in_progress", "awaiting_parts", "vendor", "on_hold", "verification", "completed")
PRIORITIES = ("low", "normal", "high", "critical")
PART_SOURCES = ("truck_stock", "warehouse", "vendor")
STOCKED_SOURCES = ("truck_stock", "warehouse")

NEXT_STATUSES = {
    "open": ["in_progress"],
    "in_progress": ["awaiting_parts", "vendor", "on_hold", "verification"],
    "awaiting_parts": ["in_progress"],
    "vendor": ["verification", "in_progress"],
    "on_hold": ["in_progress"],
    "verification": ["completed", "in_progress"],
    "completed": [],
}

TRANSITION_MESSAGES = {
    ("open", "in_progress"): "Work started",
    ("in_progress", "awaiting_parts"): "Waiting for parts to arrive",
    ("in_progress", "vendor"): "Sent to external vendor",
    ("in_progress", "on_hold"): "Work paused",
    ("awaiting_parts", "in_progress"): "Parts received, work resumed",
    ("vendor", "verification"): "Vendor work completed, awaiting verification",
    ("in_progress", "verification"): "Work completed, awaiting verification",
    ("verification", "completed"): "Verification passed, work order completed",
    ("on_hold", "in_progress"): "Work resumed",
}

STATUS_REQUIREMENTS = {
    "completed": ["Technician signature", "Resolution notes", "Meter reading at close (for vehicles)"],
    "awaiting_parts": ["At least one part added"],
    "vendor": ["Service provider selected", "PO number (optional)"],
    "verification": ["Technician signature", "Work substantially complete"],
}


@dataclass
class RuleResult:
    allowed: bool
    reason: Optional[str] = None


def _get(obj, key, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def validate_work_order(work_order) -> RuleResult:
    if not _get(work_order, "asset_id"):
        return RuleResult(False, "Asset/vehicle is required")
    if not (_get(work_order, "description") or "").strip():
        return RuleResult(False, "Problem description is required")
    if not _get(work_order, "priority"):
        return RuleResult(False, "Priority level is required")
    return RuleResult(True)


def get_next_logical_status(current_status: str) -> List[str]:
    return list(NEXT_STATUSES.get(current_status, []))


def can_move_to_status(work_order, new_status: str) -> RuleResult:
    """Check the requirements for entering new_status, then the transition table."""
    if new_status == "completed":
        if not _get(work_order, "technician_signature"):
            return RuleResult(False, "Technician signature is required before completion")
        if not _get(work_order, "resolution_notes"):
            return RuleResult(False, "Resolution notes are required before completion")
        if (
            _get(work_order, "asset_type") == "vehicle"
            and not _get(work_order, "meter_close_miles")
            and not _get(work_order, "meter_close_hours")
        ):
            return RuleResult(False, "Meter reading at close is required for vehicles before completion")
        if _get(work_order, "driver_verification_required") and not _get(work_order, "driver_verification"):
            return RuleResult(False, "Driver verification is required before completion")

    if new_status == "awaiting_parts" and not (_get(work_order, "parts") or []):
        return RuleResult(False, "Add at least one part to move to Awaiting Parts status")

    if new_status == "vendor" and not _get(work_order, "vendor_id"):
        return RuleResult(False, "Select a service provider/vendor before moving to Vendor status")

    if new_status == "verification" and not _get(work_order, "technician_signature"):
        return RuleResult(False, "Technician must sign off on work before moving to Verification")

    current = _get(work_order, "status")
    if new_status not in get_next_logical_status(current):
        return RuleResult(False, f"Cannot move from {current} to {new_status}")
    return RuleResult(True)


def get_default_due_date_for_priority(priority: str, today: Optional[date] = None) -> Optional[date]:
    today = today or date.today()
    p = (priority or "").lower()
    if p == "critical":
        return today + timedelta(days=1)
    if p == "high":
        return today + timedelta(days=3)
    if p == "low":
        return None
    return today + timedelta(days=7)


# ---------- PARTS ----------
def get_part_shortage(part) -> int:
    on_hand = _get(part, "on_hand_qty")
    if on_hand is None:
        return 0
    return max(0, (_get(part, "quantity") or 0) - on_hand)


def get_short_parts(parts) -> List[Any]:
    """Stocked parts (truck stock or warehouse) requesting more than is on hand."""
    return [
        p for p in parts or []
        if _get(p, "source") in STOCKED_SOURCES
        and _get(p, "on_hand_qty") is not None
        and _get(p, "on_hand_qty") < (_get(p, "quantity") or 0)
    ]


def should_auto_set_awaiting_parts(parts) -> bool:
    return bool(get_short_parts(parts))


# ---------- HISTORY / REPORTING ----------
def get_status_transition_message(from_status: Optional[str], to_status: str) -> str:
    if not from_status:
        return f"Work order created with status: {to_status}"
    return TRANSITION_MESSAGES.get((from_status, to_status), f"Status changed from {from_status} to {to_status}")


def get_status_requirements(status: str) -> List[str]:
    return list(STATUS_REQUIREMENTS.get(status, []))


def is_work_order_overdue(work_order, today: Optional[date] = None) -> bool:
    due = _get(work_order, "due_date")
    if not due or _get(work_order, "status") == "completed":
        return False
    return due < (today or date.today())


def get_work_order_age(work_order, now: Optional[datetime] = None) -> int:
    """Whole days (rounded up) from creation to closure, or to now while open."""
    created = _get(work_order, "created_at")
    if created is None:
        return 0
    end = _get(work_order, "closed_at") or now or datetime.now(timezone.utc)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    seconds = abs((end - created).total_seconds())
    return math.ceil(seconds / 86400)


def summarize_rules(work_order) -> Dict[str, Any]:
    current = _get(work_order, "status")
    return {
        "status": current,
        "next_statuses": [
            {"status": s, "allowed": r.allowed, "reason": r.reason}
            for s in get_next_logical_status(current)
            for r in [can_move_to_status(work_order, s)]
        ],
        "requirements": {s: get_status_requirements(s) for s in get_next_logical_status(current)},
    }
