"""
Compliance: spill kits, spill incidents, driver credential expirations and
the daily compliance report.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, List, Dict, Any

import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..models.models import (
    DriverActivityLog,
    DriverCredential,
    Job,
    Organization,
    SpillIncident,
    SpillKitCheck,
    User,
    Vehicle,
    VehicleDocument,
    VehicleInspection,
)
from .notifications import notify_user, send_email
from .timezones import as_utc, is_valid_timezone, local_now
from .tenancy import get_scoped_or_404

logger = structlog.get_logger(__name__)

DEFAULT_SPILL_KIT_ITEMS = [
    "absorbent pads",
    "absorbent socks",
    "gloves",
    "goggles",
    "disposal bags",
    "deodorizer",
]
NOTIFY_DAYS = (90, 60, 30, 7, 0, -7, -14, -30)
WINDOW_PAST_DAYS = 30
CREDENTIAL_ITEMS = (
    ("license_expiry_date", "driver_license", "driver's license"),
    ("medical_card_expiry_date", "medical_card", "medical card"),
    ("training_next_due", "training", "safety training"),
)


def _day_bounds(day: date, tz_name: Optional[str] = None):
    """UTC instants bounding a calendar day in the given zone."""
    tz = pytz.timezone(tz_name if is_valid_timezone(tz_name) else settings.tz_default)
    start = tz.localize(datetime.combine(day, time.min))
    end = tz.localize(datetime.combine(day + timedelta(days=1), time.min))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _get_vehicle(db: Session, organization_id, vehicle_id) -> Vehicle:
    vehicle = (
        db.query(Vehicle)
        .filter(Vehicle.id == vehicle_id, Vehicle.organization_id == organization_id)
        .first()
    )
    if vehicle is None:
        raise NotFoundError("Vehicle not found")
    return vehicle


# ---------- SPILL KITS ----------
def required_spill_kit_items(org: Organization) -> List[str]:
    return list(org.spill_kit_required_items or DEFAULT_SPILL_KIT_ITEMS)


def record_spill_kit_check(db: Session, organization_id, data: Dict[str, Any], user: Optional[User] = None,
                           today: Optional[date] = None) -> SpillKitCheck:
    today = today or date.today()
    vehicle = _get_vehicle(db, organization_id, data["vehicle_id"])
    org = db.get(Organization, organization_id)
    contents = {k.strip().lower(): bool(v) for k, v in (data.get("contents") or {}).items()}
    has_kit = data.get("has_kit", True)
    missing = [item for item in required_spill_kit_items(org) if not contents.get(item.lower())]
    expiration = data.get("kit_expiration_date")
    expired = expiration is not None and expiration < today
    check = SpillKitCheck(
        organization_id=organization_id,
        vehicle_id=vehicle.id,
        checked_by=user.id if user else None,
        checked_at=datetime.now(timezone.utc),
        has_kit=has_kit,
        contents=contents,
        missing_items=missing,
        kit_expiration_date=expiration,
        status="compliant" if has_kit and not missing and not expired else "non_compliant",
        notes=data.get("notes"),
    )
    db.add(check)
    db.flush()
    if check.status != "compliant":
        logger.info("spill_kit_non_compliant", vehicle_id=str(vehicle.id), missing=missing, expired=expired)
    return check


def _latest_checks(db: Session, organization_id) -> Dict[Any, SpillKitCheck]:
    latest: Dict[Any, SpillKitCheck] = {}
    for check in (
        db.query(SpillKitCheck)
        .filter(SpillKitCheck.organization_id == organization_id)
        .order_by(SpillKitCheck.checked_at)
        .all()
    ):
        latest[check.vehicle_id] = check
    return latest


def spill_kit_compliance_report(db: Session, organization_id, max_age_days: int = 30,
                                now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    vehicles = (
        db.query(Vehicle)
        .filter(Vehicle.organization_id == organization_id, Vehicle.status != "retired")
        .order_by(Vehicle.license_plate)
        .all()
    )
    latest = _latest_checks(db, organization_id)
    rows = []
    counts = {"compliant": 0, "non_compliant": 0, "overdue_check": 0, "never_checked": 0}
    for v in vehicles:
        check = latest.get(v.id)
        if check is None:
            status = "never_checked"
        elif as_utc(check.checked_at) < now - timedelta(days=max_age_days):
            status = "overdue_check"
        else:
            status = check.status
        counts[status] += 1
        rows.append({
            "vehicle_id": v.id,
            "license_plate": v.license_plate,
            "status": status,
            "last_checked_at": check.checked_at if check else None,
            "missing_items": check.missing_items if check else [],
        })
    return {"vehicles": rows, "counts": counts, "total": len(rows)}


# ---------- SPILL INCIDENTS ----------
def create_spill_incident(db: Session, organization_id, data: Dict[str, Any],
                          user: Optional[User] = None) -> SpillIncident:
    if not (data.get("material") or "").strip():
        raise ValidationFailed("Material is required")
    if (data.get("quantity_gallons") or 0) < 0:
        raise ValidationFailed("Quantity must not be negative")
    if data.get("vehicle_id"):
        _get_vehicle(db, organization_id, data["vehicle_id"])
    if data.get("job_id"):
        get_scoped_or_404(db, Job, data["job_id"], organization_id, "Job")
    if data.get("driver_id"):
        get_scoped_or_404(db, User, data["driver_id"], organization_id, "Driver")
    incident = SpillIncident(
        organization_id=organization_id,
        vehicle_id=data.get("vehicle_id"),
        job_id=data.get("job_id"),
        driver_id=data.get("driver_id") or (user.id if user else None),
        occurred_at=data.get("occurred_at") or datetime.now(timezone.utc),
        material=data["material"].strip(),
        quantity_gallons=data.get("quantity_gallons") or 0.0,
        location_description=data.get("location_description"),
        latitude=data.get("latitude"),
        longitude=data.get("longitude"),
        cleanup_actions=data.get("cleanup_actions"),
        reported_to_authorities=bool(data.get("reported_to_authorities")),
        status="open",
    )
    db.add(incident)
    db.flush()
    logger.warning("spill_incident_reported", incident_id=str(incident.id), material=incident.material,
                   gallons=incident.quantity_gallons)
    return incident


def close_spill_incident(db: Session, incident: SpillIncident, cleanup_actions: Optional[str] = None) -> SpillIncident:
    if incident.status == "closed":
        raise ConflictError("Incident is already closed")
    if cleanup_actions:
        incident.cleanup_actions = cleanup_actions
    if not (incident.cleanup_actions or "").strip():
        raise ValidationFailed("Cleanup actions are required to close an incident")
    incident.status = "closed"
    incident.closed_at = datetime.now(timezone.utc)
    db.flush()
    return incident


# ---------- DRIVER CREDENTIALS ----------
def upsert_driver_credential(db: Session, driver: User, data: Dict[str, Any]) -> DriverCredential:
    cred = db.query(DriverCredential).filter(DriverCredential.driver_id == driver.id).first()
    if cred is None:
        cred = DriverCredential(organization_id=driver.organization_id, driver_id=driver.id)
        db.add(cred)
    for key, value in data.items():
        setattr(cred, key, value)
    cred.updated_at = datetime.now(timezone.utc)
    db.flush()
    return cred


def _recently_notified(db: Session, driver_id, item_type: str, now: datetime) -> bool:
    logs = (
        db.query(DriverActivityLog)
        .filter(
            DriverActivityLog.driver_id == driver_id,
            DriverActivityLog.action_type == "expiration_notification",
            DriverActivityLog.created_at >= now - timedelta(hours=24),
        )
        .all()
    )
    return any((log.action_details or {}).get("item_type") == item_type for log in logs)


def expiration_subject(label: str, days: int) -> str:
    if days <= 0:
        return f"URGENT: Your {label} has expired"
    return f"Reminder: Your {label} expires in {days} days"


def check_driver_expirations(db: Session, organization_id=None, today: Optional[date] = None,
                             now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Notify drivers about credentials expiring on the milestone days and send
    managers a digest of anything within a week.
    """
    today = today or date.today()
    now = now or datetime.now(timezone.utc)
    q = db.query(DriverCredential)
    if organization_id is not None:
        q = q.filter(DriverCredential.organization_id == organization_id)

    checked = 0
    notifications = 0
    critical: Dict[Any, List[Dict[str, Any]]] = {}
    for cred in q.all():
        driver = cred.driver
        if driver is None or not driver.is_active:
            continue
        for attr, item_type, label in CREDENTIAL_ITEMS:
            expiry = getattr(cred, attr)
            if expiry is None:
                continue
            days = (expiry - today).days
            if days < -WINDOW_PAST_DAYS or days > settings.expiration_warning_days:
                continue
            checked += 1
            if days <= 7:
                critical.setdefault(cred.organization_id, []).append({
                    "driver": driver.full_name, "item": label, "expiry_date": expiry, "days_until_expiry": days,
                })
            if days not in NOTIFY_DAYS or _recently_notified(db, driver.id, item_type, now):
                continue

            subject = expiration_subject(label, days)
            body = (
                f"Hello {driver.full_name},\n\n"
                f"Your {label} {'expired' if days < 0 else 'expires'} on {expiry:%B %d, %Y}. "
                "Please renew it and upload the new document."
            )
            results = notify_user(db, driver, subject, body, channels=("email", "sms"),
                                  related_entity=f"driver_credential:{cred.id}")
            delivered = any(r.status == "sent" for r in results)
            if not delivered:
                logger.warning("expiration_notification_failed", driver_id=str(driver.id), item_type=item_type)
            db.add(DriverActivityLog(
                organization_id=cred.organization_id,
                driver_id=driver.id,
                action_type="expiration_notification",
                action_details={
                    "item_type": item_type,
                    "days_until_expiry": days,
                    "expiry_date": expiry.isoformat(),
                    "delivered": delivered,
                    "channels": {r.channel: r.status for r in results},
                },
                created_at=now,
            ))
            db.flush()
            notifications += 1

    for org_id, items in critical.items():
        org = db.get(Organization, org_id)
        if not org or not org.support_email:
            continue
        lines = "\n".join(
            f"- {i['driver']}: {i['item']} {'expired' if i['days_until_expiry'] < 0 else 'expires'} {i['expiry_date']:%Y-%m-%d}"
            for i in items
        )
        send_email(db, org_id, org.support_email, f"Driver compliance: {len(items)} item(s) need attention",
                   f"The following driver credentials need attention:\n\n{lines}\n",
                   related_entity="driver_expiration_digest")

    logger.info("driver_expirations_checked", checked=checked, notifications=notifications,
                critical=sum(len(v) for v in critical.values()))
    return {"checked": checked, "notifications": notifications, "critical": sum(len(v) for v in critical.values())}


# ---------- REPORTS ----------
def generate_daily_compliance_report(db: Session, organization_id, day: Optional[date] = None) -> Dict[str, Any]:
    org = db.get(Organization, organization_id)
    tz_name = org.timezone if org else None
    day = day or local_now(tz_name).date()
    start, end = _day_bounds(day, tz_name)
    dvirs = (
        db.query(VehicleInspection)
        .filter(
            VehicleInspection.organization_id == organization_id,
            VehicleInspection.submitted_at >= start,
            VehicleInspection.submitted_at < end,
        )
        .all()
    )
    pre_trip_vehicles = {d.vehicle_id for d in dvirs if d.inspection_type == "pre_trip"}
    scheduled_vehicle_ids = {
        vid for (vid,) in db.query(Job.vehicle_id)
        .filter(
            Job.organization_id == organization_id,
            Job.scheduled_date == day,
            Job.vehicle_id.isnot(None),
            Job.status != "cancelled",
        )
        .distinct()
        .all()
    }
    missing_ids = scheduled_vehicle_ids - pre_trip_vehicles
    missing = (
        db.query(Vehicle).filter(Vehicle.id.in_(missing_ids)).order_by(Vehicle.license_plate).all()
        if missing_ids else []
    )
    open_incidents = (
        db.query(SpillIncident)
        .filter(SpillIncident.organization_id == organization_id, SpillIncident.status == "open")
        .count()
    )
    kits = spill_kit_compliance_report(db, organization_id)
    return {
        "date": day,
        "dvirs_submitted": len(dvirs),
        "dvirs_failed": sum(1 for d in dvirs if d.status == "fail"),
        "failed_dvirs": [
            {"id": d.id, "vehicle_id": d.vehicle_id, "defects": d.defects or []} for d in dvirs if d.status == "fail"
        ],
        "vehicles_missing_pre_trip": [{"vehicle_id": v.id, "license_plate": v.license_plate} for v in missing],
        "open_spill_incidents": open_incidents,
        "spill_kit_non_compliant": kits["counts"]["non_compliant"],
    }


def get_compliance_notification_counts(db: Session, organization_id, today: Optional[date] = None) -> Dict[str, int]:
    today = today or date.today()
    docs = db.query(VehicleDocument).filter(
        VehicleDocument.organization_id == organization_id, VehicleDocument.expiry_date.isnot(None)
    )
    expired = docs.filter(VehicleDocument.expiry_date < today).count()
    expiring = docs.filter(
        VehicleDocument.expiry_date >= today, VehicleDocument.expiry_date <= today + timedelta(days=30)
    ).count()
    kits = spill_kit_compliance_report(db, organization_id)
    open_incidents = (
        db.query(SpillIncident)
        .filter(SpillIncident.organization_id == organization_id, SpillIncident.status == "open")
        .count()
    )
    return {
        "expiring_documents": expiring,
        "expired_documents": expired,
        "non_compliant_spill_kits": kits["counts"]["non_compliant"],
        "open_spill_incidents": open_incidents,
    }
