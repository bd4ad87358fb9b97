"""
Job lifecycle service: numbering, creation with equipment and consumables,
status transitions and their inventory side effects.
"""
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy.orm import Session

from ..errors import TransitionNotAllowed, ValidationFailed, NotFoundError
from ..models.models import (
    Job,
    JobStatusLog,
    JobNote,
    Customer,
    CustomerServiceLocation,
    Organization,
    Product,
    ProductItem,
    Quote,
    User,
    Vehicle,
)
from . import stock as stock_service
from .audit import create_audit_log
from .consumables import process_job_consumables
from .numbering import next_number
from .timezones import get_timezone_from_zip
from .tenancy import get_scoped_or_404

logger = structlog.get_logger(__name__)

JOB_TYPES = ("delivery", "pickup", "partial-pickup", "service", "on-site-survey")
JOB_STATUSES = ("unassigned", "assigned", "in_progress", "completed", "cancelled")

ALLOWED_JOB_TRANSITIONS = {
    "unassigned": ("assigned", "cancelled"),
    "assigned": ("in_progress", "unassigned", "cancelled"),
    "in_progress": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}


def get_next_job_number(db: Session, organization_id, job_type: str) -> str:
    if job_type not in JOB_TYPES:
        raise ValidationFailed(f"Unknown job type: {job_type}")
    return next_number(db, organization_id, job_type)


def resolve_job_timezone(db: Session, customer: Customer, org: Organization,
                         location: Optional[CustomerServiceLocation] = None) -> str:
    loc = location
    if loc is None:
        loc = (
            db.query(CustomerServiceLocation)
            .filter(CustomerServiceLocation.customer_id == customer.id, CustomerServiceLocation.is_default.is_(True))
            .first()
        )
    if loc is not None:
        return loc.timezone or get_timezone_from_zip(loc.zip, loc.state)
    if customer.service_zip:
        return get_timezone_from_zip(customer.service_zip, customer.service_state)
    return org.timezone


def create_job(db: Session, organization_id, data: Dict[str, Any], user: Optional[User] = None) -> Job:
    """
    Create a job with its number, timezone, equipment reservations and consumables.

    data keys: job_type, customer_id, scheduled_date, and optionally
    scheduled_time, driver_id, vehicle_id, service_location_id, notes,
    special_instructions, timezone, quote_id, parent_job_id, total_price,
    equipment [{strategy: bulk|specific, product_id, quantity, item_ids,
    return_date}], billing_method, consumables [{consumable_id, quantity}],
    bundle_id.
    """
    job_type = data["job_type"]
    customer = (
        db.query(Customer)
        .filter(Customer.id == data["customer_id"], Customer.organization_id == organization_id,
                Customer.deleted_at.is_(None))
        .first()
    )
    if customer is None:
        raise NotFoundError("Customer not found")
    org = db.get(Organization, organization_id)

    location = None
    if data.get("service_location_id"):
        location = (
            db.query(CustomerServiceLocation)
            .filter(CustomerServiceLocation.id == data["service_location_id"],
                    CustomerServiceLocation.customer_id == customer.id)
            .first()
        )
        if location is None:
            raise NotFoundError("Service location not found")

    if data.get("driver_id"):
        driver = db.query(User).filter(User.id == data["driver_id"], User.organization_id == organization_id).first()
        if driver is None:
            raise NotFoundError("Driver not found")
    if data.get("vehicle_id"):
        get_scoped_or_404(db, Vehicle, data["vehicle_id"], organization_id, "Vehicle")
    quote = parent = None
    if data.get("quote_id"):
        quote = get_scoped_or_404(db, Quote, data["quote_id"], organization_id, "Quote")
    if data.get("parent_job_id"):
        parent = get_scoped_or_404(db, Job, data["parent_job_id"], organization_id, "Parent job")

    job = Job(
        organization_id=organization_id,
        job_number=get_next_job_number(db, organization_id, job_type),
        job_type=job_type,
        customer_id=customer.id,
        service_location_id=location.id if location else None,
        driver_id=data.get("driver_id"),
        vehicle_id=data.get("vehicle_id"),
        scheduled_date=data["scheduled_date"],
        scheduled_time=data.get("scheduled_time"),
        timezone=data.get("timezone") or resolve_job_timezone(db, customer, org, location),
        status="assigned" if data.get("driver_id") else "unassigned",
        notes=data.get("notes"),
        special_instructions=data.get("special_instructions"),
        quote_id=quote.id if quote else None,
        parent_job_id=parent.id if parent else None,
        is_service_job=job_type == "service",
        billing_method=data.get("billing_method"),
        total_price=data.get("total_price"),
        created_by=user.id if user else None,
    )
    db.add(job)
    db.flush()

    for eq in data.get("equipment") or []:
        return_date = eq.get("return_date")
        if eq.get("strategy") == "specific":
            for item_id in eq.get("item_ids") or []:
                item = (
                    db.query(ProductItem)
                    .filter(ProductItem.id == item_id, ProductItem.organization_id == organization_id)
                    .first()
                )
                if item is None:
                    raise NotFoundError("Unit not found")
                stock_service.reserve_specific_item_for_job(db, job, item, job.scheduled_date, return_date)
        else:
            product = (
                db.query(Product)
                .filter(Product.id == eq["product_id"], Product.organization_id == organization_id)
                .first()
            )
            if product is None:
                raise NotFoundError("Product not found")
            stock_service.reserve_equipment_for_job(
                db, job, product, int(eq.get("quantity") or 1), job.scheduled_date, return_date
            )

    if data.get("billing_method") and (data.get("consumables") or data.get("bundle_id")):
        process_job_consumables(
            db, job, data["billing_method"], data.get("consumables"), data.get("bundle_id"),
            user_id=user.id if user else None,
        )

    db.add(JobStatusLog(
        organization_id=organization_id,
        job_id=job.id,
        old_status=None,
        new_status=job.status,
        changed_by=user.id if user else None,
        notes="Job created",
    ))
    create_audit_log(db, organization_id, "job", job.id, "CREATE", actor_id=user.id if user else None,
                     changes_json={"job_number": job.job_number, "status": job.status})
    logger.info("job_created", job_id=str(job.id), job_number=job.job_number, job_type=job_type)
    return job


def log_job_status_change(
    db: Session,
    job: Job,
    new_status: str,
    changed_by=None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    notes: Optional[str] = None,
) -> JobStatusLog:
    """Validate and apply a status change, recording who/where and its side effects."""
    if new_status not in JOB_STATUSES:
        raise ValidationFailed(f"Unknown job status: {new_status}")
    old_status = job.status
    if new_status not in ALLOWED_JOB_TRANSITIONS.get(old_status, ()):
        raise TransitionNotAllowed(old_status, new_status)
    if new_status == "assigned" and not job.driver_id:
        raise ValidationFailed("A driver is required to assign a job")

    job.status = new_status
    job.updated_at = datetime.now(timezone.utc)
    if new_status == "unassigned":
        job.driver_id = None
    if new_status == "completed":
        job.actual_completion_time = datetime.now(timezone.utc)
        adjust_stock_for_job_completion(db, job)
    elif new_status == "cancelled":
        stock_service.release_job_assignments(db, job)

    entry = JobStatusLog(
        organization_id=job.organization_id,
        job_id=job.id,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        latitude=latitude,
        longitude=longitude,
        notes=notes,
    )
    db.add(entry)
    create_audit_log(
        db, job.organization_id, "job", job.id, "STATUS_CHANGE", actor_id=changed_by,
        changes_json={"status": {"before": old_status, "after": new_status}},
        context={"latitude": latitude, "longitude": longitude} if latitude is not None else None,
    )
    db.flush()
    logger.info("job_status_changed", job_id=str(job.id), old_status=old_status, new_status=new_status)
    return entry


def adjust_stock_for_job_completion(db: Session, job: Job) -> Dict[str, int]:
    """
    Move equipment when a job completes.

    delivery: reservations become delivered and tracked units deployed.
    pickup / partial-pickup: the parent job's (or this job's) delivered
    equipment is returned and tracked units become available again.
    service and survey jobs move no inventory.
    """
    now = datetime.now(timezone.utc)
    moved = 0
    if job.job_type == "delivery":
        for a in stock_service.job_assignments(db, job):
            if a.status in ("reserved", "assigned"):
                a.status = "delivered"
                a.updated_at = now
                if a.product_item is not None:
                    a.product_item.status = "deployed"
                moved += 1
    elif job.job_type in ("pickup", "partial-pickup"):
        source = job
        if job.parent_job_id:
            source = (
                db.query(Job)
                .filter(Job.id == job.parent_job_id, Job.organization_id == job.organization_id)
                .first()
            ) or job
        for a in stock_service.job_assignments(db, source):
            if a.status == "delivered" or (source is job and a.status in ("reserved", "assigned")):
                a.status = "returned"
                a.return_date = a.return_date if a.return_date and a.return_date <= date.today() else date.today()
                a.updated_at = now
                if a.product_item is not None:
                    stock_service.free_item_if_idle(db, a.product_item)
                moved += 1
    db.flush()
    return {"assignments_updated": moved}


def add_job_note(db: Session, job: Job, note_text: str, author_id=None, note_type: str = "general") -> JobNote:
    if not note_text or not note_text.strip():
        raise ValidationFailed("Note text is required")
    note = JobNote(
        organization_id=job.organization_id,
        job_id=job.id,
        author_id=author_id,
        note_text=note_text.strip(),
        note_type=note_type,
    )
    db.add(note)
    db.flush()
    return note


def get_job_notes(db: Session, job: Job) -> List[JobNote]:
    return db.query(JobNote).filter(JobNote.job_id == job.id).order_by(JobNote.created_at.desc()).all()


def driver_jobs(db: Session, driver: User, from_date: Optional[date] = None) -> List[Job]:
    """Today's and upcoming jobs for a driver."""
    return (
        db.query(Job)
        .filter(
            Job.organization_id == driver.organization_id,
            Job.driver_id == driver.id,
            Job.scheduled_date >= (from_date or date.today()),
            Job.status != "cancelled",
        )
        .order_by(Job.scheduled_date, Job.scheduled_time)
        .all()
    )
