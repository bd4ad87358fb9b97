"""
Service report templates with version history, and the reports filled from them.
"""
import re
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationFailed, TransitionNotAllowed
from ..models.models import Job, ReportTemplate, ServiceReport, TemplateVersion, User
from . import rules_engine
from .audit import create_audit_log

logger = structlog.get_logger(__name__)

REPORT_STATUSES = ("draft", "submitted", "approved", "rejected")
REPORT_TRANSITIONS = {
    "draft": ("submitted",),
    "submitted": ("approved", "rejected"),
    "rejected": ("draft",),
    "approved": (),
}
SNAPSHOT_FIELDS = (
    "name", "template_type", "fields", "auto_requirements", "fee_rules", "default_rules", "unit_loop_enabled",
)


# ---------- TEMPLATES ----------
def template_snapshot(template: ReportTemplate) -> Dict[str, Any]:
    return {name: getattr(template, name) for name in SNAPSHOT_FIELDS}


def get_next_template_version(db: Session, template_id) -> int:
    current = (
        db.query(func.max(TemplateVersion.version_number))
        .filter(TemplateVersion.template_id == template_id)
        .scalar()
    )
    return (current or 0) + 1


def create_template_version(db: Session, template: ReportTemplate, change_summary: Optional[str] = None,
                            user: Optional[User] = None) -> TemplateVersion:
    number = get_next_template_version(db, template.id)
    version = TemplateVersion(
        organization_id=template.organization_id,
        template_id=template.id,
        version_number=number,
        snapshot=template_snapshot(template),
        change_summary=change_summary,
        created_by=user.id if user else None,
    )
    db.add(version)
    template.current_version = number
    template.updated_at = datetime.now(timezone.utc)
    db.flush()
    return version


def create_template(db: Session, organization_id, data: Dict[str, Any], user: Optional[User] = None) -> ReportTemplate:
    if not (data.get("name") or "").strip():
        raise ValidationFailed("Template name is required")
    template = ReportTemplate(organization_id=organization_id, **data)
    db.add(template)
    db.flush()
    create_template_version(db, template, "Initial version", user)
    return template


def update_template(db: Session, template: ReportTemplate, data: Dict[str, Any], user: Optional[User] = None,
                    change_summary: Optional[str] = None) -> ReportTemplate:
    """Apply changes and record them as a new version when the definition changed."""
    before = template_snapshot(template)
    for key, value in data.items():
        setattr(template, key, value)
    if template_snapshot(template) != before:
        create_template_version(db, template, change_summary or "Template updated", user)
    else:
        template.updated_at = datetime.now(timezone.utc)
        db.flush()
    return template


def rollback_template_version(db: Session, template: ReportTemplate, target_version: int,
                              reason: Optional[str] = None, user: Optional[User] = None) -> TemplateVersion:
    target = (
        db.query(TemplateVersion)
        .filter(TemplateVersion.template_id == template.id, TemplateVersion.version_number == target_version)
        .first()
    )
    if target is None:
        raise NotFoundError(f"Version {target_version} not found")
    if target_version == template.current_version:
        raise ConflictError(f"Version {target_version} is already current")
    for key in SNAPSHOT_FIELDS:
        if key in target.snapshot:
            setattr(template, key, target.snapshot[key])
    summary = f"Rolled back to version {target_version}"
    if reason:
        summary = f"{summary}: {reason}"
    version = create_template_version(db, template, summary, user)
    create_audit_log(db, template.organization_id, "report_template", template.id, "ROLLBACK",
                     actor_id=user.id if user else None,
                     changes_json={"target_version": target_version, "new_version": version.version_number})
    logger.info("template_rolled_back", template_id=str(template.id), target=target_version,
                new_version=version.version_number)
    return version


# ---------- REPORTS ----------
def _type_code(template_type: Optional[str]) -> str:
    return re.sub(r"[^A-Z0-9]", "", (template_type or "service").upper()) or "SERVICE"


def generate_report_number(db: Session, organization_id, template_type: Optional[str],
                           day: Optional[date] = None) -> str:
    """{TYPE}-{yyyymmdd}-{seq:03d}, sequence restarting per organization and day."""
    day = day or date.today()
    prefix = f"{_type_code(template_type)}-{day:%Y%m%d}-"
    numbers = (
        db.query(ServiceReport.report_number)
        .filter(ServiceReport.organization_id == organization_id, ServiceReport.report_number.like(f"{prefix}%"))
        .all()
    )
    seq = 0
    for (number,) in numbers:
        tail = number[len(prefix):]
        if tail.isdigit():
            seq = max(seq, int(tail))
    return f"{prefix}{seq + 1:03d}"


def _job_data(job: Optional[Job]) -> Dict[str, Any]:
    if job is None:
        return {}
    return {
        "job_id": str(job.id),
        "job_number": job.job_number,
        "job_type": job.job_type,
        "customer_id": str(job.customer_id),
        "customer_name": job.customer.name if job.customer else None,
        "scheduled_date": job.scheduled_date.isoformat() if job.scheduled_date else None,
        "driver_name": job.driver.full_name if job.driver else None,
    }


def _last_visit(db: Session, job: Optional[Job], template_id) -> Optional[Dict[str, Any]]:
    if job is None:
        return None
    prior = (
        db.query(ServiceReport)
        .join(Job, Job.id == ServiceReport.job_id)
        .filter(
            Job.customer_id == job.customer_id,
            ServiceReport.template_id == template_id,
            ServiceReport.job_id != job.id,
            ServiceReport.status.in_(("submitted", "approved")),
        )
        .order_by(ServiceReport.submitted_at.desc())
        .first()
    )
    if prior is None:
        return None
    return dict(prior.form_data or {}, date=(prior.submitted_at or prior.created_at).date())


def evaluate_report(template: ReportTemplate, form_data: Dict[str, Any],
                    units: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Requirements, fee suggestions and blocking issues for a form, without saving anything."""
    units = units or []
    requirements = rules_engine.evaluate_auto_requirements(form_data, template.auto_requirements or [])
    return {
        "required_fields": sorted(requirements["required_fields"]),
        "triggered_rules": [r.get("id") for r in requirements["triggered_rules"]],
        "fee_recommendations": rules_engine.evaluate_fee_suggestions(form_data, template.fee_rules or [], units),
        "issues": rules_engine.validate_submit(form_data, template.auto_requirements or [], units,
                                               template.unit_loop_enabled),
    }


def _refresh_automation(report: ServiceReport, template: ReportTemplate) -> None:
    form = report.form_data or {}
    units = report.units or []
    report.fee_recommendations = rules_engine.evaluate_fee_suggestions(form, template.fee_rules or [], units)
    report.automation_audit = rules_engine.create_automation_audit(
        form, template.auto_requirements or [], template.fee_rules or [], units, template.unit_loop_enabled
    )


def create_service_report(db: Session, organization_id, data: Dict[str, Any],
                          user: Optional[User] = None) -> ServiceReport:
    template = (
        db.query(ReportTemplate)
        .filter(ReportTemplate.id == data["template_id"], ReportTemplate.organization_id == organization_id)
        .first()
    )
    if template is None:
        raise NotFoundError("Template not found")
    if not template.is_active:
        raise ValidationFailed("Template is inactive")
    job = None
    if data.get("job_id"):
        job = db.query(Job).filter(Job.id == data["job_id"], Job.organization_id == organization_id).first()
        if job is None:
            raise NotFoundError("Job not found")

    defaults = rules_engine.evaluate_default_values(
        _job_data(job), template.default_rules or [], _last_visit(db, job, template.id)
    )
    report = ServiceReport(
        organization_id=organization_id,
        report_number=generate_report_number(db, organization_id, template.template_type),
        job_id=job.id if job else None,
        template_id=template.id,
        template_version=template.current_version,
        form_data=dict(defaults, **(data.get("form_data") or {})),
        units=data.get("units") or [],
        status="draft",
        created_by=user.id if user else None,
    )
    _refresh_automation(report, template)
    db.add(report)
    db.flush()
    logger.info("service_report_created", report_id=str(report.id), number=report.report_number)
    return report


def update_service_report(db: Session, report: ServiceReport, data: Dict[str, Any]) -> ServiceReport:
    if report.status != "draft":
        raise ConflictError("Only draft reports can be edited")
    if data.get("form_data") is not None:
        report.form_data = dict(report.form_data or {}, **data["form_data"])
    if data.get("units") is not None:
        report.units = data["units"]
    _refresh_automation(report, report.template)
    report.updated_at = datetime.now(timezone.utc)
    db.flush()
    return report


def transition_report_status(db: Session, report: ServiceReport, new_status: str,
                             user: Optional[User] = None) -> ServiceReport:
    if new_status not in REPORT_STATUSES:
        raise ValidationFailed(f"Unknown report status: {new_status}")
    if new_status not in REPORT_TRANSITIONS.get(report.status, ()):
        raise TransitionNotAllowed(report.status, new_status)

    if new_status == "submitted":
        template = report.template
        issues = rules_engine.validate_submit(report.form_data or {}, template.auto_requirements or [],
                                              report.units or [], template.unit_loop_enabled)
        if issues:
            raise ValidationFailed("Report has blocking issues", details={"issues": issues})
        _refresh_automation(report, template)
        report.submitted_at = datetime.now(timezone.utc)

    old = report.status
    report.status = new_status
    report.updated_at = datetime.now(timezone.utc)
    create_audit_log(db, report.organization_id, "service_report", report.id, "STATUS_CHANGE",
                     actor_id=user.id if user else None,
                     changes_json={"status": {"before": old, "after": new_status}})
    db.flush()
    return report
