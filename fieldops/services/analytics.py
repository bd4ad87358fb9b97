"""
Revenue, maintenance and dashboard analytics.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import ValidationFailed
from ..models.models import (
    Customer,
    Invoice,
    Job,
    MaintenanceRecord,
    Payment,
    Quote,
    Vehicle,
    WorkOrder,
)
from . import work_order_rules as rules
from .billing import get_overdue_invoices_count, money
from .compliance import get_compliance_notification_counts
from .consumables import low_stock_consumables
from .stock import low_stock_products


def _window(start: date, end: date):
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc),
    )


def calculate_revenue_analytics(db: Session, organization_id, start: date, end: date) -> Dict[str, Any]:
    if end < start:
        raise ValidationFailed("end must be on or after start")
    start_dt, end_dt = _window(start, end)

    invoices = (
        db.query(Invoice, Customer.customer_type)
        .join(Customer, Customer.id == Invoice.customer_id)
        .filter(
            Invoice.organization_id == organization_id,
            Invoice.status != "cancelled",
            Invoice.issue_date >= start,
            Invoice.issue_date <= end,
        )
        .all()
    )
    by_type: Dict[str, float] = {}
    invoiced = 0.0
    outstanding = 0.0
    for inv, customer_type in invoices:
        invoiced += inv.amount or 0
        outstanding += inv.balance_due
        by_type[customer_type] = by_type.get(customer_type, 0.0) + (inv.amount or 0)

    collected = (
        db.query(func.coalesce(func.sum(Payment.amount), 0.0))
        .filter(
            Payment.organization_id == organization_id,
            Payment.paid_at >= start_dt,
            Payment.paid_at < end_dt,
        )
        .scalar()
    )

    quote_counts = dict(
        db.query(Quote.status, func.count(Quote.id))
        .filter(
            Quote.organization_id == organization_id,
            Quote.deleted_at.is_(None),
            Quote.created_at >= start_dt,
            Quote.created_at < end_dt,
        )
        .group_by(Quote.status)
        .all()
    )
    decided = sum(quote_counts.get(s, 0) for s in ("sent", "accepted", "declined", "expired"))
    accepted = quote_counts.get("accepted", 0)

    return {
        "start": start,
        "end": end,
        "total_invoiced": money(invoiced),
        "total_collected": money(collected),
        "total_outstanding": money(outstanding),
        "invoice_count": len(invoices),
        "average_invoice": money(invoiced / len(invoices)) if invoices else 0.0,
        "revenue_by_customer_type": {k: money(v) for k, v in sorted(by_type.items())},
        "quote_conversion_rate": round(accepted / decided * 100, 1) if decided else 0.0,
    }


def get_maintenance_kpis(db: Session, organization_id, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    work_orders = db.query(WorkOrder).filter(WorkOrder.organization_id == organization_id).all()
    open_by_status: Dict[str, int] = {}
    overdue = 0
    close_days = []
    for wo in work_orders:
        if wo.status == "completed":
            if wo.closed_at:
                close_days.append(rules.get_work_order_age(wo))
            continue
        open_by_status[wo.status] = open_by_status.get(wo.status, 0) + 1
        if rules.is_work_order_overdue(wo, today):
            overdue += 1

    spend = (
        db.query(func.coalesce(func.sum(MaintenanceRecord.cost), 0.0))
        .filter(
            MaintenanceRecord.organization_id == organization_id,
            MaintenanceRecord.service_date >= today - timedelta(days=30),
            MaintenanceRecord.service_date <= today,
        )
        .scalar()
    )
    out_of_service = (
        db.query(Vehicle)
        .filter(Vehicle.organization_id == organization_id, Vehicle.status == "out_of_service")
        .count()
    )
    return {
        "open_work_orders": sum(open_by_status.values()),
        "open_by_status": open_by_status,
        "overdue_work_orders": overdue,
        "average_days_to_close": round(sum(close_days) / len(close_days), 1) if close_days else 0.0,
        "maintenance_spend_30d": money(spend),
        "vehicles_out_of_service": out_of_service,
    }


def get_dashboard(db: Session, organization_id, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    jobs_today = dict(
        db.query(Job.status, func.count(Job.id))
        .filter(Job.organization_id == organization_id, Job.scheduled_date == today)
        .group_by(Job.status)
        .all()
    )
    return {
        "date": today,
        "jobs_today": {"total": sum(jobs_today.values()), "by_status": jobs_today},
        "low_stock_products": len(low_stock_products(db, organization_id)),
        "low_stock_consumables": len(low_stock_consumables(db, organization_id)),
        "overdue_invoices": get_overdue_invoices_count(db, organization_id, today),
        "compliance": get_compliance_notification_counts(db, organization_id, today),
    }
