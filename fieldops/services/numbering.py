"""
Per-organization document numbering.

Counters live on the Organization row; reading and incrementing happen in the
caller's transaction (row locked on databases that support FOR UPDATE).
"""
from sqlalchemy.orm import Session

from ..errors import ValidationFailed
from ..models.models import Organization

# kind -> (prefix attribute, counter attribute, zero-pad width)
NUMBER_SEQUENCES = {
    "delivery": ("delivery_prefix", "next_delivery_number", 3),
    "pickup": ("pickup_prefix", "next_pickup_number", 3),
    "partial-pickup": ("partial_pickup_prefix", "next_partial_pickup_number", 3),
    "service": ("service_prefix", "next_service_number", 3),
    "on-site-survey": ("survey_prefix", "next_survey_number", 3),
    "quote": ("quote_prefix", "next_quote_number", 4),
    "invoice": ("invoice_prefix", "next_invoice_number", 4),
    "work_order": ("work_order_prefix", "next_work_order_number", 5),
}


def format_number(prefix: str, value: int, width: int) -> str:
    return f"{prefix}-{value:0{width}d}"


def next_number(db: Session, organization_id, kind: str) -> str:
    """Consume and return the next number for kind."""
    prefix_attr, counter_attr, width = _sequence(kind)
    org = (
        db.query(Organization)
        .filter(Organization.id == organization_id)
        .with_for_update()
        .one()
    )
    current = getattr(org, counter_attr) or 1
    setattr(org, counter_attr, current + 1)
    db.flush()
    return format_number(getattr(org, prefix_attr), current, width)


def _sequence(kind: str):
    try:
        return NUMBER_SEQUENCES[kind]
    except KeyError:
        raise ValidationFailed(f"Unknown number sequence: {kind}")
