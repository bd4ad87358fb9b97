"""
Tenant scoping helpers.

Every tenant-owned row carries organization_id; queries made on behalf of a
user go through scoped() so rows from other organizations are invisible.
"""
import uuid
from typing import Optional, Type, TypeVar

from sqlalchemy.orm import Session, Query

from ..config import settings
from ..errors import NotFoundError, ConfigurationError
from ..models.models import Organization

T = TypeVar("T")

# Tables shared across tenants
GLOBAL_TABLES = {
    "organizations",
    "roles",
    "user_roles",
}


def scoped(db: Session, model: Type[T], organization_id: uuid.UUID) -> Query:
    return db.query(model).filter(model.organization_id == organization_id)


def get_scoped_or_404(db: Session, model: Type[T], obj_id, organization_id: uuid.UUID, label: Optional[str] = None) -> T:
    label = label or model.__name__
    try:
        obj_uuid = obj_id if isinstance(obj_id, uuid.UUID) else uuid.UUID(str(obj_id))
    except ValueError:
        raise NotFoundError(f"{label} not found")
    obj = scoped(db, model, organization_id).filter(model.id == obj_uuid).first()
    if obj is None:
        raise NotFoundError(f"{label} not found")
    return obj


def normalize_subdomain(subdomain: Optional[str]) -> str:
    return (subdomain or "").strip().lower()


def resolve_subdomain_from_host(host: Optional[str], root_domain: Optional[str] = None) -> Optional[str]:
    """
    Extract the tenant subdomain from a Host header.

    Returns None for the bare root domain, www, or hosts outside the root domain.
    """
    root = normalize_subdomain(root_domain if root_domain is not None else settings.root_domain)
    if not host or not root:
        return None
    hostname = host.strip().lower().split(":", 1)[0]
    suffix = f".{root}"
    if hostname == root or not hostname.endswith(suffix):
        return None
    sub = hostname[: -len(suffix)]
    if not sub or sub == "www" or "." in sub:
        return None
    return sub


def get_organization_by_subdomain(db: Session, subdomain: str) -> Organization:
    if not settings.root_domain:
        raise ConfigurationError("Tenant routing is not configured")
    sub = normalize_subdomain(subdomain)
    if not sub:
        raise NotFoundError("Organization not found")
    org = (
        db.query(Organization)
        .filter(Organization.subdomain == sub, Organization.is_active.is_(True))
        .first()
    )
    if org is None:
        raise NotFoundError("Organization not found")
    return org


def tenant_url(org: Organization, path: str = "") -> str:
    if settings.root_domain:
        return f"https://{org.subdomain}.{settings.root_domain}{path}"
    return f"{settings.public_base_url}{path}"


def find_unscoped_tables(metadata) -> list:
    """Tables with no organization_id column that are not known-global."""
    missing = []
    for name, table in sorted(metadata.tables.items()):
        if name in GLOBAL_TABLES:
            continue
        if "organization_id" not in table.columns:
            missing.append(name)
    return missing
