"""
CSV template, export and import for customers.
"""
import csv
import io
from typing import List, Dict, Any, Iterable

from email_validator import validate_email, EmailNotValidError
from sqlalchemy.orm import Session

from ..models.models import Customer
from .customers import normalize_customer_type

CUSTOMER_CSV_COLUMNS = [
    "name",
    "customer_type",
    "email",
    "phone",
    "service_street",
    "service_street2",
    "service_city",
    "service_state",
    "service_zip",
    "billing_street",
    "billing_city",
    "billing_state",
    "billing_zip",
    "notes",
]


def _write(rows: Iterable[List[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CUSTOMER_CSV_COLUMNS)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue()


def customer_csv_template() -> str:
    return _write([[
        "Acme Events", "events_festivals", "events@acme.example", "555-0100",
        "1 Main St", "", "Springfield", "IL", "62701", "", "", "", "", "",
    ]])


def export_customers_csv(db: Session, organization_id) -> str:
    customers = (
        db.query(Customer)
        .filter(Customer.organization_id == organization_id, Customer.deleted_at.is_(None))
        .order_by(Customer.name)
        .all()
    )
    return _write([[getattr(c, col) for col in CUSTOMER_CSV_COLUMNS] for c in customers])


def parse_customer_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate one CSV row and map it to Customer fields. Raises ValueError."""
    row = {k.strip().lower(): (v or "").strip() for k, v in raw.items() if k}
    name = row.get("name")
    if not name:
        raise ValueError("name is required")
    data: Dict[str, Any] = {"name": name, "customer_type": normalize_customer_type(row.get("customer_type"))}
    email = row.get("email")
    if email:
        try:
            data["email"] = validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise ValueError(f"invalid email: {e}")
    for col in CUSTOMER_CSV_COLUMNS:
        if col in data or col == "email":
            continue
        if row.get(col):
            data[col] = row[col]
    if any(data.get(c) for c in ("billing_street", "billing_city", "billing_state", "billing_zip")):
        data["billing_differs_from_service"] = True
    return data


def import_customers_csv(db: Session, organization_id, content: bytes) -> Dict[str, Any]:
    """
    Import customers from a UTF-8 CSV file.

    Row numbers in errors are 1-based data rows (the header is not counted).
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return {"success": 0, "failed": 0, "errors": [{"row": 0, "error": "File is not valid UTF-8"}]}

    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip().lower() for h in (reader.fieldnames or [])]
    if "name" not in headers:
        return {"success": 0, "failed": 0, "errors": [{"row": 0, "error": "Missing required column: name"}]}

    success, errors = 0, []
    for idx, raw in enumerate(reader, start=1):
        try:
            data = parse_customer_row(raw)
        except ValueError as e:
            errors.append({"row": idx, "error": str(e)})
            continue
        db.add(Customer(organization_id=organization_id, **data))
        success += 1
    db.flush()
    return {"success": success, "failed": len(errors), "errors": errors}

