import pytest

from fieldops.db import Base
from fieldops.models import models  # noqa: F401
from fieldops.services.csv_io import parse_customer_row
from fieldops.services.customers import normalize_customer_type
from fieldops.services.numbering import format_number
from fieldops.services.service_reports import _type_code
from fieldops.services.stock import generate_item_code
from fieldops.services.tenancy import GLOBAL_TABLES, find_unscoped_tables, resolve_subdomain_from_host


def test_item_codes_from_initials():
    assert generate_item_code("Standard Portable Toilet", 7) == "SPT-0007"
    assert generate_item_code("ADA unit (deluxe) trailer model", 12) == "AUD-0012"
    assert generate_item_code("", 1) == "ITM-0001"


def test_number_format():
    assert format_number("DEL", 7, 3) == "DEL-007"
    assert format_number("WO", 12, 5) == "WO-00012"


def test_report_type_code():
    assert _type_code("service") == "SERVICE"
    assert _type_code("pump-out v2") == "PUMPOUTV2"
    assert _type_code(None) == "SERVICE"


@pytest.mark.parametrize("host,expected", [
    ("acme.fieldops.test", "acme"),
    ("ACME.fieldops.test:8443", "acme"),
    ("fieldops.test", None),
    ("www.fieldops.test", None),
    ("a.b.fieldops.test", None),
    ("acme.example.com", None),
    (None, None),
])
def test_resolve_subdomain(host, expected):
    assert resolve_subdomain_from_host(host, "fieldops.test") == expected


def test_every_table_is_tenant_scoped():
    assert GLOBAL_TABLES == {"organizations", "roles", "user_roles"}
    assert find_unscoped_tables(Base.metadata) == []


def test_customer_type_normalisation():
    assert normalize_customer_type("Sports & Recreation") == "sports_recreation"
    assert normalize_customer_type("Municipal/Government") == "municipal_government"
    assert normalize_customer_type("pirates") == "not_selected"
    assert normalize_customer_type(None) == "not_selected"


def test_parse_customer_row():
    data = parse_customer_row({
        "Name": " City Parks ",
        "customer_type": "Municipal Government",
        "email": "Parks@CityParks.org",
        "billing_city": "Springfield",
        "notes": "",
    })
    assert data["name"] == "City Parks"
    assert data["customer_type"] == "municipal_government"
    assert data["email"] == "Parks@cityparks.org"
    assert data["billing_differs_from_service"] is True
    assert "notes" not in data


def test_parse_customer_row_errors():
    with pytest.raises(ValueError, match="name is required"):
        parse_customer_row({"name": ""})
    with pytest.raises(ValueError, match="invalid email"):
        parse_customer_row({"name": "X", "email": "not-an-email"})
