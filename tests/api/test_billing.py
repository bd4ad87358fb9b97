from datetime import date, timedelta

import pytest


LINES = [
    {"name": "Standard Restroom", "quantity": 2, "unit_price": 199.99},
    {"name": "Hand Wash Station", "quantity": 1, "unit_price": 25.01},
]


@pytest.fixture
def quote(client, headers, customer):
    r = client.post(
        "/quotes",
        json={"customer_id": str(customer.id), "items": LINES, "discount_type": "percentage",
              "discount_value": 10, "additional_fees": 25, "tax_rate": 8.25},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    return r.json()


def _invoice(client, headers, customer_id, **extra):
    payload = {"customer_id": str(customer_id), "items": [{"name": "Weekend rental", "quantity": 1, "unit_price": 300}]}
    payload.update(extra)
    r = client.post("/invoices", json=payload, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_quote_totals(quote):
    assert quote["quote_number"] == "Q-0001"
    assert quote["status"] == "draft"
    assert quote["subtotal"] == 424.99
    assert quote["discount_amount"] == 42.5
    assert quote["tax_amount"] == 33.62
    assert quote["total_amount"] == 441.11
    assert [i["line_total"] for i in quote["items"]] == [399.98, 25.01]


def test_quote_requires_line_names(client, headers, customer):
    r = client.post(
        "/quotes", json={"customer_id": str(customer.id), "items": [{"quantity": 1, "unit_price": 5}]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 400


def test_driver_has_no_billing_access(client, headers, quote):
    assert client.get(f"/quotes/{quote['id']}", headers=headers["driver"]).status_code == 403


def test_update_recomputes_totals(client, headers, quote):
    r = client.put(
        f"/quotes/{quote['id']}",
        json={"discount_type": "fixed", "discount_value": 1000, "tax_rate": 0},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["discount_amount"] == 424.99
    assert body["total_amount"] == 25.0


def test_quote_status_transitions(client, headers, quote):
    url = f"/quotes/{quote['id']}/status"
    assert client.put(url, json={"status": "expired"}, headers=headers["dispatcher"]).status_code == 409
    r = client.put(url, json={"status": "sent"}, headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.json()["sent_at"] is not None
    assert client.put(url, json={"status": "declined"}, headers=headers["dispatcher"]).status_code == 200

    r = client.put(f"/quotes/{quote['id']}", json={"notes": "too late"}, headers=headers["dispatcher"])
    assert r.status_code == 409


def test_send_quote_without_smtp_still_marks_sent(client, headers, quote):
    r = client.post(f"/quotes/{quote['id']}/send", headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "sent"
    assert body["email_status"] == "skipped"
    assert body["recipient"] == "events@riverside-fest.com"


def test_quote_pdf(client, headers, quote):
    r = client.get(f"/quotes/{quote['id']}/pdf", headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert r.content.startswith(b"%PDF")


def test_convert_quote_to_invoice_once(client, headers, quote):
    r = client.post(f"/quotes/{quote['id']}/convert-to-invoice", headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    invoice = r.json()
    assert invoice["invoice_number"] == "INV-0001"
    assert invoice["amount"] == 441.11
    assert invoice["balance_due"] == 441.11
    assert invoice["quote_id"] == quote["id"]
    assert len(invoice["items"]) == 2

    assert client.get(f"/quotes/{quote['id']}", headers=headers["dispatcher"]).json()["status"] == "accepted"
    again = client.post(f"/quotes/{quote['id']}/convert-to-invoice", headers=headers["dispatcher"])
    assert again.status_code == 409


def test_deleted_quote_disappears(client, headers, quote):
    assert client.delete(f"/quotes/{quote['id']}", headers=headers["dispatcher"]).status_code == 200
    assert client.get(f"/quotes/{quote['id']}", headers=headers["dispatcher"]).status_code == 404
    assert client.get("/quotes", headers=headers["dispatcher"]).json() == []


def test_generate_jobs_needs_rental_dates(client, headers, quote):
    r = client.post(f"/quotes/{quote['id']}/generate-jobs", headers=headers["dispatcher"])
    assert r.status_code == 400


def test_generate_jobs_for_rental_window(client, headers, customer):
    product = client.post(
        "/inventory/products", json={"name": "Deluxe Flushable", "stock_total": 4}, headers=headers["dispatcher"]
    ).json()
    start = date.today() + timedelta(days=10)
    quote = client.post(
        "/quotes",
        json={"customer_id": str(customer.id), "items": [
            {"product_id": product["id"], "quantity": 3, "unit_price": 150,
             "rental_start_date": start.isoformat(), "rental_end_date": (start + timedelta(days=2)).isoformat()},
        ]},
        headers=headers["dispatcher"],
    ).json()
    assert quote["items"][0]["name"] == "Deluxe Flushable"
    assert quote["items"][0]["line_item_type"] == "inventory"

    r = client.post(f"/quotes/{quote['id']}/generate-jobs", headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    assert r.json()["jobs_created"] == 2

    jobs = client.get("/jobs", headers=headers["dispatcher"]).json()
    assert sorted(j["job_type"] for j in jobs) == ["delivery", "pickup"]
    delivery = next(j for j in jobs if j["job_type"] == "delivery")
    pickup = next(j for j in jobs if j["job_type"] == "pickup")
    assert pickup["parent_job_id"] == delivery["id"]
    assert pickup["scheduled_date"] == (start + timedelta(days=2)).isoformat()


def test_payments_and_balance(client, headers, customer):
    invoice = _invoice(client, headers["dispatcher"], customer.id)
    url = f"/invoices/{invoice['id']}/payments"

    r = client.post(url, json={"amount": 100, "method": "check", "reference": "1042"}, headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    body = client.get(f"/invoices/{invoice['id']}", headers=headers["dispatcher"]).json()
    assert body["status"] == "partial"
    assert body["balance_due"] == 200.0

    over = client.post(url, json={"amount": 250, "method": "cash"}, headers=headers["dispatcher"])
    assert over.status_code == 400

    client.post(url, json={"amount": 200, "method": "card"}, headers=headers["dispatcher"])
    body = client.get(f"/invoices/{invoice['id']}", headers=headers["dispatcher"]).json()
    assert body["status"] == "paid"
    assert body["balance_due"] == 0.0
    assert len(body["payments"]) == 2

    cancel = client.post(f"/invoices/{invoice['id']}/cancel", headers=headers["dispatcher"])
    assert cancel.status_code == 409


def test_cancel_rules(client, headers, customer):
    untouched = _invoice(client, headers["dispatcher"], customer.id)
    r = client.post(f"/invoices/{untouched['id']}/cancel", headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    pay = client.post(f"/invoices/{untouched['id']}/payments", json={"amount": 1}, headers=headers["dispatcher"])
    assert pay.status_code == 409

    partly_paid = _invoice(client, headers["dispatcher"], customer.id)
    client.post(f"/invoices/{partly_paid['id']}/payments", json={"amount": 50}, headers=headers["dispatcher"])
    assert client.post(f"/invoices/{partly_paid['id']}/cancel", headers=headers["dispatcher"]).status_code == 409


def test_overdue_refresh_and_dismissal(client, headers, customer):
    past_due = _invoice(client, headers["dispatcher"], customer.id,
                        due_date=(date.today() - timedelta(days=5)).isoformat())
    _invoice(client, headers["dispatcher"], customer.id)

    overdue = client.get("/invoices/overdue", headers=headers["dispatcher"]).json()
    assert [o["invoice_id"] for o in overdue] == [past_due["id"]]
    assert overdue[0]["days_overdue"] == 5

    r = client.post("/invoices/overdue/refresh", headers=headers["dispatcher"])
    assert r.json() == {"updated": 1}
    assert client.get(f"/invoices/{past_due['id']}", headers=headers["dispatcher"]).json()["status"] == "overdue"

    r = client.post(f"/invoices/{past_due['id']}/dismiss-overdue", json={"reason": "Customer on payment plan"},
                    headers=headers["dispatcher"])
    assert r.status_code == 200
    assert client.get("/invoices/overdue/count", headers=headers["dispatcher"]).json() == {"count": 0}
    again = client.post(f"/invoices/{past_due['id']}/dismiss-overdue", headers=headers["dispatcher"])
    assert again.status_code == 409


def test_metrics(client, headers, customer, quote):
    client.put(f"/quotes/{quote['id']}/status", json={"status": "sent"}, headers=headers["dispatcher"])
    client.post(f"/quotes/{quote['id']}/convert-to-invoice", headers=headers["dispatcher"])

    quotes = client.get("/quotes/metrics", headers=headers["dispatcher"]).json()
    assert quotes["total_quotes"] == 1
    assert quotes["conversion_rate"] == 100.0

    invoices = client.get("/invoices/metrics", headers=headers["dispatcher"]).json()
    assert invoices["total_invoices"] == 1
    assert invoices["total_outstanding"] == 441.11


def test_quote_update_is_audited(client, headers, quote):
    client.put(f"/quotes/{quote['id']}", json={"tax_rate": 0}, headers=headers["dispatcher"])
    logs = client.get("/audit-logs", params={"entity_type": "quote", "entity_id": quote["id"]},
                      headers=headers["dispatcher"]).json()
    update = next(entry for entry in logs if entry["action"] == "UPDATE")
    assert set(update["changes_json"]) == {"tax_amount", "total_amount"}
    assert update["changes_json"]["tax_amount"] == {"before": 33.62, "after": 0.0}

    check = client.get(f"/audit-logs/{update['id']}/verify", headers=headers["dispatcher"]).json()
    assert check["valid"] is True


def test_invoice_job_must_belong_to_organization(client, headers, customer, other_org):
    _, other_headers = other_org
    outsider = client.post("/customers", json={"name": "Globex Yard"}, headers=other_headers).json()
    foreign = client.post(
        "/jobs",
        json={"job_type": "delivery", "customer_id": outsider["id"], "scheduled_date": date.today().isoformat()},
        headers=other_headers,
    ).json()
    r = client.post(
        "/invoices",
        json={"customer_id": str(customer.id), "job_id": foreign["id"],
              "items": [{"name": "Weekend rental", "quantity": 1, "unit_price": 300}]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 404

    own = client.post(
        "/jobs",
        json={"job_type": "delivery", "customer_id": str(customer.id), "scheduled_date": date.today().isoformat()},
        headers=headers["dispatcher"],
    ).json()
    invoice = _invoice(client, headers["dispatcher"], customer.id, job_id=own["id"])
    assert invoice["job_id"] == own["id"]


def test_pdf_renders_markup_characters(client, headers):
    buyer = client.post("/customers", json={"name": "Smith & Sons <Events>"}, headers=headers["dispatcher"]).json()
    r = client.post(
        "/quotes",
        json={"customer_id": buyer["id"],
              "items": [{"name": "Tank <A> & B", "description": "Pump if level > 3/4", "quantity": 1,
                         "unit_price": 80}],
              "notes": "Use the <north> gate & lot B"},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    pdf = client.get(f"/quotes/{r.json()['id']}/pdf", headers=headers["dispatcher"])
    assert pdf.status_code == 200
    assert pdf.content.startswith(b"%PDF")
