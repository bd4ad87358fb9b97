def _portal_token(client, headers, customer_id, **options):
    r = client.post(f"/customers/{customer_id}/portal-tokens", json=options, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_create_customer_normalizes_blank_fields(client, headers):
    r = client.post(
        "/customers",
        json={"name": "  Lakeside Builders ", "customer_type": "construction", "email": "pm@lakeside-build.com",
              "phone": "   ", "service_zip": "60601"},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["name"] == "Lakeside Builders"
    assert body["customer_type"] == "construction"
    assert body["phone"] is None


def test_customer_name_required(client, headers):
    r = client.post("/customers", json={"name": "   "}, headers=headers["dispatcher"])
    assert r.status_code == 422


def test_driver_cannot_create_customer(client, headers):
    r = client.post("/customers", json={"name": "Nope"}, headers=headers["driver"])
    assert r.status_code == 403


def test_csv_import_reports_row_errors(client, headers):
    content = b"name,email,customer_type\nCity Parks,parks@cityparks.org,Municipal Government\n,bad@row.com,\nDowntown Expo,not-an-email,\n"
    r = client.post(
        "/customers/csv/import",
        files={"file": ("customers.csv", content, "text/csv")},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] == 1
    assert body["failed"] == 2
    assert [e["row"] for e in body["errors"]] == [2, 3]

    counts = client.get("/customers/type-counts", headers=headers["dispatcher"]).json()
    assert counts["municipal_government"]["total"] == 1
    assert counts["municipal_government"]["with_email"] == 1


def test_csv_import_requires_name_column(client, headers):
    r = client.post(
        "/customers/csv/import",
        files={"file": ("customers.csv", b"email\nparks@cityparks.org\n", "text/csv")},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200
    assert r.json()["errors"][0]["error"] == "Missing required column: name"


def test_csv_export_is_text_csv(client, headers, customer):
    r = client.get("/customers/csv/export", headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "Riverside Festival" in r.text


def test_portal_token_shows_customer_summary(client, headers, customer):
    token = _portal_token(client, headers["dispatcher"], customer.id)
    assert token["one_time_use"] is False

    r = client.get(f"/portal/{token['token']}")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["customer"]["name"] == "Riverside Festival"
    assert set(body["features"]) == {"jobs", "quotes", "invoices", "service_requests"}
    assert body["upcoming_jobs"] == []
    assert body["unpaid_invoices"] == []


def test_new_long_lived_token_replaces_previous(client, headers, customer):
    first = _portal_token(client, headers["dispatcher"], customer.id)
    second = _portal_token(client, headers["dispatcher"], customer.id)
    assert client.get(f"/portal/{first['token']}").status_code == 401
    assert client.get(f"/portal/{second['token']}").status_code == 200


def test_one_time_token_is_consumed(client, headers, customer):
    token = _portal_token(client, headers["dispatcher"], customer.id, one_time_use=True, expiration_hours=1)
    assert client.get(f"/portal/{token['token']}").status_code == 200
    r = client.get(f"/portal/{token['token']}")
    assert r.status_code == 401


def test_unknown_portal_token(client, db):
    r = client.get("/portal/not-a-real-token")
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid portal link"


def test_restricted_features_hide_sections(client, headers, customer):
    token = _portal_token(client, headers["dispatcher"], customer.id, expiration_hours=24, features=["jobs"])
    body = client.get(f"/portal/{token['token']}").json()
    assert "upcoming_jobs" in body
    assert "unpaid_invoices" not in body
    r = client.post(
        f"/portal/{token['token']}/service-requests",
        json={"request_type": "service", "description": "Extra cleaning"},
    )
    assert r.status_code == 403


def test_unknown_feature_rejected(client, headers, customer):
    r = client.post(
        f"/customers/{customer.id}/portal-tokens",
        json={"expiration_hours": 24, "features": ["payroll"]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 400


def test_service_request_flow(client, headers, customer):
    token = _portal_token(client, headers["dispatcher"], customer.id)["token"]

    bad = client.post(f"/portal/{token}/service-requests", json={"request_type": "teleport", "description": "x"})
    assert bad.status_code == 400

    r = client.post(
        f"/portal/{token}/service-requests",
        json={"request_type": "pickup", "description": "  Pick up units after the festival  ",
              "preferred_date": "2030-06-02"},
    )
    assert r.status_code == 200, r.text
    req = r.json()
    assert req["status"] == "submitted"
    assert req["description"] == "Pick up units after the festival"

    listed = client.get(f"/portal/{token}/service-requests").json()
    assert [x["id"] for x in listed] == [req["id"]]

    r = client.put(f"/service-requests/{req['id']}/status", json={"status": "scheduled"}, headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.json()["status"] == "scheduled"

    r = client.put(f"/service-requests/{req['id']}/status", json={"status": "lost"}, headers=headers["dispatcher"])
    assert r.status_code == 400


def test_service_requests_are_tenant_scoped(client, headers, customer, other_org_headers):
    token = _portal_token(client, headers["dispatcher"], customer.id)["token"]
    req = client.post(f"/portal/{token}/service-requests", json={"request_type": "repair", "description": "Door"}).json()
    r = client.put(f"/service-requests/{req['id']}/status", json={"status": "reviewed"}, headers=other_org_headers)
    assert r.status_code == 404
    assert client.get("/service-requests", headers=other_org_headers).json() == []


def test_qr_feedback_lands_in_organization(client, headers):
    product = client.post(
        "/inventory/products", json={"name": "Standard Unit"}, headers=headers["dispatcher"]
    ).json()
    items = client.post(
        f"/inventory/products/{product['id']}/add-tracked", json={"quantity": 1}, headers=headers["dispatcher"]
    ).json()

    r = client.post(
        "/public/qr-feedback",
        json={"product_item_id": items[0]["id"], "feedback_type": "assistance",
              "customer_message": "Out of paper", "customer_email": ""},
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "received"

    feedback = client.get("/marketing/qr-feedback?unread_only=true", headers=headers["dispatcher"]).json()
    assert len(feedback) == 1
    assert feedback[0]["customer_email"] is None

    r = client.put(f"/marketing/qr-feedback/{feedback[0]['id']}/read", headers=headers["dispatcher"])
    assert r.json()["is_read"] is True
    assert client.get("/marketing/qr-feedback?unread_only=true", headers=headers["dispatcher"]).json() == []


def test_qr_feedback_unknown_unit(client, db):
    r = client.post(
        "/public/qr-feedback",
        json={"product_item_id": "00000000-0000-0000-0000-000000000001", "feedback_type": "comment",
              "customer_message": "Nice"},
    )
    assert r.status_code == 404


# ---------- CONTACTS / LOCATIONS / NOTES ----------
def test_only_one_primary_contact(client, headers, customer):
    url = f"/customers/{customer.id}/contacts"
    first = client.post(url, json={"first_name": "Ana", "is_primary": True}, headers=headers["dispatcher"]).json()
    second = client.post(url, json={"first_name": "Ben", "is_primary": True}, headers=headers["dispatcher"]).json()
    assert second["is_primary"] is True

    contacts = client.get(url, headers=headers["dispatcher"]).json()
    assert [(c["first_name"], c["is_primary"]) for c in contacts] == [("Ben", True), ("Ana", False)]

    r = client.put(f"{url}/{first['id']}", json={"is_primary": True}, headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    contacts = client.get(url, headers=headers["dispatcher"]).json()
    assert [c["first_name"] for c in contacts if c["is_primary"]] == ["Ana"]


def test_first_location_becomes_default(client, headers, customer):
    url = f"/customers/{customer.id}/locations"
    park = client.post(url, json={"name": "North Park", "zip": "60601"}, headers=headers["dispatcher"]).json()
    assert park["is_default"] is True
    assert park["timezone"] == "America/Chicago"

    lot = client.post(url, json={"name": "West Lot", "zip": "85001", "is_default": True},
                      headers=headers["dispatcher"]).json()
    assert lot["timezone"] == "America/Phoenix"
    locations = client.get(url, headers=headers["dispatcher"]).json()
    assert [(loc["name"], loc["is_default"]) for loc in locations] == [("West Lot", True), ("North Park", False)]

    r = client.put(f"{url}/{park['id']}", json={"is_default": True, "zip": "10001"}, headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    assert r.json()["timezone"] == "America/New_York"
    defaults = [loc["name"] for loc in client.get(url, headers=headers["dispatcher"]).json() if loc["is_default"]]
    assert defaults == ["North Park"]


def test_customer_notes(client, headers, customer):
    url = f"/customers/{customer.id}/notes"
    r = client.post(url, json={"note_text": "  Gate locked after 6pm ", "is_important": True},
                    headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    note = r.json()
    assert note["note_text"] == "Gate locked after 6pm"
    assert note["author_name"] == "Dispatcher Tester"

    client.post(url, json={"note_text": "Prefers morning service"}, headers=headers["dispatcher"])
    notes = client.get(url, headers=headers["dispatcher"]).json()
    assert [n["note_text"] for n in notes] == ["Prefers morning service", "Gate locked after 6pm"]

    r = client.put(f"{url}/{note['id']}", json={"is_important": False}, headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.json()["is_important"] is False
    assert r.json()["updated_at"] is not None

    assert client.post(url, json={"note_text": "   "}, headers=headers["dispatcher"]).status_code == 400
    assert client.put(f"{url}/{note['id']}", json={"note_text": ""}, headers=headers["dispatcher"]).status_code == 400
