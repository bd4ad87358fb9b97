import uuid
from datetime import date, timedelta

import pytest

from fieldops.models.models import Consumable, Product


FUTURE = date.today() + timedelta(days=30)


@pytest.fixture
def product(client, headers):
    r = client.post(
        "/inventory/products",
        json={"name": "Standard Restroom", "stock_total": 10, "default_price_per_day": 25.0},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    return r.json()


def _create_job(client, headers, customer_id, **extra):
    payload = {"job_type": "delivery", "customer_id": str(customer_id), "scheduled_date": FUTURE.isoformat()}
    payload.update(extra)
    r = client.post("/jobs", json=payload, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def _status(client, headers, job_id, status):
    return client.put(f"/jobs/{job_id}/status", json={"status": status}, headers=headers)


# ---------- INVENTORY ----------
def test_initial_stock_is_logged(client, headers, product):
    assert product["stock_total"] == 10
    adjustments = client.get(
        f"/inventory/products/{product['id']}/adjustments", headers=headers["dispatcher"]
    ).json()
    assert len(adjustments) == 1
    assert adjustments[0]["quantity_change"] == 10
    assert adjustments[0]["new_quantity"] == 10


def test_adjust_floors_at_zero(client, headers, product):
    r = client.post(
        f"/inventory/products/{product['id']}/adjust",
        json={"quantity_change": -25, "reason": "Storm damage"},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["old_stock"] == 10
    assert body["new_stock"] == 0

    stock = client.get(f"/inventory/products/{product['id']}/stock", headers=headers["dispatcher"]).json()
    assert stock["master_stock"] == 0
    assert stock["is_low_stock"] is True


def test_adjust_rejects_zero_change(client, headers, product):
    r = client.post(
        f"/inventory/products/{product['id']}/adjust",
        json={"quantity_change": 0, "reason": "Count"},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 422


def test_driver_cannot_adjust_stock(client, headers, product):
    r = client.post(
        f"/inventory/products/{product['id']}/adjust",
        json={"quantity_change": 1, "reason": "Found one"},
        headers=headers["driver"],
    )
    assert r.status_code == 403


def test_tracked_units_split_the_pool(client, headers, product):
    r = client.post(
        f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 3}, headers=headers["dispatcher"]
    )
    assert r.status_code == 200, r.text
    assert len(r.json()) == 3

    stock = client.get(f"/inventory/products/{product['id']}/stock", headers=headers["dispatcher"]).json()
    assert stock["master_stock"] == 10
    assert stock["individual_items"]["total_tracked"] == 3
    assert stock["bulk_stock"]["pool_total"] == 7
    assert stock["tracking_method"] == "hybrid"
    assert stock["has_inconsistency"] is False

    too_many = client.post(
        f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 8}, headers=headers["dispatcher"]
    )
    assert too_many.status_code == 409


def test_product_is_tenant_scoped(client, product, other_org_headers):
    r = client.get(f"/inventory/products/{product['id']}/stock", headers=other_org_headers)
    assert r.status_code == 404


# ---------- JOBS ----------
def test_job_numbering_and_timezone(client, headers, customer):
    first = _create_job(client, headers["dispatcher"], customer.id)
    second = _create_job(client, headers["dispatcher"], customer.id)
    pickup = _create_job(client, headers["dispatcher"], customer.id, job_type="pickup")
    assert first["job_number"] == "DEL-001"
    assert second["job_number"] == "DEL-002"
    assert pickup["job_number"] == "PKP-001"
    assert first["status"] == "unassigned"
    assert first["timezone"] == "America/Chicago"


def test_job_with_driver_starts_assigned(client, headers, users, customer):
    job = _create_job(client, headers["dispatcher"], customer.id, driver_id=str(users["driver"].id))
    assert job["status"] == "assigned"
    mine = client.get("/jobs/driver/me", headers=headers["driver"]).json()
    assert [j["id"] for j in mine] == [job["id"]]


def test_reservation_beyond_availability(client, headers, customer, product):
    job = _create_job(
        client, headers["dispatcher"], customer.id,
        equipment=[{"strategy": "bulk", "product_id": product["id"], "quantity": 8,
                    "return_date": (FUTURE + timedelta(days=3)).isoformat()}],
    )
    other = _create_job(client, headers["dispatcher"], customer.id)

    r = client.post(
        f"/jobs/{other['id']}/reserve",
        json={"product_id": product["id"], "quantity": 3},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 409
    body = r.json()
    assert body["errors"] == {"requested": 3, "available": 2}

    ok = client.post(
        f"/jobs/{other['id']}/reserve",
        json={"product_id": product["id"], "quantity": 2},
        headers=headers["dispatcher"],
    )
    assert ok.status_code == 200, ok.text

    assignments = client.get(f"/jobs/{job['id']}/assignments", headers=headers["dispatcher"]).json()
    assert assignments[0]["quantity"] == 8
    assert assignments[0]["status"] == "reserved"


def test_lifecycle_and_transition_rules(client, headers, users, customer):
    job = _create_job(client, headers["dispatcher"], customer.id)

    r = _status(client, headers["dispatcher"], job["id"], "assigned")
    assert r.status_code == 400

    r = _status(client, headers["dispatcher"], job["id"], "completed")
    assert r.status_code == 409
    assert r.json()["errors"] == {"from": "unassigned", "to": "completed"}

    r = client.put(f"/jobs/{job['id']}", json={"driver_id": str(users["driver"].id)}, headers=headers["dispatcher"])
    assert r.status_code == 200
    assert r.json()["status"] == "assigned"

    assert _status(client, headers["driver"], job["id"], "in_progress").status_code == 200
    done = _status(client, headers["driver"], job["id"], "completed")
    assert done.status_code == 200
    assert done.json()["old_status"] == "in_progress"

    logs = client.get(f"/jobs/{job['id']}/status-logs", headers=headers["dispatcher"]).json()
    assert [entry["new_status"] for entry in logs] == ["unassigned", "assigned", "in_progress", "completed"]

    r = client.put(f"/jobs/{job['id']}", json={"notes": "late edit"}, headers=headers["dispatcher"])
    assert r.status_code == 409


def test_driver_limited_to_own_jobs(client, headers, customer, second_driver):
    other_driver, other_headers = second_driver
    job = _create_job(client, headers["dispatcher"], customer.id, driver_id=str(other_driver.id))

    assert _status(client, headers["driver"], job["id"], "in_progress").status_code == 403
    r = client.post(f"/jobs/{job['id']}/notes", json={"note_text": "hi"}, headers=headers["driver"])
    assert r.status_code == 403

    own = _status(client, other_headers, job["id"], "in_progress")
    assert own.status_code == 200


def test_unassigning_clears_driver(client, headers, users, customer):
    job = _create_job(client, headers["dispatcher"], customer.id, driver_id=str(users["driver"].id))
    assert _status(client, headers["dispatcher"], job["id"], "unassigned").status_code == 200
    assert client.get(f"/jobs/{job['id']}", headers=headers["dispatcher"]).json()["driver_id"] is None


def test_delivery_then_pickup_moves_units(client, headers, users, customer, product):
    items = client.post(
        f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 1}, headers=headers["dispatcher"]
    ).json()
    delivery = _create_job(
        client, headers["dispatcher"], customer.id, driver_id=str(users["driver"].id),
        equipment=[{"strategy": "specific", "item_ids": [items[0]["id"]]}],
    )
    item_url = f"/inventory/items/{items[0]['id']}"
    assert client.get(item_url, headers=headers["dispatcher"]).json()["status"] == "assigned"

    _status(client, headers["driver"], delivery["id"], "in_progress")
    _status(client, headers["driver"], delivery["id"], "completed")
    assert client.get(item_url, headers=headers["dispatcher"]).json()["status"] == "deployed"

    pickup = _create_job(
        client, headers["dispatcher"], customer.id, job_type="pickup",
        driver_id=str(users["driver"].id), parent_job_id=delivery["id"],
    )
    _status(client, headers["driver"], pickup["id"], "in_progress")
    _status(client, headers["driver"], pickup["id"], "completed")
    assert client.get(item_url, headers=headers["dispatcher"]).json()["status"] == "available"

    assignments = client.get(f"/jobs/{delivery['id']}/assignments", headers=headers["dispatcher"]).json()
    assert assignments[0]["status"] == "returned"


def test_cancel_releases_reservations(client, headers, customer, product):
    job = _create_job(
        client, headers["dispatcher"], customer.id,
        equipment=[{"strategy": "bulk", "product_id": product["id"], "quantity": 10}],
    )
    assert _status(client, headers["dispatcher"], job["id"], "cancelled").status_code == 200
    assignments = client.get(f"/jobs/{job['id']}/assignments", headers=headers["dispatcher"]).json()
    assert assignments[0]["status"] == "cancelled"

    again = _create_job(
        client, headers["dispatcher"], customer.id,
        equipment=[{"strategy": "bulk", "product_id": product["id"], "quantity": 10}],
    )
    assert again["status"] == "unassigned"


def test_job_notes(client, headers, users, customer):
    job = _create_job(client, headers["dispatcher"], customer.id, driver_id=str(users["driver"].id))
    r = client.post(
        f"/jobs/{job['id']}/notes", json={"note_text": " Gate code 4411 ", "note_type": "customer"},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["note_text"] == "Gate code 4411"

    bad = client.post(f"/jobs/{job['id']}/notes", json={"note_text": "x", "note_type": "gossip"},
                      headers=headers["driver"])
    assert bad.status_code == 400


def test_consumables_per_use_and_subscription(client, headers, customer):
    consumable = client.post(
        "/consumables",
        json={"name": "Toilet Paper Case", "unit_price": 12.5, "on_hand_qty": 5},
        headers=headers["dispatcher"],
    ).json()
    job = _create_job(client, headers["dispatcher"], customer.id)

    r = client.post(
        f"/jobs/{job['id']}/consumables",
        json={"billing_method": "per-use", "items": [{"consumable_id": consumable["id"], "quantity": 2}]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    assert r.json()[0]["line_total"] == 25.0

    r = client.post(
        f"/jobs/{job['id']}/consumables",
        json={"billing_method": "subscription", "items": [{"consumable_id": consumable["id"], "quantity": 9}]},
        headers=headers["dispatcher"],
    )
    assert r.json()[0]["unit_price"] == 0.0

    on_hand = client.get(f"/consumables/{consumable['id']}", headers=headers["dispatcher"]).json()["on_hand_qty"]
    assert on_hand == 3


def _location(client, headers, name, **extra):
    r = client.post("/inventory/locations", json={"name": name, **extra}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def _ledger_total(client, headers, consumable_id):
    entries = client.get(f"/consumables/{consumable_id}/ledger", headers=headers).json()
    return sum(e["quantity_change"] for e in entries), entries


def test_consumable_transfer_bundle_and_reconcile(client, db, headers, customer):
    yard = _location(client, headers["dispatcher"], "Main Yard", is_default=True)
    depot = _location(client, headers["dispatcher"], "East Depot")
    consumable = client.post(
        "/consumables",
        json={"name": "Toilet Paper Case", "unit_price": 12.5, "on_hand_qty": 20,
              "default_storage_location_id": yard["id"]},
        headers=headers["dispatcher"],
    ).json()
    url = f"/consumables/{consumable['id']}"

    r = client.post(f"{url}/transfer", json={"from_location_id": yard["id"], "to_location_id": depot["id"],
                                             "quantity": 8}, headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    assert r.json() == {"from_quantity": 12, "to_quantity": 8, "on_hand_qty": 20}

    short = client.post(f"{url}/transfer", json={"from_location_id": depot["id"], "to_location_id": yard["id"],
                                                 "quantity": 9}, headers=headers["dispatcher"])
    assert short.status_code == 409

    bundle = client.post(
        "/consumables/bundles",
        json={"name": "Restock Kit", "items": [{"consumable_id": consumable["id"], "quantity": 2}]},
        headers=headers["dispatcher"],
    ).json()
    job = _create_job(client, headers["dispatcher"], customer.id)
    r = client.post(
        f"/jobs/{job['id']}/consumables",
        json={"billing_method": "bundle", "bundle_id": bundle["id"], "bundle_quantity": 3},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    assert [(line["quantity"], line["line_total"]) for line in r.json()] == [(6, 75.0)]

    on_hand = client.get(url, headers=headers["dispatcher"]).json()["on_hand_qty"]
    assert on_hand == 14
    total, entries = _ledger_total(client, headers["dispatcher"], consumable["id"])
    assert total == on_hand
    assert entries[0]["adjustment_type"] == "job_usage"
    assert entries[0]["storage_location_id"] == yard["id"]

    clean = client.post(f"{url}/reconcile", headers=headers["dispatcher"]).json()
    assert clean["drift"] == 0

    row = db.get(Consumable, uuid.UUID(consumable["id"]))
    row.on_hand_qty = 99
    db.commit()
    fixed = client.post(f"{url}/reconcile", headers=headers["dispatcher"]).json()
    assert fixed["previous_on_hand"] == 99
    assert fixed["on_hand_qty"] == 14
    assert fixed["drift"] == 85


def test_job_usage_spans_locations_without_default(client, headers, customer):
    yard = _location(client, headers["dispatcher"], "Main Yard")
    depot = _location(client, headers["dispatcher"], "East Depot")
    consumable = client.post(
        "/consumables", json={"name": "Deodorizer Pack", "unit_price": 3.0}, headers=headers["dispatcher"]
    ).json()
    url = f"/consumables/{consumable['id']}"
    for loc, qty in ((yard, 6), (depot, 4)):
        r = client.post(f"{url}/adjust", json={"quantity_change": qty, "adjustment_type": "receive",
                                               "location_id": loc["id"]}, headers=headers["dispatcher"])
        assert r.status_code == 200, r.text

    job = _create_job(client, headers["dispatcher"], customer.id)
    r = client.post(
        f"/jobs/{job['id']}/consumables",
        json={"billing_method": "per-use", "items": [{"consumable_id": consumable["id"], "quantity": 8}]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text

    on_hand = client.get(url, headers=headers["dispatcher"]).json()["on_hand_qty"]
    assert on_hand == 2
    total, entries = _ledger_total(client, headers["dispatcher"], consumable["id"])
    assert total == on_hand
    usage = {e["storage_location_id"]: e["quantity_change"] for e in entries if e["adjustment_type"] == "job_usage"}
    assert usage == {yard["id"]: -6, depot["id"]: -2}

    # more than is left: stock stops at zero and the job still records the usage
    r = client.post(
        f"/jobs/{job['id']}/consumables",
        json={"billing_method": "per-use", "items": [{"consumable_id": consumable["id"], "quantity": 5}]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    assert client.get(url, headers=headers["dispatcher"]).json()["on_hand_qty"] == 0
    total, _ = _ledger_total(client, headers["dispatcher"], consumable["id"])
    assert total == 0


def test_sync_totals_raises_master_stock(client, db, headers, product):
    client.post(f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 3},
                headers=headers["dispatcher"])
    row = db.get(Product, uuid.UUID(product["id"]))
    row.stock_total = 1
    db.commit()

    r = client.post("/inventory/products/sync-totals", headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    assert r.json() == {"success": True, "products_fixed": 1}
    stock = client.get(f"/inventory/products/{product['id']}/stock", headers=headers["dispatcher"]).json()
    assert stock["master_stock"] == 3

    again = client.post("/inventory/products/sync-totals", headers=headers["dispatcher"]).json()
    assert again["products_fixed"] == 0


def test_reserve_item_rejects_overlapping_dates(client, headers, customer, product):
    item = client.post(
        f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 1}, headers=headers["dispatcher"]
    ).json()[0]
    first = _create_job(client, headers["dispatcher"], customer.id)
    r = client.post(
        f"/jobs/{first['id']}/reserve-item",
        json={"item_id": item["id"], "return_date": (FUTURE + timedelta(days=2)).isoformat()},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["product_item_id"] == item["id"]
    assert r.json()["status"] == "assigned"

    clash = _create_job(client, headers["dispatcher"], customer.id,
                        scheduled_date=(FUTURE + timedelta(days=1)).isoformat())
    r = client.post(f"/jobs/{clash['id']}/reserve-item", json={"item_id": item["id"]}, headers=headers["dispatcher"])
    assert r.status_code == 409


def test_cancelling_one_job_keeps_unit_held_by_another(client, headers, customer, product):
    item = client.post(
        f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 1}, headers=headers["dispatcher"]
    ).json()[0]
    early = _create_job(client, headers["dispatcher"], customer.id)
    late = _create_job(client, headers["dispatcher"], customer.id,
                       scheduled_date=(FUTURE + timedelta(days=10)).isoformat())
    for job, back in ((early, FUTURE + timedelta(days=2)), (late, FUTURE + timedelta(days=12))):
        r = client.post(
            f"/jobs/{job['id']}/reserve-item",
            json={"item_id": item["id"], "return_date": back.isoformat()},
            headers=headers["dispatcher"],
        )
        assert r.status_code == 200, r.text

    assert _status(client, headers["dispatcher"], late["id"], "cancelled").status_code == 200
    item_url = f"/inventory/items/{item['id']}"
    assert client.get(item_url, headers=headers["dispatcher"]).json()["status"] == "assigned"

    assert _status(client, headers["dispatcher"], early["id"], "cancelled").status_code == 200
    assert client.get(item_url, headers=headers["dispatcher"]).json()["status"] == "available"


def _foreign_customer(client, headers):
    r = client.post("/customers", json={"name": "Globex Yard"}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_job_links_must_stay_in_organization(client, headers, users, customer, product, other_org):
    _, other_headers = other_org
    items = client.post(
        f"/inventory/products/{product['id']}/convert-bulk", json={"quantity": 1}, headers=headers["dispatcher"]
    ).json()
    delivery = _create_job(
        client, headers["dispatcher"], customer.id, driver_id=str(users["driver"].id),
        equipment=[{"strategy": "specific", "item_ids": [items[0]["id"]]}],
    )
    _status(client, headers["driver"], delivery["id"], "in_progress")
    _status(client, headers["driver"], delivery["id"], "completed")
    quote = client.post(
        "/quotes", json={"customer_id": str(customer.id), "items": [{"name": "Restroom", "quantity": 1,
                                                                      "unit_price": 100}]},
        headers=headers["dispatcher"],
    ).json()

    outsider = _foreign_customer(client, other_headers)
    base = {"customer_id": outsider["id"], "scheduled_date": FUTURE.isoformat()}
    r = client.post("/jobs", json=dict(base, job_type="pickup", parent_job_id=delivery["id"]), headers=other_headers)
    assert r.status_code == 404
    r = client.post("/jobs", json=dict(base, job_type="delivery", quote_id=quote["id"]), headers=other_headers)
    assert r.status_code == 404

    assignments = client.get(f"/jobs/{delivery['id']}/assignments", headers=headers["dispatcher"]).json()
    assert assignments[0]["status"] == "delivered"
    assert client.get(f"/inventory/items/{items[0]['id']}", headers=headers["dispatcher"]).json()["status"] == "deployed"
