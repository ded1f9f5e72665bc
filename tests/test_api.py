import pytest
from bson import ObjectId
from conftest import add_user, auth_header

import settings
from auth import hash_password
from schemas import ADMIN, APPROVED, AVAILABLE, CLAIMED, DONOR, EXPIRED, PENDING, RECIPIENT, REJECTED

DONATION = {"name": "Paracetamol", "category": "Analgesic", "expiryDate": "2026-06-01", "quantity": 3}


def donate(client, headers, **overrides):
    response = client.post("/medicines/add", json=dict(DONATION, **overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["medicine"]


def request_lot(client, headers, lot_id):
    response = client.post(f"/requests/{lot_id}", headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["request"]


def test_root_is_healthy(client):
    assert client.get("/").json() == {"app": "MedShare API", "status": "ok"}


# Auth

def test_register_login_and_me(client):
    response = client.post("/auth/register", json={
        "name": "Nia Newcomer", "email": "Nia@MedShare.org", "password": "s3cret!", "role": "donor",
    })
    assert response.status_code == 201
    user = response.json()["user"]
    assert (user["email"], user["role"]) == ("nia@medshare.org", DONOR)
    assert "password_hash" not in user

    response = client.post("/auth/login", json={"email": "nia@medshare.org", "password": "s3cret!"})
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["id"] == user["id"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.json()["email"] == "nia@medshare.org"


def test_register_defaults_to_recipient(client):
    response = client.post("/auth/register", json={
        "name": "Rin", "email": "rin@medshare.org", "password": "s3cret!",
    })
    assert response.json()["user"]["role"] == RECIPIENT


def test_register_duplicate_email_conflicts(client, users):
    response = client.post("/auth/register", json={
        "name": "Again", "email": "DANA@medshare.org", "password": "s3cret!",
    })
    assert response.status_code == 409
    assert response.json()["detail"] == "Email already registered"


def test_register_rejects_short_password(client):
    response = client.post("/auth/register", json={"name": "Short", "email": "s@medshare.org", "password": "123"})
    assert response.status_code == 400


def test_admin_registration_needs_allow_list(client, monkeypatch):
    body = {"name": "Boss", "email": "boss@medshare.org", "password": "s3cret!", "role": "ADMIN"}
    assert client.post("/auth/register", json=body).status_code == 400

    monkeypatch.setattr(settings, "ADMIN_EMAILS", {"boss@medshare.org"})
    response = client.post("/auth/register", json=body)
    assert response.status_code == 201
    assert response.json()["user"]["role"] == ADMIN


def test_login_rejects_bad_password_and_inactive_account(client, mongo):
    add_user(mongo, DONOR, "Ina", "ina@medshare.org", password_hash=hash_password("s3cret!"), is_active=False)
    add_user(mongo, DONOR, "Val", "val@medshare.org", password_hash=hash_password("s3cret!"))

    wrong = client.post("/auth/login", json={"email": "val@medshare.org", "password": "nope"})
    inactive = client.post("/auth/login", json={"email": "ina@medshare.org", "password": "s3cret!"})

    assert (wrong.status_code, wrong.json()["detail"]) == (401, "Invalid credentials")
    assert (inactive.status_code, inactive.json()["detail"]) == (401, "Account is deactivated")


def test_missing_or_invalid_token_is_unauthorized(client):
    assert client.get("/medicines").status_code == 401
    response = client.get("/medicines", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_role_mismatch_is_forbidden(client, headers):
    assert client.post("/medicines/add", json=DONATION, headers=headers["recipient"]).status_code == 403
    assert client.post(f"/requests/{ObjectId()}", headers=headers["donor"]).status_code == 403
    assert client.get("/admin/stats", headers=headers["donor"]).status_code == 403


# Donations and listings

def test_add_medicine_merges_repeat_donation(client, headers):
    first = donate(client, headers["donor"], quantity=2)
    second = donate(client, headers["donor"], quantity=2)

    assert second["id"] == first["id"]
    assert second["quantity"] == 4
    assert second["status"] == AVAILABLE


@pytest.mark.parametrize("body", [
    {"name": "Paracetamol", "quantity": 3},
    {"name": "Paracetamol", "expiryDate": "2026-06-01", "quantity": "three"},
    {"name": "Paracetamol", "expiryDate": "not-a-date", "quantity": 3},
])
def test_add_medicine_rejects_invalid_body(client, headers, body):
    response = client.post("/medicines/add", json=body, headers=headers["donor"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Validation failed"


@pytest.mark.parametrize("overrides", [{"quantity": 0}, {"name": "  "}])
def test_add_medicine_rejects_invalid_values(client, headers, overrides):
    response = client.post("/medicines/add", json=dict(DONATION, **overrides), headers=headers["donor"])
    assert response.status_code == 400


def test_past_dated_donation_is_recorded_but_not_listed(client, headers):
    lot = donate(client, headers["donor"], expiryDate="2026-02-28")

    assert lot["status"] == AVAILABLE
    assert client.get("/medicines", headers=headers["recipient"]).json() == []
    assert client.post(f"/requests/{lot['id']}", headers=headers["recipient"]).status_code == 400


def test_expiry_before_filter_includes_that_day(client, headers):
    lot = donate(client, headers["donor"], expiryDate="2026-04-15")

    found = client.get("/medicines", params={"expiryBefore": "2026-04-15"}, headers=headers["recipient"]).json()
    assert [item["id"] for item in found] == [lot["id"]]
    assert client.get("/medicines", params={"expiryAfter": "2026-04-16"}, headers=headers["recipient"]).json() == []


def test_list_and_search_available(client, headers):
    donate(client, headers["donor"])
    donate(client, headers["donor2"], name="Ibuprofen", category="NSAID")

    listed = client.get("/medicines", headers=headers["recipient"]).json()
    assert {lot["name"] for lot in listed} == {"Paracetamol", "Ibuprofen"}
    assert all(lot["donor"]["name"] for lot in listed)

    found = client.get("/medicines/search", params={"name": "ibu"}, headers=headers["recipient"]).json()
    assert found["count"] == 1
    assert found["medicines"][0]["donor"]["email"] == "dev@medshare.org"
    assert found["filters"]["name"] == "ibu"


def test_donor_sees_own_lots(client, headers):
    donate(client, headers["donor"])
    donate(client, headers["donor2"], name="Ibuprofen")

    lots = client.get("/medicines/donor/medicines", headers=headers["donor"]).json()
    assert [lot["name"] for lot in lots] == ["Paracetamol"]


# Requests and review

def test_request_claims_lot(client, headers, users):
    lot = donate(client, headers["donor"])

    response = client.post(f"/medicines/request/{lot['id']}", headers=headers["recipient"])
    assert response.status_code == 200
    body = response.json()
    assert body["medicine"]["status"] == CLAIMED
    assert body["medicine"]["claimed_by"] == users["recipient"]
    assert body["request"]["status"] == PENDING

    listed = client.get("/medicines", headers=headers["recipient2"]).json()
    assert listed == []


def test_second_request_for_claimed_lot_fails(client, headers):
    lot = donate(client, headers["donor"])
    request_lot(client, headers["recipient"], lot["id"])

    response = client.post(f"/requests/{lot['id']}", headers=headers["recipient2"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Medicine is not available"


def test_request_missing_or_malformed_lot(client, headers):
    assert client.post(f"/requests/{ObjectId()}", headers=headers["recipient"]).status_code == 404
    assert client.post("/requests/not-an-id", headers=headers["recipient"]).status_code == 400


def test_self_request_is_refused(client, users, engine):
    # A recipient account that also holds a donated lot
    lot = engine.donate(users["recipient"], "Syrup", "2026-06-01", 1)
    response = client.post(f"/requests/{lot['id']}", headers=auth_header(users["recipient"], RECIPIENT))

    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot request your own medicine"


def test_approve_request_deducts_one_unit(client, headers, users):
    lot = donate(client, headers["donor"])
    request = request_lot(client, headers["recipient"], lot["id"])

    response = client.patch(f"/requests/{request['id']}/approve", headers=headers["admin"])
    assert response.status_code == 200
    body = response.json()
    assert body["request"]["status"] == APPROVED
    assert body["request"]["processed_by"] == users["admin"]
    assert (body["medicine"]["quantity"], body["medicine"]["status"]) == (2, CLAIMED)

    again = client.patch(f"/requests/{request['id']}/approve", headers=headers["admin"])
    assert again.status_code == 400
    assert again.json()["detail"] == "Request already processed"
    assert client.patch(f"/requests/{request['id']}/reject", headers=headers["admin"]).status_code == 400


def test_approving_last_unit_expires_lot(client, headers):
    lot = donate(client, headers["donor"], quantity=1)
    request = request_lot(client, headers["recipient"], lot["id"])

    body = client.patch(f"/requests/{request['id']}/approve", headers=headers["admin"]).json()
    assert (body["medicine"]["quantity"], body["medicine"]["status"]) == (0, EXPIRED)


def test_reject_request_returns_lot(client, headers):
    lot = donate(client, headers["donor"])
    request = request_lot(client, headers["recipient"], lot["id"])

    response = client.patch(f"/requests/{request['id']}/reject", headers=headers["admin"])
    assert response.status_code == 200
    body = response.json()
    assert body["request"]["status"] == REJECTED
    assert body["medicine"]["status"] == AVAILABLE
    assert body["timestamp"] is not None

    listed = client.get("/medicines", headers=headers["recipient2"]).json()
    assert [item["id"] for item in listed] == [lot["id"]]


def test_review_missing_request(client, headers):
    assert client.patch(f"/requests/{ObjectId()}/approve", headers=headers["admin"]).status_code == 404


@pytest.mark.parametrize("path", ["/medicines/approve/{id}", "/admin/approve/{id}"])
def test_review_by_lot(client, headers, path):
    lot = donate(client, headers["donor"])
    request_lot(client, headers["recipient"], lot["id"])

    response = client.put(path.format(id=lot["id"]), json={"action": "reject"}, headers=headers["admin"])
    assert response.status_code == 200
    assert response.json()["medicine"]["status"] == AVAILABLE

    request_lot(client, headers["recipient2"], lot["id"])
    response = client.put(path.format(id=lot["id"]), json={"action": "approve"}, headers=headers["admin"])
    assert response.status_code == 200
    assert response.json()["medicine"]["quantity"] == 2

    unclaimed = donate(client, headers["donor2"], name="Ibuprofen")
    response = client.put(path.format(id=unclaimed["id"]), json={"action": "approve"}, headers=headers["admin"])
    assert response.status_code == 400


def test_review_rejects_unknown_action(client, headers):
    lot = donate(client, headers["donor"])
    response = client.put(f"/medicines/approve/{lot['id']}", json={"action": "maybe"}, headers=headers["admin"])
    assert response.status_code == 400


def test_request_listings(client, headers):
    lot = donate(client, headers["donor"])
    request = request_lot(client, headers["recipient"], lot["id"])

    mine = client.get("/requests/my", headers=headers["recipient"]).json()
    assert [item["id"] for item in mine] == [request["id"]]
    assert mine[0]["medicine"]["name"] == "Paracetamol"
    assert mine[0]["medicine"]["donor"]["name"] == "Dana Donor"

    legacy = client.get("/medicines/recipient/requests", headers=headers["recipient"]).json()
    assert [item["id"] for item in legacy] == [request["id"]]

    everything = client.get("/requests", headers=headers["admin"]).json()
    assert everything[0]["recipient"]["email"] == "rae@medshare.org"
    assert everything[0]["timestamp"] is not None


# Lot maintenance

def test_donor_updates_own_lot(client, headers):
    lot = donate(client, headers["donor"])

    response = client.put(f"/medicines/update/{lot['id']}", json={"quantity": 5}, headers=headers["donor"])
    assert response.status_code == 200
    assert response.json()["medicine"]["quantity"] == 5

    other = client.put(f"/medicines/update/{lot['id']}", json={"quantity": 1}, headers=headers["donor2"])
    assert other.status_code == 403


def test_update_to_zero_expires_lot(client, headers):
    lot = donate(client, headers["donor"])
    response = client.put(f"/medicines/update/{lot['id']}", json={"quantity": 0}, headers=headers["admin"])
    assert response.json()["medicine"]["status"] == EXPIRED


def test_update_refuses_other_status(client, headers):
    lot = donate(client, headers["donor"])
    response = client.put(f"/medicines/update/{lot['id']}", json={"status": AVAILABLE}, headers=headers["donor"])
    assert response.status_code == 400


def test_admin_removes_lot(client, headers):
    lot = donate(client, headers["donor"])

    assert client.delete(f"/medicines/{lot['id']}", headers=headers["donor"]).status_code == 403
    assert client.delete(f"/medicines/{lot['id']}", headers=headers["admin"]).status_code == 200
    assert client.delete(f"/medicines/{lot['id']}", headers=headers["admin"]).status_code == 404


# Admin

def test_admin_stats_and_analytics(client, headers):
    first = donate(client, headers["donor"])
    second = donate(client, headers["donor2"], name="Ibuprofen")
    approved = request_lot(client, headers["recipient"], first["id"])
    rejected = request_lot(client, headers["recipient"], second["id"])
    client.patch(f"/requests/{approved['id']}/approve", headers=headers["admin"])
    client.patch(f"/requests/{rejected['id']}/reject", headers=headers["admin"])

    stats = client.get("/admin/stats", headers=headers["admin"]).json()
    assert stats["totalUsers"] == 5
    assert stats["totalDonors"] == 2
    assert stats["totalRecipients"] == 2
    assert stats["totalDonations"] == 2
    assert stats["totalRequests"] == 2
    assert (stats["approved"], stats["rejected"]) == (1, 1)
    assert stats["availableMedicines"] == 1

    overview = client.get("/admin/analytics/overview", headers=headers["admin"]).json()
    assert overview == {"totalDonations": 2, "totalRequests": 2, "approvals": 1, "rejections": 1}


def test_admin_lists_users_and_lots(client, headers):
    lot = donate(client, headers["donor"])
    request_lot(client, headers["recipient"], lot["id"])

    users = client.get("/admin/users", headers=headers["admin"]).json()
    assert len(users) == 5
    assert all("password_hash" not in user for user in users)

    lots = client.get("/admin/medicines", headers=headers["admin"]).json()
    assert lots[0]["donor"]["name"] == "Dana Donor"
    assert lots[0]["claimed_by_user"]["name"] == "Rae Recipient"


def test_admin_triggers_sweep(client, headers, clock):
    donate(client, headers["donor"], expiryDate="2026-03-02")
    clock.advance(days=2)

    response = client.post("/admin/sweep", headers=headers["admin"])
    assert response.status_code == 200
    assert response.json() == {"expired": 1, "reminders": 0}
