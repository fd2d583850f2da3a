import csv
import io

from openpyxl import Workbook, load_workbook

from racekit import services
from racekit.bulk_upload import COLUMNS

from conftest import login


def _payload(reg):
    return services.build_registration_payload(reg)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_login_and_logout(client):
    r = client.post("/login", data={"username": "admin", "password": "wrong"})
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_credentials"

    r = login(client)
    assert r.json()["role"] == "admin"
    assert client.get("/api/me").json()["user"]["username"] == "admin"

    client.post("/logout")
    assert client.get("/api/me").json() == {"user": None}


def test_kit_endpoints_require_login(client, seeded):
    r = client.get("/api/kits/lookup", params={"code": _payload(seeded["jane"])})
    assert r.status_code == 401


def test_user_without_distribution_permission(client, session, seeded):
    services.create_user(session, "viewer1", "pw", role="viewer", can_distribute_kits=False)
    login(client, "viewer1", "pw")
    r = client.get("/api/kits/lookup", params={"code": _payload(seeded["jane"])})
    assert r.status_code == 403
    assert r.json()["error"] == "permission_denied"
    assert "distribution permission" in r.json()["detail"]


def test_revoked_permission_applies_to_existing_login(client, session, seeded):
    desk = services.create_user(session, "desk1", "pw", role="distributor", can_distribute_kits=True)
    login(client, "desk1", "pw")
    code = _payload(seeded["jane"])
    assert client.get("/api/kits/lookup", params={"code": code}).status_code == 200

    desk.can_distribute_kits = False
    session.commit()
    r = client.get("/api/kits/lookup", params={"code": code})
    assert r.status_code == 403
    assert r.json()["error"] == "permission_denied"

    desk.can_distribute_kits = True
    desk.is_active = False
    session.commit()
    assert client.get("/api/kits/lookup", params={"code": code}).status_code == 403


def test_lookup_claim_unclaim(client, session, seeded):
    services.create_user(session, "desk1", "pw", role="distributor", can_distribute_kits=True)
    login(client, "desk1", "pw")
    jane = seeded["jane"]

    r = client.get("/api/kits/lookup", params={"code": _payload(jane)})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["registration"]["registration_id"] == jane.registration_id
    assert body["payment_method_name"] == "GCash"
    assert body["payment_confirmed"] is False
    assert body["warnings"] == ["Payment not confirmed (status: pending)"]

    pk = body["registration"]["id"]
    r = client.post(f"/api/kits/{pk}/claim", json={"claimed_by": "Mary", "claim_notes": "Sister"})
    assert r.status_code == 200, r.text
    assert r.json()["kit_claimed"] is True
    assert r.json()["claimed_by"] == "Mary"
    assert r.json()["processed_by"] == "desk1"
    assert r.json()["claimed_at"]

    r = client.post(f"/api/kits/{pk}/unclaim")
    assert r.status_code == 200, r.text
    assert r.json()["kit_claimed"] is False
    assert r.json()["claimed_at"] is None
    assert r.json()["claim_notes"].endswith("Previous notes: Sister")


def test_lookup_errors(client, seeded):
    login(client)
    r = client.get("/api/kits/lookup", params={"code": "random text"})
    assert r.status_code == 400
    assert r.json() == {"error": "malformed_payload", "detail": "Invalid QR Code - not in the correct format"}

    r = client.get("/api/kits/lookup", params={"code": "CogFamRun2025|FR2025999999|Nobody|3K|800|M"})
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_claim_errors(client, seeded):
    login(client)
    pk = seeded["jane"].id
    r = client.post(f"/api/kits/{pk}/claim", json={"claimed_by": " "})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_claim"

    client.post(f"/api/kits/{pk}/claim", json={"claimed_by": "Mary", "expected_version": 0})
    r = client.post(f"/api/kits/{pk}/claim", json={"claimed_by": "Paul", "expected_version": 0})
    assert r.status_code == 409
    assert r.json()["error"] == "claim_conflict"


def test_bulk_claim(client, seeded):
    login(client)
    ids = [seeded["jane"].id, seeded["john"].id]
    r = client.post("/api/kits/bulk-claim", json={
        "registration_ids": ids,
        "processed_by": "Desk 1",
        "claim_location_id": seeded["location"].id,
    })
    assert r.status_code == 200, r.text
    assert r.json()["ok"] is True
    assert r.json()["claimed_count"] == 2

    r = client.post("/api/kits/bulk-claim", json={"registration_ids": ids, "processed_by": "Desk 1"})
    assert r.status_code == 422


def test_analytics(client, session, seeded):
    login(client)
    services.update_payment_status(session, seeded["jane"], "confirmed")
    r = client.get("/api/analytics/payments")
    assert r.status_code == 200
    body = r.json()
    assert body["total_revenue"] == 800
    assert body["confirmed_payments"] == 1
    assert body["pending_payments"] == 1
    assert body["by_method"][0]["name"] == "GCash"

    r = client.get("/api/analytics/registrations")
    assert r.json()["total"] == 2
    assert r.json()["kits_claimed"] == 0


def test_payment_status_endpoints(client, seeded):
    login(client)
    pk = seeded["jane"].id
    r = client.post(f"/api/registrations/{pk}/payment-status", json={"payment_status": "confirmed", "notes": "ok"})
    assert r.status_code == 200, r.text
    assert r.json()["registration"]["payment_status"] == "confirmed"
    assert r.json()["receipt_number"].startswith("FR-")

    r = client.get(f"/api/registrations/{pk}/payment-history")
    assert [h["payment_status"] for h in r.json()] == ["confirmed"]

    r = client.post(f"/api/registrations/{pk}/payment-status", json={"payment_status": "bogus"})
    assert r.status_code == 400
    assert client.get("/api/registrations/9999/payment-history").status_code == 404


def test_payment_status_requires_admin(client, session, seeded):
    services.create_user(session, "desk1", "pw")
    login(client, "desk1", "pw")
    r = client.post(f"/api/registrations/{seeded['jane'].id}/payment-status", json={"payment_status": "confirmed"})
    assert r.status_code == 403


def test_qr_png_and_sheet(client, seeded):
    r = client.get(f"/api/registrations/{seeded['jane'].registration_id}/qr.png")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert client.get("/api/registrations/FR2025000000/qr.png").status_code == 404

    login(client)
    r = client.get("/api/registrations/qr-sheet.pdf")
    assert r.status_code == 200
    assert r.content.startswith(b"%PDF")


def test_upload_template_and_upload(client, seeded):
    login(client)
    r = client.get("/api/registrations/upload/template")
    assert r.status_code == 200
    wb = load_workbook(io.BytesIO(r.content))
    assert wb.sheetnames == ["Registrations", "Instructions"]

    wb = Workbook()
    ws = wb.active
    ws.append(COLUMNS)
    ws.append(["Ana", "Reyes", "ana@example.com", "", 25, "female", "3K", "S", False,
               "", "", "", "Ben Reyes", "09170000001", "", ""])
    out = io.BytesIO()
    wb.save(out)
    files = {"file": ("regs.xlsx", out.getvalue(), "application/octet-stream")}

    r = client.post("/api/registrations/upload", params={"dry_run": "true"}, files=files)
    assert r.status_code == 200, r.text
    assert r.json()["dry_run"] is True
    assert r.json()["success"] == 0

    r = client.post("/api/registrations/upload", files=files)
    assert r.json()["success"] == 1
    assert len(client.get("/api/registrations").json()) == 3

    r = client.post("/api/registrations/upload", files={"file": ("x.xlsx", b"not a workbook", "application/octet-stream")})
    assert r.status_code == 400


def test_exports(client, seeded):
    login(client)
    r = client.get("/api/registrations.csv")
    assert r.status_code == 200
    rows = list(csv.reader(io.StringIO(r.text)))
    assert rows[0][0] == "registration_id"
    assert len(rows) == 3

    assert client.get("/api/kit-claims.csv").status_code == 200
    assert client.get("/api/payments.csv").status_code == 200
    r = client.get("/api/registrations.xlsx")
    assert r.status_code == 200
    assert load_workbook(io.BytesIO(r.content)).active.max_row == 3
