from __future__ import annotations

import csv
import io
from io import StringIO

from fastapi import APIRouter, Depends
from openpyxl import Workbook
from starlette.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_session
from . import models, services
from .auth import staff_required

router = APIRouter()

REGISTRATION_COLUMNS = [
    "registration_id", "first_name", "last_name", "email", "phone", "category",
    "price", "shirt_size", "status", "payment_status", "payment_method",
    "kit_claimed", "claimed_at", "claimed_by", "created_at",
]

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

def _iso(value) -> str:
    return value.isoformat() if value else ""

def registration_rows(session: Session) -> list[list]:
    methods = services.list_payment_methods(session)
    rows = []
    for r in services.list_registrations(session):
        rows.append([
            r.registration_id, r.first_name, r.last_name, r.email, r.phone or "", r.category,
            r.price, r.shirt_size, r.status, r.payment_status or "pending",
            services.payment_method_label(r.payment_method_id, methods),
            "yes" if r.kit_claimed else "no", _iso(r.claimed_at), r.claimed_by or "", _iso(r.created_at),
        ])
    return rows

@router.get("/registrations.csv", dependencies=[Depends(staff_required)])
def registrations_csv(session: Session = Depends(get_session)):
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(REGISTRATION_COLUMNS)
    w.writerows(registration_rows(session))
    return _csv_response("registrations.csv", buf.getvalue())

@router.get("/kit-claims.csv", dependencies=[Depends(staff_required)])
def kit_claims_csv(session: Session = Depends(get_session)):
    q = (
        select(models.Registration)
        .where(models.Registration.kit_claimed.is_(True))
        .order_by(models.Registration.claimed_at.asc())
    )
    rows = session.execute(q).scalars().all()
    locations = {loc.id: loc.name for loc in services.list_claim_locations(session, active_only=False)}
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["registration_id", "name", "category", "shirt_size", "claimed_at", "claimed_by", "processed_by", "location", "claim_notes"])
    for r in rows:
        w.writerow([
            r.registration_id, r.full_name, r.category, r.shirt_size, _iso(r.claimed_at),
            r.claimed_by or "", r.processed_by or "", locations.get(r.claim_location_id, ""), r.claim_notes or "",
        ])
    return _csv_response("kit-claims.csv", buf.getvalue())

@router.get("/payments.csv", dependencies=[Depends(staff_required)])
def payments_csv(session: Session = Depends(get_session)):
    methods = services.list_payment_methods(session)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["registration_id", "name", "category", "price", "payment_status", "payment_method", "reference_number", "payment_date", "confirmed_by"])
    for r in services.list_registrations(session):
        w.writerow([
            r.registration_id, r.full_name, r.category, r.price, r.payment_status or "pending",
            services.payment_method_label(r.payment_method_id, methods),
            r.payment_reference_number or "", _iso(r.payment_date), r.payment_confirmed_by or "",
        ])
    return _csv_response("payments.csv", buf.getvalue())

@router.get("/registrations.xlsx", dependencies=[Depends(staff_required)])
def registrations_xlsx(session: Session = Depends(get_session)):
    wb = Workbook()
    ws = wb.active
    ws.title = "Registrations"
    ws.append(REGISTRATION_COLUMNS)
    for row in registration_rows(session):
        ws.append(row)
    out = io.BytesIO()
    wb.save(out)
    return Response(
        content=out.getvalue(),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="registrations.xlsx"'},
    )
