import logging
import zipfile

from fastapi import FastAPI, Request, Depends, Form, HTTPException, UploadFile, File, Query
from fastapi.responses import JSONResponse
from openpyxl.utils.exceptions import InvalidFileException
from starlette.responses import Response

from .settings import settings
from .db import init_db, get_session, new_session
from . import services, analytics, bulk_upload, exports
from .auth import (
    get_current_user,
    staff_required,
    admin_required,
    kit_distributor_required,
    set_login_cookie,
    clear_login_cookie,
    AuthCookieMiddleware,
)
from .errors import KitClaimError
from .qr_payload import make_qr_png_bytes
from .qr_sheet import build_qr_sheet_pdf, registration_labels
from .schemas import (
    RegistrationOut,
    ClaimRequest,
    UnclaimRequest,
    BulkClaimRequest,
    PaymentStatusUpdate,
)

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.RACEKIT_LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


app = FastAPI(title="racekit")
app.add_middleware(AuthCookieMiddleware)
app.include_router(exports.router, prefix="/api")


@app.on_event("startup")
def _startup() -> None:
    configure_logging()
    init_db()
    # Ensure the admin account exists
    s = new_session()
    try:
        services.ensure_admin_user(s)
    finally:
        s.close()
    logger.info("racekit started (event tag %s)", settings.RACEKIT_EVENT_TAG)


@app.exception_handler(KitClaimError)
async def kit_claim_error_handler(request: Request, exc: KitClaimError):
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=exc.status_code)


def _registration_out(reg) -> dict:
    return RegistrationOut.model_validate(reg).model_dump(mode="json")


def _get_registration_or_404(session, pk: int):
    reg = services.get_registration(session, pk)
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    return reg


@app.get("/health")
def health():
    return {"ok": True}

# ---------------------------
# Auth
# ---------------------------

@app.post("/login")
def login_submit(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    session=Depends(get_session),
):
    u = services.authenticate_user(session, username=username.strip(), password=password)
    if not u:
        logger.info("Failed login for %s", username.strip())
        return JSONResponse({"error": "invalid_credentials", "detail": "Invalid username or password."}, status_code=401)
    set_login_cookie(request, u)
    return {"ok": True, "username": u.username, "role": u.role, "can_distribute_kits": u.can_distribute_kits}


@app.post("/logout")
def logout(request: Request):
    clear_login_cookie(request)
    return {"ok": True}


@app.get("/api/me")
def me(user=Depends(get_current_user)):
    if not user:
        return {"user": None}
    return {"user": {"username": user.username, "role": user.role, "can_distribute_kits": user.can_distribute_kits}}

# ---------------------------
# Kit distribution
# ---------------------------

@app.get("/api/kits/lookup")
def kit_lookup(code: str = Query(...), user=Depends(kit_distributor_required), session=Depends(get_session)):
    found = services.lookup_registration(session, code)
    return {
        "registration": _registration_out(found.registration),
        "payment_method_name": found.payment_method_name,
        "payment_confirmed": found.payment_confirmed,
        "warnings": found.warnings,
    }


@app.post("/api/kits/bulk-claim")
def kit_bulk_claim(body: BulkClaimRequest, user=Depends(kit_distributor_required), session=Depends(get_session)):
    result = services.bulk_claim_kits(
        session,
        body.registration_ids,
        processed_by=body.processed_by,
        claim_location_id=body.claim_location_id,
        claim_notes=body.claim_notes,
    )
    return {
        "ok": result.ok,
        "claimed": result.claimed,
        "claimed_count": len(result.claimed),
        "failed_id": result.failed_id,
        "error": result.error,
    }


@app.post("/api/kits/{pk}/claim")
def kit_claim(pk: int, body: ClaimRequest, user=Depends(kit_distributor_required), session=Depends(get_session)):
    reg = services.claim_kit(
        session,
        pk,
        claimed_by=body.claimed_by,
        claim_notes=body.claim_notes,
        claimed_at=body.claimed_at,
        expected_version=body.expected_version,
        processed_by=user.username,
    )
    return _registration_out(reg)


@app.post("/api/kits/{pk}/unclaim")
def kit_unclaim(
    pk: int,
    body: UnclaimRequest | None = None,
    user=Depends(kit_distributor_required),
    session=Depends(get_session),
):
    body = body or UnclaimRequest()
    reg = services.unclaim_kit(session, pk, previous_notes=body.claim_notes, expected_version=body.expected_version)
    return _registration_out(reg)


@app.get("/api/claim-locations")
def claim_locations(user=Depends(staff_required), session=Depends(get_session)):
    return [
        {"id": loc.id, "name": loc.name, "address": loc.address}
        for loc in services.list_claim_locations(session)
    ]

# ---------------------------
# Analytics
# ---------------------------

@app.get("/api/analytics/payments")
def payment_analytics(user=Depends(staff_required), session=Depends(get_session)):
    stats = analytics.compute_payment_stats(
        services.list_registrations(session),
        services.list_payment_methods(session),
    )
    return stats.to_dict()


@app.get("/api/analytics/registrations")
def registration_analytics(user=Depends(staff_required), session=Depends(get_session)):
    return analytics.compute_registration_stats(services.list_registrations(session))

# ---------------------------
# Registrations
# ---------------------------

@app.get("/api/registrations")
def registrations_list(user=Depends(staff_required), session=Depends(get_session)):
    return [_registration_out(r) for r in services.list_registrations(session)]


@app.get("/api/registrations/upload/template")
def upload_template(user=Depends(admin_required), session=Depends(get_session)):
    categories = [c.name for c in services.list_categories(session)]
    return Response(
        content=bulk_upload.build_upload_template(categories),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="registration_template.xlsx"'},
    )


@app.post("/api/registrations/upload")
async def upload_registrations(
    file: UploadFile = File(...),
    dry_run: bool = Query(False),
    user=Depends(admin_required),
    session=Depends(get_session),
):
    data = await file.read()
    try:
        result = bulk_upload.import_workbook(session, data, dry_run=dry_run)
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as e:
        logger.info("Rejected upload %s: %s", file.filename, e)
        raise HTTPException(status_code=400, detail="Please upload a valid Excel file (.xlsx)")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "dry_run": dry_run,
        "total": result.total,
        "success": result.success,
        "failed": result.failed,
        "errors": [{"row": e.row, "field": e.field, "message": e.message} for e in result.errors],
    }


@app.get("/api/registrations/qr-sheet.pdf")
def registrations_qr_sheet(
    category: str | None = Query(None),
    unclaimed_only: bool = Query(False),
    user=Depends(staff_required),
    session=Depends(get_session),
):
    regs = services.list_registrations(session)
    if category:
        regs = [r for r in regs if r.category == category]
    if unclaimed_only:
        regs = [r for r in regs if not r.kit_claimed]
    return Response(
        content=build_qr_sheet_pdf(registration_labels(regs)),
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="kit_qr.pdf"'},
    )


@app.get("/api/registrations/{registration_id}/qr.png")
def registration_qr(registration_id: str, session=Depends(get_session)):
    reg = services.get_registration_by_code(session, registration_id)
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    return Response(content=make_qr_png_bytes(services.build_registration_payload(reg)), media_type="image/png")


@app.post("/api/registrations/{pk}/payment-status")
def payment_status_update(
    pk: int,
    body: PaymentStatusUpdate,
    user=Depends(admin_required),
    session=Depends(get_session),
):
    reg = _get_registration_or_404(session, pk)
    try:
        receipt = services.update_payment_status(
            session, reg, body.payment_status, notes=body.notes, changed_by=user.username
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "registration": _registration_out(reg),
        "receipt_number": receipt.receipt_number if receipt else None,
    }


@app.get("/api/registrations/{pk}/payment-history")
def payment_history(pk: int, user=Depends(staff_required), session=Depends(get_session)):
    _get_registration_or_404(session, pk)
    return [
        {
            "payment_status": h.payment_status,
            "previous_status": h.previous_status,
            "changed_by": h.changed_by,
            "notes": h.notes,
            "created_at": h.created_at.isoformat() if h.created_at else None,
        }
        for h in services.get_payment_history(session, pk)
    ]
