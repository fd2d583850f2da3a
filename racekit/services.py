from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import ClaimConflict, InvalidClaim, LookupFailed, NotFound, UpdateFailed
from .qr_payload import DELIMITER, DecodedPayload, decode_payload, encode_payload
from .schemas import KitClaimUpdate, RegistrationCreate
from .security import hash_password, verify_password
from .settings import settings

logger = logging.getLogger(__name__)

PAYMENT_STATUSES = ("pending", "confirmed", "rejected")
BULK_CLAIMER = "Bulk Distribution"

# ---------------------------
# Users / auth
# ---------------------------

def ensure_admin_user(session: Session) -> None:
    """Ensure the admin account (from settings) exists in DB."""
    existing = session.execute(
        select(models.User).where(models.User.username == settings.RACEKIT_ADMIN_USERNAME)
    ).scalar_one_or_none()

    if existing:
        if existing.role != "admin" or not existing.can_distribute_kits or not existing.is_active:
            existing.role = "admin"
            existing.can_distribute_kits = True
            existing.is_active = True
        if not verify_password(settings.RACEKIT_ADMIN_PASSWORD, existing.password_hash):
            existing.password_hash = hash_password(settings.RACEKIT_ADMIN_PASSWORD)
        session.commit()
        return

    session.add(models.User(
        username=settings.RACEKIT_ADMIN_USERNAME,
        password_hash=hash_password(settings.RACEKIT_ADMIN_PASSWORD),
        role="admin",
        can_distribute_kits=True,
        is_active=True,
    ))
    session.commit()
    logger.info("Created admin user %s", settings.RACEKIT_ADMIN_USERNAME)

def authenticate_user(session: Session, username: str, password: str) -> Optional[models.User]:
    u = session.execute(select(models.User).where(models.User.username == username)).scalar_one_or_none()
    if not u or not u.is_active:
        return None
    if verify_password(password, u.password_hash):
        return u
    return None

def create_user(session: Session, username: str, password: str, role: str = "distributor", can_distribute_kits: bool = True) -> models.User:
    if role not in ("admin", "distributor", "viewer"):
        raise ValueError("role must be admin, distributor or viewer")
    if session.execute(select(models.User).where(models.User.username == username)).scalar_one_or_none():
        raise ValueError("Username already exists")
    u = models.User(
        username=username,
        password_hash=hash_password(password),
        role=role,
        can_distribute_kits=can_distribute_kits,
        is_active=True,
    )
    session.add(u)
    session.commit()
    return u

# ---------------------------
# Lookup tables
# ---------------------------

def create_category(session: Session, name: str, price: float, inclusions: list[str] | None = None) -> models.Category:
    c = models.Category(name=name, price=price, inclusions="\n".join(inclusions or []) or None)
    session.add(c)
    session.commit()
    return c

def list_categories(session: Session) -> list[models.Category]:
    return session.execute(select(models.Category).order_by(models.Category.name.asc())).scalars().all()

def create_payment_method(session: Session, name: str, account_number: str = "", account_type: str = "e-wallet", active: bool = True) -> models.PaymentMethod:
    pm = models.PaymentMethod(name=name, account_number=account_number, account_type=account_type, active=active)
    session.add(pm)
    session.commit()
    return pm

def list_payment_methods(session: Session, active_only: bool = False) -> list[models.PaymentMethod]:
    q = select(models.PaymentMethod).order_by(models.PaymentMethod.id.asc())
    if active_only:
        q = q.where(models.PaymentMethod.active.is_(True))
    return session.execute(q).scalars().all()

def payment_method_label(method_id: Optional[int], methods: list[models.PaymentMethod]) -> str:
    if not method_id:
        return "Not specified"
    by_id = {m.id: m.name for m in methods}
    return by_id.get(method_id, "Unknown")

def create_claim_location(session: Session, name: str, address: str | None = None) -> models.ClaimLocation:
    loc = models.ClaimLocation(name=name, address=address, active=True)
    session.add(loc)
    session.commit()
    return loc

def list_claim_locations(session: Session, active_only: bool = True) -> list[models.ClaimLocation]:
    q = select(models.ClaimLocation).order_by(models.ClaimLocation.name.asc())
    if active_only:
        q = q.where(models.ClaimLocation.active.is_(True))
    return session.execute(q).scalars().all()

# ---------------------------
# Registrations
# ---------------------------

def generate_registration_id(session: Session) -> str:
    prefix = settings.RACEKIT_REGISTRATION_PREFIX
    for _ in range(20):
        candidate = f"{prefix}{secrets.randbelow(10**6):06d}"
        if not get_registration_by_code(session, candidate):
            return candidate
    raise RuntimeError("Could not allocate a unique registration id")

def create_registration(session: Session, payload: RegistrationCreate) -> models.Registration:
    for name in ("first_name", "last_name", "category", "shirt_size"):
        if DELIMITER in (getattr(payload, name) or ""):
            raise ValueError(f"{name} may not contain '{DELIMITER}'")
    category = session.execute(
        select(models.Category).where(models.Category.name == payload.category)
    ).scalar_one_or_none()
    if not category:
        raise ValueError(f"Unknown category: {payload.category}")
    reg = models.Registration(
        registration_id=generate_registration_id(session),
        price=category.price,
        payment_status="pending",
        **payload.model_dump(),
    )
    session.add(reg)
    session.commit()
    logger.info("Created registration %s for %s", reg.registration_id, reg.email)
    return reg

def get_registration(session: Session, pk: int) -> Optional[models.Registration]:
    return session.get(models.Registration, pk)

def get_registration_by_code(session: Session, registration_id: str) -> Optional[models.Registration]:
    return session.execute(
        select(models.Registration)
        .where(models.Registration.registration_id == registration_id)
        .execution_options(populate_existing=True)  # reload rows already in the identity map
    ).scalar_one_or_none()

def list_registrations(session: Session) -> list[models.Registration]:
    return session.execute(
        select(models.Registration).order_by(models.Registration.created_at.desc(), models.Registration.id.desc())
    ).scalars().all()

def build_registration_payload(reg: models.Registration) -> str:
    return encode_payload(reg.registration_id, reg.full_name, reg.category, reg.price, reg.shirt_size)

# ---------------------------
# Kit claim lookup
# ---------------------------

@dataclass
class RegistrationLookup:
    registration: models.Registration
    payment_method_name: str
    payload: DecodedPayload
    warnings: list[str] = field(default_factory=list)

    @property
    def payment_confirmed(self) -> bool:
        return self.registration.payment_status == "confirmed"

def lookup_registration(session: Session, raw_text: str) -> RegistrationLookup:
    """Resolve scanned or typed QR text to the stored registration.

    Raises MalformedPayload for bad text, NotFound when no row matches and
    LookupFailed when the database read itself fails.
    """
    decoded = decode_payload(raw_text)
    try:
        reg = get_registration_by_code(session, decoded.registration_id)
        methods = list_payment_methods(session) if reg else []
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning("Lookup of %s failed: %s", decoded.registration_id, e)
        raise LookupFailed(f"Error looking up registration: {e}") from e
    if not reg:
        logger.info("No registration for code %s", decoded.registration_id)
        raise NotFound()

    warnings = []
    if reg.payment_status != "confirmed":
        warnings.append(f"Payment not confirmed (status: {reg.payment_status or 'pending'})")
    if reg.kit_claimed:
        when = reg.claimed_at.isoformat(sep=" ", timespec="minutes") if reg.claimed_at else "unknown time"
        warnings.append(f"Kit already claimed by {reg.claimed_by or 'unknown'} at {when}")
    logger.info("Looked up registration %s", reg.registration_id)
    return RegistrationLookup(
        registration=reg,
        payment_method_name=payment_method_label(reg.payment_method_id, methods),
        payload=decoded,
        warnings=warnings,
    )

# ---------------------------
# Kit claim mutation
# ---------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts

def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None

def update_kit_claim(session: Session, claim: KitClaimUpdate) -> models.Registration:
    """Apply one claim/unclaim write to a registration row.

    Claiming requires a claimer name and stores the given timestamp;
    unclaiming clears claimer and timestamp but keeps the notes unless new
    ones are given. Repeating a transition just overwrites. With
    ``expected_version`` set the write only succeeds when the row has not
    changed since it was read.
    """
    if claim.kit_claimed:
        claimed_by = _clean(claim.claimed_by)
        if not claimed_by:
            raise InvalidClaim("Claimer name is required to claim a kit")
        values = {
            "kit_claimed": True,
            "claimed_at": _naive_utc(claim.claimed_at) if claim.claimed_at else _utcnow(),
            "claimed_by": claimed_by,
            "claim_notes": _clean(claim.claim_notes),
            "processed_by": _clean(claim.processed_by),
            "claim_location_id": claim.claim_location_id,
        }
    else:
        values = {
            "kit_claimed": False,
            "claimed_at": None,
            "claimed_by": None,
            "processed_by": None,
            "claim_location_id": None,
        }
        # Notes are kept unless new ones are given
        if claim.claim_notes is not None:
            values["claim_notes"] = _clean(claim.claim_notes)

    stmt = update(models.Registration).where(models.Registration.id == claim.id)
    if claim.expected_version is not None:
        stmt = stmt.where(models.Registration.claim_version == claim.expected_version)
    stmt = stmt.values(claim_version=models.Registration.claim_version + 1, **values)
    stmt = stmt.execution_options(synchronize_session=False)

    try:
        result = session.execute(stmt)
        if result.rowcount == 0:
            session.rollback()
            if session.get(models.Registration, claim.id) is None:
                raise NotFound()
            raise ClaimConflict("Kit claim was changed by someone else. Scan again to reload it.")
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Kit claim update for registration %s failed: %s", claim.id, e)
        raise UpdateFailed(f"Error updating kit claim status: {e}") from e

    reg = session.get(models.Registration, claim.id)
    session.refresh(reg)  # update() bypassed the identity map
    logger.info(
        "Registration %s kit_claimed=%s by %s",
        reg.registration_id, reg.kit_claimed, reg.claimed_by,
    )
    return reg

def claim_kit(
    session: Session,
    pk: int,
    claimed_by: str,
    claim_notes: Optional[str] = None,
    claimed_at: Optional[datetime] = None,
    expected_version: Optional[int] = None,
    processed_by: Optional[str] = None,
) -> models.Registration:
    return update_kit_claim(session, KitClaimUpdate(
        id=pk,
        kit_claimed=True,
        claimed_by=claimed_by,
        claim_notes=claim_notes,
        processed_by=processed_by,
        claimed_at=claimed_at or _utcnow(),
        expected_version=expected_version,
    ))

def unclaim_note(previous_notes: Optional[str], when: datetime) -> str:
    return f"Unclaimed on {when:%Y-%m-%d %H:%M:%S}. Previous notes: {previous_notes or 'None'}"

def unclaim_kit(
    session: Session,
    pk: int,
    previous_notes: Optional[str] = None,
    unclaimed_at: Optional[datetime] = None,
    expected_version: Optional[int] = None,
) -> models.Registration:
    if previous_notes is None:
        reg = get_registration(session, pk)
        if reg is None:
            raise NotFound()
        previous_notes = reg.claim_notes
    return update_kit_claim(session, KitClaimUpdate(
        id=pk,
        kit_claimed=False,
        claim_notes=unclaim_note(previous_notes, unclaimed_at or _utcnow()),
        expected_version=expected_version,
    ))

@dataclass
class BulkClaimResult:
    claimed: list[int] = field(default_factory=list)
    failed_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

def bulk_claim_kits(
    session: Session,
    registration_ids: list[int],
    processed_by: str,
    claim_location_id: Optional[int],
    claim_notes: Optional[str] = None,
    claimed_at: Optional[datetime] = None,
) -> BulkClaimResult:
    if not claim_location_id:
        raise InvalidClaim("Please select a claim location")
    if not (processed_by or "").strip():
        raise InvalidClaim("Please enter the name of the person processing these kits")
    if not registration_ids:
        raise InvalidClaim("Please select at least one participant")
    location = session.get(models.ClaimLocation, claim_location_id)
    if not location or not location.active:
        raise InvalidClaim("Claim location not found")

    notes = f"Bulk distribution: {claim_notes.strip()}" if claim_notes and claim_notes.strip() else "Bulk distribution"
    when = claimed_at or _utcnow()
    out = BulkClaimResult()
    for pk in registration_ids:
        try:
            update_kit_claim(session, KitClaimUpdate(
                id=pk,
                kit_claimed=True,
                claimed_at=when,
                claimed_by=BULK_CLAIMER,
                processed_by=processed_by,
                claim_location_id=claim_location_id,
                claim_notes=notes,
            ))
        except (NotFound, UpdateFailed) as e:
            logger.warning("Bulk claim stopped at registration %s: %s", pk, e.message)
            out.failed_id = pk
            out.error = e.message
            break
        out.claimed.append(pk)
    logger.info("Bulk claimed %d of %d kits at %s", len(out.claimed), len(registration_ids), location.name)
    return out

# ---------------------------
# Payments
# ---------------------------

def generate_receipt_number(now: Optional[datetime] = None) -> str:
    year = (now or _utcnow()).year
    return f"FR-{year}-{uuid.uuid4().hex[:8].upper()}"

def ensure_receipt(session: Session, reg: models.Registration, generated_by: Optional[str]) -> models.PaymentReceipt:
    existing = session.execute(
        select(models.PaymentReceipt).where(models.PaymentReceipt.registration_fk == reg.id)
    ).scalar_one_or_none()
    if existing:
        return existing
    receipt = models.PaymentReceipt(
        registration_fk=reg.id,
        receipt_number=generate_receipt_number(),
        generated_by=generated_by,
    )
    session.add(receipt)
    return receipt

def update_payment_status(
    session: Session,
    reg: models.Registration,
    new_status: str,
    notes: Optional[str] = None,
    changed_by: str = "admin",
) -> Optional[models.PaymentReceipt]:
    """Change a registration's payment status and log it to the history.

    Returns the receipt when the payment ends up confirmed.
    """
    if new_status not in PAYMENT_STATUSES:
        raise ValueError("payment_status must be pending, confirmed or rejected")
    previous = reg.payment_status or "pending"
    if previous == new_status and not notes:
        return None

    reg.payment_status = new_status
    reg.payment_notes = notes
    reg.payment_confirmed_by = changed_by
    reg.status = "confirmed" if new_status == "confirmed" else "pending"
    if new_status == "confirmed":
        reg.payment_date = _utcnow()
    session.add(models.PaymentHistory(
        registration_fk=reg.id,
        payment_status=new_status,
        previous_status=previous,
        changed_by=changed_by,
        notes=notes,
    ))
    receipt = ensure_receipt(session, reg, changed_by) if new_status == "confirmed" else None
    session.commit()
    logger.info("Registration %s payment %s -> %s by %s", reg.registration_id, previous, new_status, changed_by)
    return receipt

def get_payment_history(session: Session, registration_pk: int) -> list[models.PaymentHistory]:
    return session.execute(
        select(models.PaymentHistory)
        .where(models.PaymentHistory.registration_fk == registration_pk)
        .order_by(models.PaymentHistory.created_at.desc(), models.PaymentHistory.id.desc())
    ).scalars().all()
