"""Bulk registration upload from Excel workbooks."""
from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from openpyxl import Workbook, load_workbook
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, services
from .qr_payload import DELIMITER
from .schemas import RegistrationCreate

logger = logging.getLogger(__name__)

COLUMNS = [
    "first_name", "last_name", "email", "phone", "age", "gender", "category",
    "shirt_size", "is_church_attendee", "department", "ministry", "cluster",
    "emergency_contact", "emergency_phone", "medical_conditions", "status",
]
REQUIRED_FIELDS = ["first_name", "last_name", "email", "category", "shirt_size", "emergency_contact", "emergency_phone"]
SHIRT_SIZES = ["3XS", "2XS", "XS", "S", "M", "L", "XL", "2XL", "3XL", "4XL", "5XL"]
GENDERS = ["male", "female", ""]
STATUSES = ["pending", "paid", "completed", "cancelled", ""]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class RowError:
    row: int
    field: str
    message: str


@dataclass
class Lookups:
    categories: set[str] = field(default_factory=set)
    departments: dict[str, int] = field(default_factory=dict)
    # (department_id, name) -> ministry id
    ministries: dict[tuple[int, str], int] = field(default_factory=dict)
    # (ministry_id, name)
    clusters: set[tuple[int, str]] = field(default_factory=set)


@dataclass
class UploadResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    errors: list[RowError] = field(default_factory=list)


def load_lookups(session: Session) -> Lookups:
    out = Lookups()
    out.categories = {c.name for c in services.list_categories(session)}
    for d in session.execute(select(models.Department)).scalars():
        out.departments[d.name] = d.id
    for m in session.execute(select(models.Ministry)).scalars():
        out.ministries[(m.department_id, m.name)] = m.id
    for c in session.execute(select(models.Cluster)).scalars():
        out.clusters.add((c.ministry_id, c.name))
    return out


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value).lower() in ("true", "yes", "1")


def parse_workbook(data: bytes) -> list[tuple[int, dict[str, Any]]]:
    """Read the first sheet. Returns (sheet row number, {header: value}) pairs."""
    wb = load_workbook(filename=io.BytesIO(data), read_only=True, data_only=True)
    try:
        rows = wb.worksheets[0].iter_rows(values_only=True)
        header = [_text(h).lower() for h in next(rows, ())]
        out = []
        for idx, values in enumerate(rows, start=2):
            if all(v is None or _text(v) == "" for v in values):
                continue
            out.append((idx, {h: v for h, v in zip(header, values) if h}))
        return out
    finally:
        wb.close()


def validate_rows(rows: list[tuple[int, dict[str, Any]]], lookups: Lookups) -> list[RowError]:
    errors: list[RowError] = []
    for row_no, row in rows:
        def err(field_name: str, message: str) -> None:
            errors.append(RowError(row_no, field_name, message))

        for f in REQUIRED_FIELDS:
            if not _text(row.get(f)):
                err(f, f"{f} is required")
        for f in ("first_name", "last_name"):
            if DELIMITER in _text(row.get(f)):
                err(f, f"{f} may not contain '{DELIMITER}'")

        email = _text(row.get("email"))
        if email and not EMAIL_RE.match(email):
            err("email", "Invalid email format")

        category = _text(row.get("category"))
        if category and category not in lookups.categories:
            err("category", f"Category must be one of: {', '.join(sorted(lookups.categories))}")

        shirt = _text(row.get("shirt_size"))
        if shirt and shirt not in SHIRT_SIZES:
            err("shirt_size", f"Shirt size must be one of: {', '.join(SHIRT_SIZES)}")

        gender = _text(row.get("gender")).lower()
        if gender not in GENDERS:
            err("gender", "Gender must be male or female")

        status = _text(row.get("status")).lower()
        if status not in STATUSES:
            err("status", "Status must be one of: pending, paid, completed, cancelled")

        if _truthy(row.get("is_church_attendee")):
            department = _text(row.get("department"))
            ministry = _text(row.get("ministry"))
            cluster = _text(row.get("cluster"))
            if not department:
                err("department", "Department is required when is_church_attendee is true")
            if not ministry:
                err("ministry", "Ministry is required when is_church_attendee is true")
            dept_id = lookups.departments.get(department) if department else None
            if department and dept_id is None:
                err("department", f"Department '{department}' does not exist")
            ministry_id = lookups.ministries.get((dept_id, ministry)) if dept_id is not None and ministry else None
            if dept_id is not None and ministry and ministry_id is None:
                err("ministry", f"Ministry '{ministry}' does not exist in department '{department}'")
            if ministry_id is not None and cluster and (ministry_id, cluster) not in lookups.clusters:
                err("cluster", f"Cluster '{cluster}' does not exist in ministry '{ministry}'")
    return errors


def _to_create(row: dict[str, Any]) -> RegistrationCreate:
    age = _text(row.get("age"))
    return RegistrationCreate(
        first_name=_text(row.get("first_name")),
        last_name=_text(row.get("last_name")),
        email=_text(row.get("email")),
        phone=_text(row.get("phone")) or None,
        age=int(age) if age.isdigit() else None,
        gender=_text(row.get("gender")).lower() or None,
        category=_text(row.get("category")),
        shirt_size=_text(row.get("shirt_size")),
        is_church_attendee=_truthy(row.get("is_church_attendee")),
        department=_text(row.get("department")) or None,
        ministry=_text(row.get("ministry")) or None,
        cluster=_text(row.get("cluster")) or None,
        emergency_contact=_text(row.get("emergency_contact")) or None,
        emergency_phone=_text(row.get("emergency_phone")) or None,
        medical_conditions=_text(row.get("medical_conditions")) or None,
        status=_text(row.get("status")).lower() or "pending",
    )


def import_rows(session: Session, rows: list[tuple[int, dict[str, Any]]], lookups: Optional[Lookups] = None) -> UploadResult:
    result = UploadResult(total=len(rows))
    result.errors = validate_rows(rows, lookups or load_lookups(session))
    if result.errors:
        return result
    for row_no, row in rows:
        try:
            services.create_registration(session, _to_create(row))
        except (SQLAlchemyError, ValueError) as e:
            session.rollback()
            logger.error("Upload row %d failed: %s", row_no, e)
            result.failed += 1
            result.errors.append(RowError(row_no, "", str(e)))
        else:
            result.success += 1
    logger.info("Bulk upload: %d imported, %d failed of %d", result.success, result.failed, result.total)
    return result


def import_workbook(session: Session, data: bytes, dry_run: bool = False) -> UploadResult:
    rows = parse_workbook(data)
    if not rows:
        raise ValueError("The uploaded file contains no data rows")
    if dry_run:
        return UploadResult(total=len(rows), errors=validate_rows(rows, load_lookups(session)))
    return import_rows(session, rows)


def build_upload_template(categories: list[str]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Registrations"
    ws.append(COLUMNS)
    ws.append([
        "Juan", "Dela Cruz", "juan@example.com", "09171234567", 30, "male",
        categories[0] if categories else "3K", "M", False, "", "", "",
        "Maria Dela Cruz", "09181234567", "", "pending",
    ])

    info = wb.create_sheet("Instructions")
    for line in [
        "Instructions for Bulk Registration Upload",
        f"1. Fill out all required fields ({', '.join(REQUIRED_FIELDS)})",
        f"2. Category must be one of: {', '.join(categories) or '(none configured)'}",
        "3. For is_church_attendee, use TRUE or FALSE (department and ministry are required if TRUE)",
        f"4. Shirt size must be one of: {', '.join(SHIRT_SIZES)}",
        "5. Gender must be male or female (or left blank)",
        "6. Status must be pending, paid, completed or cancelled (defaults to pending)",
        "7. Registration IDs and prices are assigned automatically",
    ]:
        info.append([line])

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()
