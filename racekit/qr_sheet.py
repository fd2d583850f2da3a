#!/usr/bin/env python3
"""Generate a printable PDF with kit QR codes + registration ids.

Usage examples:
  racekit-qr-sheet --out kit_qr.pdf
  racekit-qr-sheet --category 10K --cols 3 --rows 4 --size-mm 55 --out 10k.pdf

Notes:
- Each QR encodes the full kit payload (event tag, registration id, name,
  category, price, shirt size), the same text the scanner expects.
- Default layout is an A4 sheet with a reasonable label grid.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.lib.utils import ImageReader

from . import db, services
from .qr_payload import make_qr_png_bytes

logger = logging.getLogger(__name__)


@dataclass
class Label:
    payload: str
    title: str
    subtitle: str = ""


@dataclass
class SheetLayout:
    cols: int = 4
    rows: int = 6
    margin_mm: float = 10.0
    gap_mm: float = 4.0
    size_mm: float = 42.0
    qr_mm: float = 33.0
    font: str = "Helvetica-Bold"
    font_size: float = 10.0

    def check(self) -> None:
        if self.qr_mm > self.size_mm:
            raise ValueError("qr_mm must be <= size_mm")
        page_w, page_h = A4
        usable_w = page_w - 2 * self.margin_mm * mm
        usable_h = page_h - 2 * self.margin_mm * mm
        needed_w = (self.cols * self.size_mm + (self.cols - 1) * self.gap_mm) * mm
        needed_h = (self.rows * self.size_mm + (self.rows - 1) * self.gap_mm) * mm
        if needed_w > usable_w + 1e-6 or needed_h > usable_h + 1e-6:
            raise ValueError(
                f"Grid does not fit on A4 with current settings. "
                f"Needed: {needed_w/mm:.1f}x{needed_h/mm:.1f}mm, "
                f"Usable: {usable_w/mm:.1f}x{usable_h/mm:.1f}mm. "
                f"Try fewer rows/cols, smaller size, or smaller margins."
            )


def build_qr_sheet_pdf(labels: list[Label], layout: SheetLayout | None = None, title: str = "Kit QR codes") -> bytes:
    layout = layout or SheetLayout()
    layout.check()

    page_w, page_h = A4
    margin = layout.margin_mm * mm
    gap = layout.gap_mm * mm
    label_size = layout.size_mm * mm
    qr_size = layout.qr_mm * mm
    per_page = layout.cols * layout.rows

    out = BytesIO()
    c = canvas.Canvas(out, pagesize=A4)
    c.setTitle(title)

    def draw_label(x: float, y: float, label: Label):
        # (x,y) is the bottom-left corner of the label
        pad = 2 * mm
        text_room = layout.font_size * 2.2
        qr_x = x + (label_size - qr_size) / 2
        qr_y = y + (label_size - qr_size) - pad
        if qr_y - y < text_room:
            qr_y = y + text_room

        img = ImageReader(BytesIO(make_qr_png_bytes(label.payload)))
        c.drawImage(img, qr_x, qr_y, width=qr_size, height=qr_size, preserveAspectRatio=True, mask="auto")

        c.setFont(layout.font, layout.font_size)
        c.drawCentredString(x + label_size / 2, y + pad + layout.font_size, label.title)
        if label.subtitle:
            c.setFont("Helvetica", layout.font_size * 0.8)
            c.drawCentredString(x + label_size / 2, y + pad, label.subtitle[:40])

    for idx, label in enumerate(labels):
        slot = idx % per_page
        if idx and slot == 0:
            c.showPage()
        r, col = divmod(slot, layout.cols)
        x = margin + col * (label_size + gap)
        # y origin at bottom; first row at the top of the usable area
        y = (page_h - margin - label_size) - r * (label_size + gap)
        draw_label(x, y, label)

    c.save()
    logger.info("Rendered %d QR labels", len(labels))
    return out.getvalue()


def registration_labels(registrations) -> list[Label]:
    return [
        Label(
            payload=services.build_registration_payload(r),
            title=r.registration_id,
            subtitle=f"{r.full_name} - {r.category} / {r.shirt_size}",
        )
        for r in registrations
    ]


def main(argv: list[str] | None = None):
    ap = argparse.ArgumentParser(description="Print kit QR labels for registrations")
    ap.add_argument("--out", type=str, default="kit_qr.pdf", help="Output PDF filename")
    ap.add_argument("--category", type=str, default=None, help="Only this race category")
    ap.add_argument("--unclaimed-only", action="store_true", help="Skip kits that were already claimed")

    ap.add_argument("--margin-mm", type=float, default=10.0, help="Page margin in mm")
    ap.add_argument("--gap-mm", type=float, default=4.0, help="Gap between labels in mm")
    ap.add_argument("--cols", type=int, default=4, help="Number of columns")
    ap.add_argument("--rows", type=int, default=6, help="Number of rows")
    ap.add_argument("--size-mm", type=float, default=42.0, help="Label square size in mm (QR + text area)")
    ap.add_argument("--qr-mm", type=float, default=33.0, help="QR size in mm inside label")
    ap.add_argument("--font", type=str, default="Helvetica-Bold", help="Font name")
    ap.add_argument("--font-size", type=float, default=10.0, help="Registration id font size")

    args = ap.parse_args(argv)

    layout = SheetLayout(
        cols=args.cols, rows=args.rows, margin_mm=args.margin_mm, gap_mm=args.gap_mm,
        size_mm=args.size_mm, qr_mm=args.qr_mm, font=args.font, font_size=args.font_size,
    )
    try:
        layout.check()
    except ValueError as e:
        raise SystemExit(str(e))

    session = db.new_session()
    try:
        regs = services.list_registrations(session)
        if args.category:
            regs = [r for r in regs if r.category == args.category]
        if args.unclaimed_only:
            regs = [r for r in regs if not r.kit_claimed]
        pdf = build_qr_sheet_pdf(registration_labels(regs), layout)
    finally:
        session.close()

    with open(args.out, "wb") as fh:
        fh.write(pdf)
    print(f"Saved {len(regs)} labels to: {args.out}")


if __name__ == "__main__":
    main()
