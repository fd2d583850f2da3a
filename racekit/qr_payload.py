"""QR payload text format.

A kit QR code carries one pipe-delimited line::

    <event tag>|<registration_id>|<name>|<category>|<price>|<shirt size>

Only the registration id is trusted; the other segments are informational
and the lookup always re-reads the registration from the database.
"""
from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import qrcode
from PIL import Image

from .errors import MalformedPayload
from .settings import settings

DELIMITER = "|"
SEGMENT_COUNT = 6


@dataclass(frozen=True)
class DecodedPayload:
    event_tag: str
    registration_id: str
    participant_name: str
    category: str
    price: Optional[float]
    shirt_size: str


def _format_price(price) -> str:
    if isinstance(price, float) and price.is_integer():
        return str(int(price))
    return str(price)


def encode_payload(
    registration_id: str,
    participant_name: str,
    category: str,
    price,
    shirt_size: str,
    event_tag: str | None = None,
) -> str:
    tag = event_tag or settings.RACEKIT_EVENT_TAG
    fields = [tag, registration_id, participant_name, category, _format_price(price), shirt_size]
    for value in fields:
        if DELIMITER in value:
            raise ValueError(f"QR payload fields may not contain '{DELIMITER}': {value!r}")
    if not registration_id:
        raise ValueError("registration_id is required")
    return DELIMITER.join(fields)


def decode_payload(text: str | None, event_tag: str | None = None) -> DecodedPayload:
    tag = event_tag or settings.RACEKIT_EVENT_TAG
    raw = (text or "").strip()
    if not raw:
        raise MalformedPayload()
    parts = raw.split(DELIMITER)
    # an embedded delimiter in any field shifts the segment count
    if len(parts) != SEGMENT_COUNT or parts[0] != tag:
        raise MalformedPayload()
    _, registration_id, name, category, price_s, shirt_size = parts
    if not registration_id.strip():
        raise MalformedPayload()
    try:
        price: Optional[float] = float(price_s)
    except ValueError:
        price = None
    return DecodedPayload(
        event_tag=tag,
        registration_id=registration_id.strip(),
        participant_name=name,
        category=category,
        price=price,
        shirt_size=shirt_size,
    )


def make_qr_png_bytes(text: str, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img: Image.Image = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()
