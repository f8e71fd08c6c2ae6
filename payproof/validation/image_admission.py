"""
Request admission: image payload and expected-transaction checks.

Everything here runs before the decision engine. A failure raises
AdmissionError and no decision is produced.
"""

import base64
import binascii
import io
import re
from typing import Any, Iterable, Optional, Tuple

from PIL import Image

from payproof.config.settings import AdmissionConfig
from payproof.errors import AdmissionError
from payproof.schemas.receipt import ExpectedTransaction
from payproof.signals.amount_signals import normalize_expected_amount
from payproof.signals.date_signals import normalize_date, normalize_time
from payproof.signals.destination_signals import digits_only

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")

MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
}

_DATA_URL_PREFIX = re.compile(r"^data:([\w/+.-]+);base64,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def canonical_mime(mime: Optional[str]) -> Optional[str]:
    if not mime:
        return None
    m = mime.split(";")[0].strip().lower()
    return MIME_ALIASES.get(m, m)


def sniff_mime(data: bytes) -> Optional[str]:
    """Identify the container from its magic bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def decode_base64_image(image_b64: Any) -> Tuple[bytes, Optional[str]]:
    """
    Decode a base64 payload, optionally wrapped as a data URL.

    Returns (bytes, mime from the data URL or None).
    """
    if not isinstance(image_b64, str) or not image_b64.strip():
        raise AdmissionError("missing_image", "imageBase64 is required")

    text = image_b64.strip()
    url_mime = None
    m = _DATA_URL_PREFIX.match(text)
    if m:
        url_mime = canonical_mime(m.group(1))
        text = text[m.end():]

    text = _WHITESPACE.sub("", text)
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise AdmissionError("invalid_base64", "imageBase64 is not valid base64")
    return data, url_mime


def admit_image(image_b64: Any, mime: Optional[str], config: Optional[AdmissionConfig] = None) -> Tuple[bytes, str]:
    """
    Validate an uploaded receipt image.

    Returns (image_bytes, canonical_mime) or raises AdmissionError.
    """
    config = config or AdmissionConfig()
    data, url_mime = decode_base64_image(image_b64)

    declared = canonical_mime(mime) or url_mime
    if declared not in ALLOWED_MIME_TYPES:
        raise AdmissionError(
            "unsupported_mime",
            f"imageMime must be one of {', '.join(ALLOWED_MIME_TYPES)}",
        )

    if len(data) < config.min_image_bytes:
        raise AdmissionError("image_too_small", f"image is smaller than {config.min_image_bytes} bytes")
    if len(data) > config.max_image_bytes:
        raise AdmissionError("image_too_large", f"image exceeds {config.max_image_bytes} bytes")

    sniffed = sniff_mime(data)
    if sniffed != declared:
        raise AdmissionError(
            "mime_mismatch",
            f"declared {declared} but content is {sniffed or 'unrecognised'}",
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            # Bounds first; loading a huge image is the expensive part
            if width * height > config.max_image_pixels:
                raise AdmissionError("image_too_large", f"image exceeds {config.max_image_pixels} pixels")
            if min(width, height) < config.min_image_side:
                raise AdmissionError(
                    "image_too_small",
                    f"image sides must be at least {config.min_image_side}px",
                )
            img.load()
    except AdmissionError:
        raise
    except Exception as e:
        raise AdmissionError("image_unreadable", f"image could not be decoded: {str(e)[:80]}")

    return data, declared


def validate_expected(
    amount: Any,
    date: Any,
    time: Any = None,
    destinations: Optional[Iterable[Any]] = None,
    shorthand: bool = False,
) -> ExpectedTransaction:
    """Normalize the caller's expected values or raise AdmissionError."""
    norm_amount = normalize_expected_amount(amount, shorthand=shorthand)
    if norm_amount is None or norm_amount <= 0:
        raise AdmissionError("invalid_expected_amount", "expectedAmount must be a positive number")

    norm_date = normalize_date(date)
    if norm_date is None:
        raise AdmissionError("invalid_expected_date", "expectedDate must be YYYY-MM-DD or DD/MM/YYYY")

    norm_time = None
    if time not in (None, ""):
        norm_time = normalize_time(time)
        if norm_time is None:
            raise AdmissionError("invalid_expected_time", "expectedTime must be HH:MM")

    allow = frozenset(d for d in (digits_only(x) for x in (destinations or ())) if d)

    return ExpectedTransaction(
        amount=norm_amount,
        date=norm_date,
        time=norm_time,
        acceptable_destinations=allow,
    )
