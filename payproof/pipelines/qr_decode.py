"""
QR payload recovery for receipt images.

Receipts are photographed rotated, cropped, blurred or at low resolution,
and the QR code usually sits near the footer. We search a lazy stream of
candidates (region x filter x rotation) and stop at the first decode.

Design principles:
- NEVER raises; failures are reported in QrDecodeResult.error
- "not decoded" is never reported as "not present" when a finder
  pattern was located
- Every region is capped at MAX_DECODE_SIDE before filtering, so both
  filter and decode cost per candidate are bounded
"""

import logging
from typing import Callable, Iterator, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image

from payproof.pipelines import image_preprocessing as prep
from payproof.schemas.receipt import QrDecodeResult

logger = logging.getLogger(__name__)

MAX_DECODE_SIDE = 1600
SMALL_IMAGE_THRESHOLD = 600

# (name, fractional crop box)
REGIONS: Tuple[Tuple[str, Tuple[float, float, float, float]], ...] = (
    ("full", (0.0, 0.0, 1.0, 1.0)),
    ("bottom_half", (0.0, 0.5, 1.0, 1.0)),
    ("bottom_right", (0.5, 0.5, 1.0, 1.0)),
    ("bottom_left", (0.0, 0.5, 0.5, 1.0)),
)

FILTERS: Tuple[Tuple[str, Callable[[Image.Image], Image.Image]], ...] = (
    ("identity", prep.identity),
    ("grey_normalize", prep.grey_normalize),
    ("grey_contrast", prep.grey_contrast),
    ("grey_contrast_invert", prep.grey_contrast_invert),
    ("upscale_2x", prep.upscale_2x),
    ("sharpen", prep.sharpen),
)

ROTATIONS = (0, 90, 180, 270)

# A decoder returns (payload or None, finder_pattern_located)
Decoder = Callable[[np.ndarray], Tuple[Optional[str], bool]]


def _opencv_decode(detector, arr: np.ndarray) -> Tuple[Optional[str], bool]:
    text, points, _ = detector.detectAndDecode(arr)
    located = points is not None and len(points) > 0
    return (text or None), located


def decode_with_opencv(arr: np.ndarray) -> Tuple[Optional[str], bool]:
    """Primary decoder: classic OpenCV QR detector (fast)."""
    return _opencv_decode(cv2.QRCodeDetector(), arr)


def decode_with_aruco(arr: np.ndarray) -> Tuple[Optional[str], bool]:
    """Secondary decoder: ArUco-based finder search, more tolerant of blur and skew."""
    return _opencv_decode(cv2.QRCodeDetectorAruco(), arr)


DEFAULT_DECODERS: Tuple[Tuple[str, Decoder], ...] = (
    ("opencv", decode_with_opencv),
    ("aruco", decode_with_aruco),
)


def iter_candidates(img: Image.Image) -> Iterator[Tuple[str, Image.Image]]:
    """
    Yield (label, candidate) lazily in region -> filter -> rotation order.

    The 2x upscale filter is only used when the cropped region is small.
    """
    for region_name, box in REGIONS:
        region = prep.cap_size(prep.crop_fraction(img, box), MAX_DECODE_SIDE)
        if region.size[0] < 8 or region.size[1] < 8:
            continue
        for filter_name, fn in FILTERS:
            if fn is prep.upscale_2x and max(region.size) >= SMALL_IMAGE_THRESHOLD:
                continue
            filtered = fn(region)
            for angle in ROTATIONS:
                label = f"{region_name}/{filter_name}/rot{angle}"
                yield label, prep.rotate(filtered, angle)


def decode_qr(
    image_bytes: bytes,
    decoders: Optional[Sequence[Tuple[str, Decoder]]] = None,
) -> QrDecodeResult:
    """
    Search the image for a QR payload.

    Returns on the first successful decode:
        QrDecodeResult(present=True, decoded=True, payload=..., method="opencv:full/identity/rot0")

    On exhaustion:
        present=True,  error="detected_not_decoded"  if a finder pattern was seen
        present=False, error="not_decoded"           otherwise
    """
    decoders = tuple(decoders or DEFAULT_DECODERS)

    try:
        img = prep.load_image(image_bytes)
    except Exception as e:
        logger.warning("QR decode: could not load image: %s", e)
        return QrDecodeResult(error="image_unreadable")

    attempts = 0
    located_any = False

    try:
        for label, candidate in iter_candidates(img):
            attempts += 1
            arr = prep.to_cv_array(candidate)
            for decoder_name, decoder in decoders:
                try:
                    payload, located = decoder(arr)
                except cv2.error as e:
                    logger.debug("QR decoder %s failed on %s: %s", decoder_name, label, e)
                    continue
                located_any = located_any or located
                if payload:
                    method = f"{decoder_name}:{label}"
                    logger.info("QR decoded via %s after %d candidates", method, attempts)
                    return QrDecodeResult(
                        present=True,
                        decoded=True,
                        payload=payload,
                        method=method,
                        attempts=attempts,
                    )
    except Exception as e:
        logger.warning("QR search aborted after %d candidates: %s", attempts, e)
        return QrDecodeResult(
            present=located_any,
            error=f"qr_error: {str(e)[:80]}",
            attempts=attempts,
        )

    if located_any:
        return QrDecodeResult(present=True, error="detected_not_decoded", attempts=attempts)
    return QrDecodeResult(error="not_decoded", attempts=attempts)
