"""
Image Forensics Module for PayProof.

Pixel-level tamper scoring that does NOT depend on the vision model or on
file metadata. Produces a soft, advisory score; it can demote a verdict to
manual review but never reject on its own.

Heuristics implemented:
1. Recompression delta (ELA) - re-encode at a fixed JPEG quality and diff luma
2. Block artifact - gradient concentration on 8x8 codec block boundaries
3. Smooth patch - flat mid-tone patches where amount/date text usually sits
4. Edge density - dark-stroke edge fraction vs. a typographic baseline

Design principles:
- NEVER raises; failures return ForensicReport(tags=["forensic_error"])
- Every heuristic is linearly mapped into [0, 1] with calibrated floor/ceiling
- Bounded cost: analysis runs on a downscaled luma plane
"""

import io
import logging
from typing import Any, Dict, List, Tuple

import cv2
import numpy as np
from PIL import Image

from payproof.pipelines import image_preprocessing as prep
from payproof.schemas.receipt import ForensicReport, clamp01

logger = logging.getLogger(__name__)

FORENSIC_MAX_SIDE = 1024
BLOCK_CROP_SIDE = 1024
SAMPLE_STRIDE = 4

ELA_QUALITY = 75
BLOCK_SIZE = 8

# Calibrated floor/ceiling per heuristic (raw measurement -> [0, 1])
ELA_FLOOR, ELA_CEIL = 2.5, 10.0
BLOCK_FLOOR, BLOCK_CEIL = 1.10, 1.80
SMOOTH_FLOOR, SMOOTH_CEIL = 0.20, 0.65
EDGE_DEVIATION_FLOOR, EDGE_DEVIATION_CEIL = 0.04, 0.20

# Smooth-patch
SMOOTH_REGION = (0.10, 0.20, 0.90, 0.75)   # left, top, right, bottom
SMOOTH_STRIDE = 6
SMOOTH_VAR_EPS = 1.0
MIDTONE_RANGE = (40.0, 215.0)
MIN_MIDTONE_SAMPLES = 50

# Edge density
EDGE_TRIM = 0.10
EDGE_GRADIENT_THRESHOLD = 120.0
EDGE_LUMA_THRESHOLD = 128.0
EDGE_BASELINE = 0.06

WEIGHTS = {
    "recompression_delta": 0.45,
    "block_artifact": 0.22,
    "smooth_patch": 0.18,
    "edge_density": 0.15,
}

COMPONENT_TAGS = {
    "recompression_delta": "recompression_inconsistent",
    "block_artifact": "block_seams",
    "smooth_patch": "smooth_patch",
    "edge_density": "typography_inconsistent",
}

MAX_TAGS = 6


def linear_score(value: float, floor: float, ceiling: float) -> float:
    """Map value linearly so floor -> 0 and ceiling -> 1, clamped."""
    if ceiling <= floor:
        return 0.0
    return clamp01((value - floor) / (ceiling - floor))


def combine_scores(ela: float, block: float, smooth: float, edge: float) -> float:
    """Weighted tamper score; non-decreasing in every component."""
    total = (
        WEIGHTS["recompression_delta"] * clamp01(ela)
        + WEIGHTS["block_artifact"] * clamp01(block)
        + WEIGHTS["smooth_patch"] * clamp01(smooth)
        + WEIGHTS["edge_density"] * clamp01(edge)
    )
    return round(clamp01(total), 4)


# =============================================================================
# 1. Recompression delta (ELA)
# =============================================================================

def _recompression_delta(img: Image.Image) -> Tuple[float, float]:
    """
    Re-encode at ELA_QUALITY, decode, and average the luma difference
    on a sparse grid.

    Regions edited after capture recompress differently from untouched
    ones, lifting the mean delta above the camera/codec noise floor.
    """
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=ELA_QUALITY)
    buf.seek(0)
    resaved = Image.open(buf).convert("L")

    original = np.asarray(img.convert("L"), dtype=np.float32)
    recompressed = np.asarray(resaved, dtype=np.float32)
    diff = np.abs(original - recompressed)[::SAMPLE_STRIDE, ::SAMPLE_STRIDE]

    raw = float(np.mean(diff)) if diff.size else 0.0
    return raw, linear_score(raw, ELA_FLOOR, ELA_CEIL)


# =============================================================================
# 2. Block artifact
# =============================================================================

def _block_crop(img: Image.Image) -> np.ndarray:
    """
    Centre crop at native resolution, offset aligned to the block grid.
    Downscaling would destroy the 8x8 alignment we are measuring.
    """
    w, h = img.size
    cw, ch = min(w, BLOCK_CROP_SIDE), min(h, BLOCK_CROP_SIDE)
    left = ((w - cw) // 2) // BLOCK_SIZE * BLOCK_SIZE
    top = ((h - ch) // 2) // BLOCK_SIZE * BLOCK_SIZE
    crop = img.crop((left, top, left + cw, top + ch)).convert("L")
    return np.asarray(crop, dtype=np.float32)


def _boundary_ratio(grad: np.ndarray) -> Tuple[float, float]:
    """Mean gradient on block-boundary columns vs interior columns."""
    cols = np.arange(grad.shape[1])
    on_boundary = (cols + 1) % BLOCK_SIZE == 0
    if not on_boundary.any() or on_boundary.all():
        return 0.0, 0.0
    return float(grad[:, on_boundary].mean()), float(grad[:, ~on_boundary].mean())


def _block_artifact(luma: np.ndarray) -> Tuple[float, float]:
    """
    Ratio of gradient magnitude at codec block edges to interior gradient.

    A pasted region recompressed on its own grid leaves seams exactly on
    the 8-pixel lattice; untouched content has ratio close to 1.
    """
    h, w = luma.shape
    if h < 2 * BLOCK_SIZE or w < 2 * BLOCK_SIZE:
        return 1.0, 0.0

    gx = np.abs(np.diff(luma, axis=1))[::2, :]
    gy = np.abs(np.diff(luma, axis=0))[:, ::2].T

    bx, ix = _boundary_ratio(gx)
    by, iy = _boundary_ratio(gy)
    interior = ix + iy
    if interior < 1e-3:
        return 1.0, 0.0

    raw = (bx + by) / interior
    return raw, linear_score(raw, BLOCK_FLOOR, BLOCK_CEIL)


# =============================================================================
# 3. Smooth patch
# =============================================================================

def _smooth_patch(luma: np.ndarray) -> Tuple[float, float]:
    """
    Fraction of mid-tone samples whose 3x3 neighbourhood is flat.

    Ink strokes and photographed paper both carry texture; a patch pasted
    or blurred over altered digits does not.
    """
    h, w = luma.shape
    left, top, right, bottom = SMOOTH_REGION
    region = np.ascontiguousarray(luma[int(h * top):int(h * bottom), int(w * left):int(w * right)])
    if region.shape[0] < 3 or region.shape[1] < 3:
        return 0.0, 0.0

    mean = cv2.blur(region, (3, 3))
    mean_sq = cv2.blur(region * region, (3, 3))
    var = np.maximum(mean_sq - mean * mean, 0.0)

    values = region[1:-1:SMOOTH_STRIDE, 1:-1:SMOOTH_STRIDE]
    variances = var[1:-1:SMOOTH_STRIDE, 1:-1:SMOOTH_STRIDE]

    lo, hi = MIDTONE_RANGE
    midtone = (values >= lo) & (values <= hi)
    n_mid = int(midtone.sum())
    if n_mid < MIN_MIDTONE_SAMPLES:
        return 0.0, 0.0

    raw = float(((variances < SMOOTH_VAR_EPS) & midtone).sum()) / n_mid
    return raw, linear_score(raw, SMOOTH_FLOOR, SMOOTH_CEIL)


# =============================================================================
# 4. Edge density
# =============================================================================

def _edge_density(luma: np.ndarray) -> Tuple[float, float]:
    """
    Fraction of sampled pixels that are both on a strong gradient and dark,
    inside a trimmed central region. Deviation from the typographic baseline
    in either direction is scored.
    """
    h, w = luma.shape
    dy, dx = int(h * EDGE_TRIM), int(w * EDGE_TRIM)
    region = np.ascontiguousarray(luma[dy:h - dy, dx:w - dx])
    if region.shape[0] < 3 or region.shape[1] < 3:
        return 0.0, 0.0

    gx = cv2.Sobel(region, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(region, cv2.CV_32F, 0, 1, ksize=3)
    magnitude = np.sqrt(gx * gx + gy * gy)[::2, ::2]
    dark = region[::2, ::2] < EDGE_LUMA_THRESHOLD

    hits = (magnitude > EDGE_GRADIENT_THRESHOLD) & dark
    density = float(hits.mean()) if hits.size else 0.0
    deviation = abs(density - EDGE_BASELINE)
    return density, linear_score(deviation, EDGE_DEVIATION_FLOOR, EDGE_DEVIATION_CEIL)


# =============================================================================
# Aggregation
# =============================================================================

def _tags_for(
    components: Dict[str, float],
    combined: float,
    moderate_threshold: float,
    high_threshold: float,
) -> List[str]:
    tags = [COMPONENT_TAGS[name] for name, score in components.items() if score >= moderate_threshold]
    if combined >= high_threshold:
        tags.append("tamper_likely")
    elif combined >= moderate_threshold:
        tags.append("tamper_possible")
    return tags[:MAX_TAGS]


def score_image(
    image_bytes: bytes,
    moderate_threshold: float = 0.45,
    high_threshold: float = 0.70,
) -> ForensicReport:
    """
    Run all heuristics on an image and fuse them.

    This is the CANONICAL entry point called by the verification pipeline.
    """
    try:
        img = prep.load_image(image_bytes)
    except Exception as e:
        logger.warning("Forensics: failed to load image: %s", e)
        return ForensicReport.failed(f"load_failed: {str(e)[:80]}")

    try:
        block_raw, block = _block_artifact(_block_crop(img))

        small = prep.cap_size(img, FORENSIC_MAX_SIDE)
        luma = np.asarray(small.convert("L"), dtype=np.float32)

        ela_raw, ela = _recompression_delta(small)
        smooth_raw, smooth = _smooth_patch(luma)
        edge_raw, edge = _edge_density(luma)
    except Exception as e:
        logger.warning("Forensics: analysis failed: %s", e)
        return ForensicReport.failed(f"analysis_failed: {str(e)[:80]}")

    components = {
        "recompression_delta": ela,
        "block_artifact": block,
        "smooth_patch": smooth,
        "edge_density": edge,
    }
    combined = combine_scores(ela, block, smooth, edge)
    measurements: Dict[str, Any] = {
        "analysed_size": list(small.size),
        "ela_mean_delta": round(ela_raw, 3),
        "block_boundary_ratio": round(block_raw, 3),
        "flat_midtone_fraction": round(smooth_raw, 4),
        "dark_edge_fraction": round(edge_raw, 4),
    }

    report = ForensicReport(
        recompression_delta=round(ela, 4),
        block_artifact=round(block, 4),
        smooth_patch=round(smooth, 4),
        edge_density=round(edge, 4),
        combined_score=combined,
        tags=_tags_for(components, combined, moderate_threshold, high_threshold),
        measurements=measurements,
    )
    logger.info("Forensics: combined=%.3f tags=%s", combined, report.tags)
    return report
