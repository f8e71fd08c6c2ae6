"""
Amount normalization and matching.

The vision collaborator frequently drops thousand separators
(reads "45" for "45.000"). compare_amounts recovers the intended value by
testing a small set of multiplicative scales against the expected amount,
within a tolerance, instead of trusting any single scale.
"""

import math
import re
from typing import Any, Dict, List, Optional

AMOUNT_SCALES = (1, 10, 100, 1000)

# Added to the diff of any scaled reading so the unscaled one wins ties.
SCALE_PENALTY = 1

SHORTHAND_LIMIT = 1000
SHORTHAND_FACTOR = 1000

_NUMERIC_TEXT = re.compile(r"^[\s$€£+.,'\d]*\d[\s$€£+.,'\d]*$")


def parse_amount(raw: Any) -> Optional[int]:
    """
    Parse an amount as an unsigned integer.

    Strings: every non-digit is stripped ("$ 45.000" -> 45000).
    Returns None when no digits remain.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return abs(raw)
    if isinstance(raw, float):
        if not math.isfinite(raw):
            return None
        return int(round(abs(raw)))
    digits = re.sub(r"\D", "", str(raw))
    if not digits:
        return None
    return int(digits)


def normalize_expected_amount(raw: Any, shorthand: bool = False) -> Optional[int]:
    """
    Normalize the caller's expected amount.

    With the shorthand convention, values below 1000 are thousands
    ("45" means 45.000). Non-numeric input yields None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = parse_amount(raw)
    elif isinstance(raw, str) and _NUMERIC_TEXT.match(raw):
        value = parse_amount(raw)
    else:
        return None

    if value is None:
        return None
    if shorthand and 0 < value < SHORTHAND_LIMIT:
        value *= SHORTHAND_FACTOR
    return value


def amount_tolerance(expected: int, floor: int, pct: float) -> int:
    return max(int(floor), int(round(expected * pct)))


def compare_amounts(
    read_raw: Any,
    expected_raw: Any,
    tolerance_floor: int = 100,
    tolerance_pct: float = 0.01,
) -> Dict[str, Any]:
    """
    Compare a read amount to the expected amount across AMOUNT_SCALES.

    Returns:
        {
            "ok": bool,                 # best reading within tolerance
            "expected": int | None,
            "read": int | None,
            "best_reading": int | None, # read * best_scale
            "best_scale": int | None,
            "diff": int | None,
            "tolerance": int | None,
            "candidates": [{"scale", "reading", "diff", "ok"}, ...],
        }
    """
    read = parse_amount(read_raw)
    expected = parse_amount(expected_raw)

    result: Dict[str, Any] = {
        "ok": False,
        "expected": None,
        "read": None,
        "best_reading": None,
        "best_scale": None,
        "diff": None,
        "tolerance": None,
        "candidates": [],
    }
    if read is None or expected is None:
        return result

    tolerance = amount_tolerance(expected, tolerance_floor, tolerance_pct)
    candidates: List[Dict[str, Any]] = []
    best = None
    best_cost = None

    for scale in AMOUNT_SCALES:
        reading = read * scale
        diff = abs(reading - expected)
        cand = {"scale": scale, "reading": reading, "diff": diff, "ok": diff <= tolerance}
        candidates.append(cand)

        # In-tolerance readings always beat out-of-tolerance ones
        cost = (not cand["ok"], diff + (SCALE_PENALTY if scale > 1 else 0))
        if best_cost is None or cost < best_cost:
            best, best_cost = cand, cost

    result.update(
        ok=best["ok"],
        expected=expected,
        read=read,
        best_reading=best["reading"],
        best_scale=best["scale"],
        diff=best["diff"],
        tolerance=tolerance,
        candidates=candidates,
    )
    return result


def format_amount(value: Optional[int]) -> str:
    """45000 -> '45.000' (dot thousands, as printed on local receipts)."""
    if value is None:
        return "?"
    return f"{value:,}".replace(",", ".")
