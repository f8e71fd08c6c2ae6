"""
Destination validation against the configured allow-set.

Matching is by digit-string containment in either direction, which
tolerates truncated phone-style identifiers ("8200803" vs "3138200803").
"""

import re
from typing import Any, Iterable

# A decoded QR payload with fewer digits than this carries no destination.
MIN_QR_DESTINATION_DIGITS = 7


def digits_only(x: Any) -> str:
    if x is None:
        return ""
    return re.sub(r"\D", "", str(x))


def _accepted_digits(accepted: Iterable[str]):
    for entry in accepted or ():
        d = digits_only(entry)
        if d:
            yield d


def destination_matches(read_digits: Any, accepted: Iterable[str]) -> bool:
    """True iff the read digits are contained in an accepted entry or vice versa."""
    read = digits_only(read_digits)
    if not read:
        return False
    return any(read in entry or entry in read for entry in _accepted_digits(accepted))


def qr_contains_destination(payload: Any, accepted: Iterable[str]) -> bool:
    """True iff some accepted entry appears in the payload's digits."""
    digits = digits_only(payload)
    if not digits:
        return False
    return any(entry in digits for entry in _accepted_digits(accepted))


def qr_destination_status(payload: Any, accepted: Iterable[str]) -> str:
    """
    Classify a decoded payload against the allow-set.

    Returns "confirmed", "contradicted" or "absent" (payload too short
    to carry a destination, or no allow-set to check against).
    """
    accepted = list(_accepted_digits(accepted))
    if not accepted:
        return "absent"
    if qr_contains_destination(payload, accepted):
        return "confirmed"
    if len(digits_only(payload)) >= MIN_QR_DESTINATION_DIGITS:
        return "contradicted"
    return "absent"
