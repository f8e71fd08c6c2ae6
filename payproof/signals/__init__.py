"""
Field reconciliation signals.

- Amount: amount_signals (scale-tolerant matching)
- Date/time: date_signals
- Destination: destination_signals (allow-set containment, QR cross-check)
"""

from payproof.signals.amount_signals import (
    parse_amount,
    normalize_expected_amount,
    compare_amounts,
)

from payproof.signals.date_signals import (
    normalize_date,
    normalize_time,
    dates_equal,
    minutes_between,
)

from payproof.signals.destination_signals import (
    digits_only,
    destination_matches,
    qr_contains_destination,
    qr_destination_status,
)

__all__ = [
    # Amount
    "parse_amount",
    "normalize_expected_amount",
    "compare_amounts",
    # Date / time
    "normalize_date",
    "normalize_time",
    "dates_equal",
    "minutes_between",
    # Destination
    "digits_only",
    "destination_matches",
    "qr_contains_destination",
    "qr_destination_status",
]
