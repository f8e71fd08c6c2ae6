"""
Date and time reconciliation.

Dates normalize to ISO YYYY-MM-DD; times to 24-hour HH:MM.
Time distance is a soft signal only, never a gate.
"""

import re
from datetime import date, datetime
from typing import Any, Optional

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
_DMY_DATE = re.compile(r"^(\d{1,2})([/-])(\d{1,2})\2(\d{4})$")
_TIME = re.compile(
    r"^(\d{1,2}):(\d{2})(?::\d{2})?\s*(?:([ap])\.?\s*m\.?)?$",
    re.IGNORECASE,
)


def _iso_or_none(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def normalize_date(s: Any) -> Optional[str]:
    """
    Normalize a date to ISO.

    Accepts YYYY-MM-DD, DD/MM/YYYY and DD-MM-YYYY. Anything else,
    including impossible calendar dates, yields None.
    """
    if s is None:
        return None
    if isinstance(s, datetime):
        return s.date().isoformat()
    if isinstance(s, date):
        return s.isoformat()

    text = str(s).strip()
    m = _ISO_DATE.match(text)
    if m:
        return _iso_or_none(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = _DMY_DATE.match(text)
    if m:
        return _iso_or_none(int(m.group(4)), int(m.group(3)), int(m.group(1)))

    return None


def normalize_time(s: Any) -> Optional[str]:
    """
    Normalize a time to HH:MM.

    "9:05" -> "09:05"; seconds are dropped; "2:30 p. m." -> "14:30".
    """
    if s is None:
        return None
    m = _TIME.match(str(s).strip())
    if not m:
        return None

    hour, minute = int(m.group(1)), int(m.group(2))
    meridiem = (m.group(3) or "").lower()
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "p" else 0)

    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def dates_equal(a: Any, b: Any) -> bool:
    na, nb = normalize_date(a), normalize_date(b)
    return na is not None and na == nb


def minutes_between(a: Any, b: Any) -> Optional[int]:
    """Absolute minutes between two same-day times, or None."""
    na, nb = normalize_time(a), normalize_time(b)
    if na is None or nb is None:
        return None
    ha, ma = (int(x) for x in na.split(":"))
    hb, mb = (int(x) for x in nb.split(":"))
    return abs((ha * 60 + ma) - (hb * 60 + mb))
