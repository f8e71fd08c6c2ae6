# payproof/schemas/receipt.py

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

import uuid

from payproof.signals.date_signals import normalize_date, normalize_time


DECISION_STATUSES = ("verified", "pending_review", "rejected")


def clamp01(value: Any) -> float:
    """Coerce to float in [0, 1]; non-numeric and NaN become 0.0."""
    if isinstance(value, bool):
        return 0.0
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(1.0, v))


@dataclass(frozen=True)
class ExpectedTransaction:
    """
    What the caller expects the receipt to show.

    - amount: positive integer, no minor units
    - date: a valid calendar date, stored as ISO YYYY-MM-DD
    - time: optional HH:MM
    - acceptable_destinations: digit strings; empty = use configured allow-set
    """
    amount: int
    date: str
    time: Optional[str] = None
    acceptable_destinations: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise ValueError(f"expected amount must be a positive integer, got {self.amount!r}")
        iso = normalize_date(self.date)
        if iso is None:
            raise ValueError(f"expected date is not a valid calendar date: {self.date!r}")
        object.__setattr__(self, "date", iso)
        if self.time is not None:
            hhmm = normalize_time(self.time)
            if hhmm is None:
                raise ValueError(f"expected time is not a valid HH:MM time: {self.time!r}")
            object.__setattr__(self, "time", hhmm)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "date": self.date,
            "time": self.time,
            "acceptable_destinations": sorted(self.acceptable_destinations),
        }


@dataclass(frozen=True)
class FieldGuess:
    """
    One field as read by the vision collaborator.
    Absence of legibility is value=None, never a fabricated default.
    """
    value: Any = None
    confidence: float = 0.0
    reason: str = ""

    @property
    def present(self) -> bool:
        return self.value is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TamperSignal:
    """Tamper opinion reported separately by the vision collaborator."""
    suspected: bool = False
    score: float = 0.0
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"suspected": self.suspected, "score": self.score, "tags": list(self.tags)}


EXTRACTED_FIELDS = (
    "amount",
    "date",
    "time",
    "reference",
    "transaction_id",
    "channel",
    "to_name",
    "to_account",
    "from_account",
    "status_label",
    "qr_present",
)


@dataclass(frozen=True)
class ExtractedReceipt:
    """Normalized output of the vision-extraction collaborator."""
    amount: FieldGuess = field(default_factory=FieldGuess)
    date: FieldGuess = field(default_factory=FieldGuess)
    time: FieldGuess = field(default_factory=FieldGuess)
    reference: FieldGuess = field(default_factory=FieldGuess)
    transaction_id: FieldGuess = field(default_factory=FieldGuess)
    channel: FieldGuess = field(default_factory=FieldGuess)
    to_name: FieldGuess = field(default_factory=FieldGuess)
    to_account: FieldGuess = field(default_factory=FieldGuess)
    from_account: FieldGuess = field(default_factory=FieldGuess)
    status_label: FieldGuess = field(default_factory=FieldGuess)
    qr_present: FieldGuess = field(default_factory=FieldGuess)
    confidence: float = 0.0
    tamper_signal: TamperSignal = field(default_factory=TamperSignal)
    notes: List[str] = field(default_factory=list)

    @classmethod
    def unreadable(cls, note: str) -> "ExtractedReceipt":
        """Deterministic zero-confidence extraction used when the collaborator fails."""
        return cls(notes=[note])

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {name: getattr(self, name).to_dict() for name in EXTRACTED_FIELDS}
        d["confidence"] = self.confidence
        d["tamper_signal"] = self.tamper_signal.to_dict()
        d["notes"] = list(self.notes)
        return d


@dataclass(frozen=True)
class QrDecodeResult:
    """
    Outcome of the QR search.

    `present` and `decoded` are independent: a failed decode never
    implies the code is absent from the receipt.
    """
    present: bool = False
    decoded: bool = False
    payload: Optional[str] = None
    method: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ForensicReport:
    """Pixel-statistics tamper report. Advisory only."""
    recompression_delta: float = 0.0
    block_artifact: float = 0.0
    smooth_patch: float = 0.0
    edge_density: float = 0.0
    combined_score: float = 0.0
    tags: List[str] = field(default_factory=list)
    measurements: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "ForensicReport":
        return cls(tags=["forensic_error"], error=error)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["tags"] = list(self.tags)
        return d


@dataclass(frozen=True)
class Decision:
    """
    Final verdict returned by the engine.

    - status: verified | pending_review | rejected
    - confidence: always within [0, 1]
    - reasons: human-readable audit trail, never empty, length-capped
    - checks: machine-readable per-check evidence
    """
    status: str
    confidence: float
    reasons: List[str]
    extracted: ExtractedReceipt
    qr: QrDecodeResult
    forensic: ForensicReport
    checks: Dict[str, Any] = field(default_factory=dict)
    decision_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        if self.status not in DECISION_STATUSES:
            raise ValueError(f"Unknown decision status: {self.status!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable dict; optional fields are explicit None."""
        return {
            "decision_id": self.decision_id,
            "created_at": self.created_at,
            "status": self.status,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "extracted": self.extracted.to_dict(),
            "qr": self.qr.to_dict(),
            "forensic": self.forensic.to_dict(),
            "checks": dict(self.checks),
        }
