# payproof/pipelines/decision.py
"""
Decision engine: fuses amount/date/destination reconciliation, the QR
result and the tamper score into one of verified | pending_review | rejected.

Rule order (first match is terminal):
1. amount read and mismatched at every scale        -> rejected
2. date read and different                          -> rejected
3. legible destination outside the allow-set        -> rejected
4. QR present but undecodable, QR required          -> pending_review
5. everything corroborates, tamper below moderate   -> verified
6. otherwise                                        -> pending_review

Every check appends its reason regardless of which rule is terminal, so
the reason list is a complete audit trail. Tamper evidence is advisory:
it can keep a receipt out of "verified" but never rejects it.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from payproof.config.settings import VerificationConfig
from payproof.schemas.receipt import (
    Decision,
    ExpectedTransaction,
    ExtractedReceipt,
    ForensicReport,
    QrDecodeResult,
    clamp01,
)
from payproof.signals.amount_signals import compare_amounts, format_amount
from payproof.signals.date_signals import minutes_between, normalize_date
from payproof.signals.destination_signals import (
    destination_matches,
    digits_only,
    qr_destination_status,
)

logger = logging.getLogger(__name__)

ENGINE_VERSION = "decision-v0.1.0"

# Shorter reads are too ambiguous to count as a legible destination
MIN_LEGIBLE_DESTINATION_DIGITS = 4

SUCCESS_LABEL_RE = re.compile(
    r"\b(?:exitos\w*|aprobad\w*|realizad\w*|pagad\w*|enviad\w*|complet\w*|"
    r"approved|success\w*|paid|sent)\b"
)
FAILED_LABEL_RE = re.compile(
    r"\b(?:rechaz\w*|fallid\w*|declin\w*|cancel\w*|revers\w*|pendiente|en proceso|"
    r"failed|error(?:es|s)?|pending|processing)\b"
)
# "sin errores" / "without errors" describe a clean payment
NEGATED_ERROR_RE = re.compile(r"\b(?:sin|without|no)\s+error(?:es|s)?\b")
# "No" followed by a number is a receipt number marker ("Comprobante No. 889122")
NEGATION_RE = re.compile(r"\bno\b(?!\.?\s*[#:°º]?\s*\d)")

REJECT_CONFIDENCE_FIELD_ONLY = 0.88
REJECT_CONFIDENCE_QR_ONLY = 0.90
REJECT_CONFIDENCE_BOTH = 0.92


def classify_status_label(label: Optional[str]) -> Optional[str]:
    """'success', 'failed', 'unknown', or None when no label was read."""
    if not label:
        return None
    text = NEGATED_ERROR_RE.sub(" ", label.lower())
    # Failure wins: "Pago no exitoso" contains a success hint too
    if FAILED_LABEL_RE.search(text) or NEGATION_RE.search(text):
        return "failed"
    if SUCCESS_LABEL_RE.search(text):
        return "success"
    return "unknown"


class DecisionEngine:
    """Stateless rule engine; one instance can serve every request."""

    def __init__(self, config: Optional[VerificationConfig] = None):
        self.config = config or VerificationConfig()

    # ------------------------------------------------------------------
    # Individual checks. Each appends reasons and returns evidence.
    # ------------------------------------------------------------------

    def _check_amount(self, expected: ExpectedTransaction, extracted: ExtractedReceipt, reasons: List[str]) -> Dict[str, Any]:
        cfg = self.config
        guess = extracted.amount
        cmp = compare_amounts(guess.value, expected.amount, cfg.amount_tolerance_floor, cfg.amount_tolerance_pct)

        if cmp["read"] is None:
            status = "unresolved"
            reasons.append("Amount is not legible on the receipt.")
        elif cmp["ok"]:
            status = "match"
            if cmp["best_scale"] > 1:
                reasons.append(
                    f"Amount matches: read {format_amount(cmp['read'])}, interpreted as "
                    f"{format_amount(cmp['best_reading'])} (x{cmp['best_scale']}); "
                    f"expected {format_amount(cmp['expected'])}."
                )
            else:
                reasons.append(
                    f"Amount matches: {format_amount(cmp['read'])} vs expected {format_amount(cmp['expected'])}."
                )
        else:
            status = "mismatch"
            reasons.append(
                f"Amount does not match: read {format_amount(cmp['read'])}, "
                f"expected {format_amount(cmp['expected'])} (tolerance {format_amount(cmp['tolerance'])})."
            )

        low_confidence = cmp["read"] is not None and guess.confidence < cfg.low_field_confidence
        if low_confidence:
            reasons.append(f"Amount was read with low confidence ({guess.confidence:.2f}).")

        out = dict(cmp)
        out.update(status=status, read_confidence=guess.confidence, low_confidence=low_confidence)
        return out

    def _check_date(self, expected: ExpectedTransaction, extracted: ExtractedReceipt, reasons: List[str]) -> Dict[str, Any]:
        cfg = self.config
        guess = extracted.date
        want = normalize_date(expected.date)
        got = normalize_date(guess.value)

        if got is None:
            status = "unresolved"
            reasons.append("Date is not legible on the receipt.")
        elif got == want:
            status = "match"
            reasons.append(f"Date matches: {got}.")
        else:
            status = "mismatch"
            reasons.append(f"Date does not match: read {got}, expected {want}.")

        low_confidence = got is not None and guess.confidence < cfg.low_field_confidence
        if low_confidence:
            reasons.append(f"Date was read with low confidence ({guess.confidence:.2f}).")

        return {
            "status": status,
            "expected": want,
            "read": got,
            "read_confidence": guess.confidence,
            "low_confidence": low_confidence,
        }

    def _check_time(self, expected: ExpectedTransaction, extracted: ExtractedReceipt, reasons: List[str]) -> Dict[str, Any]:
        minutes = minutes_between(expected.time, extracted.time.value) if expected.time else None
        drift = minutes is not None and minutes > self.config.time_tolerance_minutes
        if drift:
            reasons.append(f"Time differs from expected by {minutes} minutes (soft signal).")
        return {
            "expected": expected.time,
            "read": extracted.time.value,
            "minutes_apart": minutes,
            "drift": drift,
        }

    def _check_destination(
        self,
        expected: ExpectedTransaction,
        extracted: ExtractedReceipt,
        qr: QrDecodeResult,
        reasons: List[str],
    ) -> Dict[str, Any]:
        accepted = expected.acceptable_destinations or self.config.accepted_destinations
        if not accepted:
            reasons.append("No destination allow-set configured; destination not checked.")
            return {"status": "disabled", "field": "absent", "qr": "absent", "read": None}

        read = digits_only(extracted.to_account.value)
        if len(read) >= MIN_LEGIBLE_DESTINATION_DIGITS:
            field_status = "confirmed" if destination_matches(read, accepted) else "contradicted"
        else:
            field_status = "absent"

        qr_status = qr_destination_status(qr.payload, accepted) if qr.decoded else "absent"

        if field_status == "confirmed":
            reasons.append(f"Destination account {read} is in the accepted list.")
        elif field_status == "contradicted":
            reasons.append(f"Destination account {read} is not one of the accepted destinations.")
        else:
            reasons.append("Destination account is not legible on the receipt.")

        if qr_status == "confirmed":
            reasons.append("QR payload contains an accepted destination.")
        elif qr_status == "contradicted":
            reasons.append("QR payload does not contain any accepted destination.")

        statuses = (field_status, qr_status)
        if "contradicted" in statuses:
            status = "contradicted"
        elif "confirmed" in statuses:
            status = "confirmed"
        else:
            status = "unconfirmed"

        return {"status": status, "field": field_status, "qr": qr_status, "read": read or None}

    def _check_qr(self, extracted: ExtractedReceipt, qr: QrDecodeResult, reasons: List[str]) -> Dict[str, Any]:
        present = qr.present or extracted.qr_present.value is True
        if qr.decoded:
            reasons.append(f"QR code decoded ({qr.method}).")
        elif present:
            reasons.append("A QR code appears on the receipt but could not be decoded.")
        elif self.config.require_qr_decode_for_verified:
            reasons.append("No QR code could be decoded from the image.")
        return {"present": present, "decoded": qr.decoded, "method": qr.method, "error": qr.error}

    def _check_reference(self, extracted: ExtractedReceipt, reasons: List[str]) -> Dict[str, Any]:
        ref = extracted.reference.value or extracted.transaction_id.value
        present = bool(ref)
        if present:
            reasons.append(f"Reference present: {ref}.")
        elif self.config.require_reference_for_verified:
            reasons.append("Reference number is not legible and is required for verification.")
        return {"present": present, "value": ref}

    def _check_status_label(self, extracted: ExtractedReceipt, reasons: List[str]) -> Dict[str, Any]:
        label = extracted.status_label.value
        kind = classify_status_label(label)
        if kind == "failed":
            reasons.append(f"Receipt status reads '{label}', which may not be a completed payment (soft signal).")
        return {"label": label, "kind": kind}

    def _check_tamper(self, extracted: ExtractedReceipt, forensic: ForensicReport, reasons: List[str]) -> Dict[str, Any]:
        cfg = self.config
        reported = extracted.tamper_signal.score
        pixel = forensic.combined_score
        score = max(reported, pixel)

        if score >= cfg.tamper_high_threshold:
            reasons.append(f"Strong signs of image editing (tamper score {score:.2f}).")
        elif score >= cfg.tamper_moderate_threshold:
            reasons.append(f"Possible image editing (tamper score {score:.2f}); manual review advised.")
        if forensic.error:
            reasons.append("Pixel forensic analysis was unavailable for this image.")

        return {
            "score": round(score, 4),
            "reported": reported,
            "pixel": pixel,
            "elevated": score >= cfg.tamper_moderate_threshold,
            "high": score >= cfg.tamper_high_threshold,
            "tags": list(forensic.tags) + list(extracted.tamper_signal.tags),
        }

    # ------------------------------------------------------------------
    # Confidence
    # ------------------------------------------------------------------

    def _verified_confidence(self, checks: Dict[str, Any]) -> float:
        cfg = self.config
        corroborations = sum(
            (
                checks["reference"]["present"],
                checks["destination"]["status"] == "confirmed",
                checks["status_label"]["kind"] == "success",
            )
        )
        conf = cfg.verified_base_confidence + cfg.corroboration_bonus * corroborations
        conf -= cfg.tamper_penalty_weight * checks["tamper"]["score"]
        low_reads = int(checks["amount"]["low_confidence"]) + int(checks["date"]["low_confidence"])
        conf -= cfg.low_field_confidence_penalty * low_reads
        if checks["status_label"]["kind"] == "failed":
            conf -= cfg.failed_label_penalty
        if checks["time"]["drift"]:
            conf -= cfg.time_drift_penalty
        return max(cfg.verified_confidence_floor, min(cfg.verified_confidence_ceiling, conf))

    def _pending_confidence(self, tamper: float) -> float:
        cfg = self.config
        conf = cfg.pending_base_confidence - cfg.pending_tamper_weight * tamper
        return max(cfg.pending_confidence_min, min(cfg.pending_base_confidence, conf))

    def _verified_blockers(self, checks: Dict[str, Any]) -> List[str]:
        """What stands between these checks and a 'verified' verdict."""
        cfg = self.config
        blockers = []
        if checks["amount"]["status"] != "match":
            blockers.append("amount not confirmed")
        if checks["date"]["status"] != "match":
            blockers.append("date not confirmed")
        dest = checks["destination"]["status"]
        if dest == "unconfirmed" and cfg.require_destination_for_verified:
            blockers.append("destination not confirmed")
        if cfg.require_reference_for_verified and not checks["reference"]["present"]:
            blockers.append("reference missing")
        if cfg.require_qr_decode_for_verified and not checks["qr"]["decoded"]:
            blockers.append("QR not decoded")
        if checks["tamper"]["elevated"]:
            blockers.append("tamper score elevated")
        return blockers

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def decide(
        self,
        expected: ExpectedTransaction,
        extracted: ExtractedReceipt,
        qr: QrDecodeResult,
        forensic: ForensicReport,
    ) -> Decision:
        cfg = self.config
        details: List[str] = []

        checks: Dict[str, Any] = {
            "amount": self._check_amount(expected, extracted, details),
            "date": self._check_date(expected, extracted, details),
            "time": self._check_time(expected, extracted, details),
            "destination": self._check_destination(expected, extracted, qr, details),
            "qr": self._check_qr(extracted, qr, details),
            "reference": self._check_reference(extracted, details),
            "status_label": self._check_status_label(extracted, details),
            "tamper": self._check_tamper(extracted, forensic, details),
        }
        for note in extracted.notes[:2]:
            details.append(f"Extraction note: {note}")

        tamper = checks["tamper"]["score"]
        dest = checks["destination"]

        if checks["amount"]["status"] == "mismatch":
            rule, status, confidence = "amount_mismatch", "rejected", cfg.reject_confidence
            summary = "Rejected: the amount on the receipt does not match the expected amount."
        elif checks["date"]["status"] == "mismatch":
            rule, status, confidence = "date_mismatch", "rejected", cfg.reject_confidence
            summary = "Rejected: the date on the receipt does not match the expected date."
        elif dest["status"] == "contradicted":
            rule, status = "destination_mismatch", "rejected"
            if dest["field"] == "contradicted" and dest["qr"] == "contradicted":
                confidence = REJECT_CONFIDENCE_BOTH
            elif dest["qr"] == "contradicted":
                confidence = REJECT_CONFIDENCE_QR_ONLY
            else:
                confidence = REJECT_CONFIDENCE_FIELD_ONLY
            summary = "Rejected: the payment went to a destination that is not accepted."
        elif cfg.require_qr_decode_for_verified and checks["qr"]["present"] and not checks["qr"]["decoded"]:
            rule, status, confidence = "qr_undecodable", "pending_review", cfg.qr_required_confidence
            summary = "Pending review: the QR code could not be decoded and QR confirmation is required."
        else:
            blockers = self._verified_blockers(checks)
            if not blockers:
                rule, status = "verified", "verified"
                confidence = self._verified_confidence(checks)
                summary = "Verified: amount, date and destination corroborate the expected payment."
            else:
                rule, status = "needs_review", "pending_review"
                confidence = self._pending_confidence(tamper)
                summary = "Pending review: " + ", ".join(blockers) + "."

        checks["rule"] = rule
        checks["engine_version"] = ENGINE_VERSION

        reasons = ([summary] + details)[: max(1, cfg.max_reasons)]

        decision = Decision(
            status=status,
            confidence=round(clamp01(confidence), 4),
            reasons=reasons,
            extracted=extracted,
            qr=qr,
            forensic=forensic,
            checks=checks,
        )
        logger.info(
            "Decision %s: status=%s confidence=%.2f rule=%s",
            decision.decision_id, status, decision.confidence, rule,
        )
        return decision

    def timeout_decision(self, reason: str = "Verification did not finish in time.") -> Decision:
        """Fail-safe verdict used when an external deadline expires."""
        return Decision(
            status="pending_review",
            confidence=round(clamp01(self.config.pending_confidence_min), 4),
            reasons=["Pending review: " + reason],
            extracted=ExtractedReceipt.unreadable("not evaluated: deadline exceeded"),
            qr=QrDecodeResult(error="timeout"),
            forensic=ForensicReport(error="timeout"),
            checks={"rule": "timeout", "engine_version": ENGINE_VERSION},
        )
