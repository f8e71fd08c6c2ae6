"""
End-to-end pipeline tests with injected collaborators.

Collaborator failures must degrade, never propagate; only an engine
fault surfaces, as VerificationInternalError.

Running:
    python -m pytest tests/test_verify_pipeline.py -v
"""

import io
import threading

import pytest
from PIL import Image

from payproof.config.settings import VerificationConfig
from payproof.errors import VerificationInternalError
from payproof.pipelines.decision import DecisionEngine
from payproof.pipelines.verify import verify_receipt, verify_receipt_with_deadline
from payproof.pipelines.vision_extract import StaticVisionExtractor
from payproof.schemas.receipt import ExpectedTransaction, ForensicReport, QrDecodeResult

ACCOUNT = "3138200803"
EXPECTED = ExpectedTransaction(amount=45000, date="2024-03-05")
ENGINE = DecisionEngine(VerificationConfig(accepted_destinations=frozenset({ACCOUNT})))

GOOD_READ = {
    "amount": {"value": "45.000", "confidence": 0.95},
    "date": {"value": "05/03/2024", "confidence": 0.9},
    "reference": {"value": "M889122", "confidence": 0.8},
    "toAccount": {"value": ACCOUNT, "confidence": 0.9},
}


def _image_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (400, 600), color=(250, 250, 250)).save(buf, format="PNG")
    return buf.getvalue()


def _no_qr(image_bytes):
    return QrDecodeResult(error="not_decoded", attempts=96)


def _clean_forensics(image_bytes, moderate_threshold=0.45, high_threshold=0.70):
    return ForensicReport()


def _verify(extractor, qr_decoder=_no_qr, forensic_scorer=_clean_forensics, engine=ENGINE):
    return verify_receipt(_image_bytes(), "image/png", EXPECTED, extractor, engine, qr_decoder, forensic_scorer)


class _RaisingExtractor:
    def extract(self, image_bytes, mime, expected):
        raise RuntimeError("socket closed")


class _BrokenEngine(DecisionEngine):
    def decide(self, expected, extracted, qr, forensic):
        raise KeyError("boom")


class TestVerifyReceipt:

    def test_verified_end_to_end(self):
        d = _verify(StaticVisionExtractor(GOOD_READ))
        assert d.status == "verified"
        assert d.extracted.amount.value == 45000

    def test_extractor_exception_degrades(self):
        d = _verify(_RaisingExtractor())
        assert d.status == "pending_review"
        assert any("vision extraction failed" in n for n in d.extracted.notes)

    def test_qr_exception_degrades(self):
        def broken_qr(image_bytes):
            raise MemoryError("too big")

        d = _verify(StaticVisionExtractor(GOOD_READ), qr_decoder=broken_qr)
        assert d.status == "verified"
        assert d.qr.decoded is False
        assert d.qr.error.startswith("qr_error")

    def test_forensic_exception_degrades(self):
        def broken_forensics(image_bytes, **kwargs):
            raise ValueError("bad array")

        d = _verify(StaticVisionExtractor(GOOD_READ), forensic_scorer=broken_forensics)
        assert d.status == "verified"
        assert d.forensic.tags == ["forensic_error"]

    def test_forensics_receives_engine_thresholds(self):
        seen = {}

        def recording(image_bytes, moderate_threshold, high_threshold):
            seen.update(moderate=moderate_threshold, high=high_threshold)
            return ForensicReport()

        engine = DecisionEngine(VerificationConfig(tamper_moderate_threshold=0.3, tamper_high_threshold=0.6))
        _verify(StaticVisionExtractor(GOOD_READ), forensic_scorer=recording, engine=engine)
        assert seen == {"moderate": 0.3, "high": 0.6}

    def test_forensic_tamper_demotes(self):
        def suspicious(image_bytes, **kwargs):
            return ForensicReport(combined_score=0.75, tags=["tamper_likely"])

        d = _verify(StaticVisionExtractor(GOOD_READ), forensic_scorer=suspicious)
        assert d.status == "pending_review"

    def test_engine_fault_is_internal_error(self):
        with pytest.raises(VerificationInternalError):
            _verify(StaticVisionExtractor(GOOD_READ), engine=_BrokenEngine())

    def test_real_collaborators_on_blank_image(self):
        d = verify_receipt(_image_bytes(), "image/png", EXPECTED, StaticVisionExtractor(GOOD_READ), ENGINE)
        assert d.status in ("verified", "pending_review")
        assert d.qr.decoded is False


class TestDeadline:

    def test_no_deadline(self):
        d = verify_receipt_with_deadline(
            _image_bytes(), "image/png", EXPECTED, StaticVisionExtractor(GOOD_READ), ENGINE, None,
            _no_qr, _clean_forensics,
        )
        assert d.status == "verified"

    def test_within_deadline(self):
        d = verify_receipt_with_deadline(
            _image_bytes(), "image/png", EXPECTED, StaticVisionExtractor(GOOD_READ), ENGINE, 10.0,
            _no_qr, _clean_forensics,
        )
        assert d.status == "verified"

    def test_deadline_expiry_is_pending_review(self):
        release = threading.Event()

        class SlowExtractor:
            def extract(self, image_bytes, mime, expected):
                release.wait(5)
                return StaticVisionExtractor(GOOD_READ).extract(image_bytes, mime, expected)

        try:
            d = verify_receipt_with_deadline(
                _image_bytes(), "image/png", EXPECTED, SlowExtractor(), ENGINE, 0.05,
                _no_qr, _clean_forensics,
            )
        finally:
            release.set()
        assert d.status == "pending_review"
        assert d.checks["rule"] == "timeout"

    def test_engine_fault_propagates_through_deadline(self):
        with pytest.raises(VerificationInternalError):
            verify_receipt_with_deadline(
                _image_bytes(), "image/png", EXPECTED, StaticVisionExtractor(GOOD_READ), _BrokenEngine(), 10.0,
                _no_qr, _clean_forensics,
            )
