# payproof/pipelines/verify.py
"""
Verification pipeline: image + expected transaction -> Decision.

Collaborators (vision extraction, QR search, pixel forensics) are
isolated: any failure inside them degrades to its default-safe result
and the engine still decides. Only a fault inside the engine itself
surfaces, as VerificationInternalError.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Callable, Optional

from payproof.errors import VerificationInternalError
from payproof.pipelines.decision import DecisionEngine
from payproof.pipelines.image_forensics import score_image
from payproof.pipelines.qr_decode import decode_qr
from payproof.pipelines.vision_extract import VisionExtractor
from payproof.schemas.receipt import (
    Decision,
    ExpectedTransaction,
    ExtractedReceipt,
    ForensicReport,
    QrDecodeResult,
)

logger = logging.getLogger(__name__)

QrDecoder = Callable[[bytes], QrDecodeResult]
ForensicScorer = Callable[..., ForensicReport]


def _safe_extract(extractor: VisionExtractor, image_bytes: bytes, mime: str, expected: ExpectedTransaction) -> ExtractedReceipt:
    try:
        return extractor.extract(image_bytes, mime, expected)
    except Exception as e:
        logger.warning("Vision extraction raised: %s", e)
        return ExtractedReceipt.unreadable(f"vision extraction failed: {str(e)[:80]}")


def _safe_qr(qr_decoder: QrDecoder, image_bytes: bytes) -> QrDecodeResult:
    try:
        return qr_decoder(image_bytes)
    except Exception as e:
        logger.warning("QR decoder raised: %s", e)
        return QrDecodeResult(error=f"qr_error: {str(e)[:80]}")


def _safe_forensics(scorer: ForensicScorer, image_bytes: bytes, engine: DecisionEngine) -> ForensicReport:
    try:
        return scorer(
            image_bytes,
            moderate_threshold=engine.config.tamper_moderate_threshold,
            high_threshold=engine.config.tamper_high_threshold,
        )
    except Exception as e:
        logger.warning("Forensic scorer raised: %s", e)
        return ForensicReport.failed(f"forensic_error: {str(e)[:80]}")


def verify_receipt(
    image_bytes: bytes,
    mime: str,
    expected: ExpectedTransaction,
    extractor: VisionExtractor,
    engine: DecisionEngine,
    qr_decoder: QrDecoder = decode_qr,
    forensic_scorer: ForensicScorer = score_image,
) -> Decision:
    """Run every collaborator, then the decision engine."""
    start = time.time()

    extracted = _safe_extract(extractor, image_bytes, mime, expected)
    qr = _safe_qr(qr_decoder, image_bytes)
    forensic = _safe_forensics(forensic_scorer, image_bytes, engine)

    try:
        decision = engine.decide(expected, extracted, qr, forensic)
    except Exception as e:
        logger.exception("Decision engine failed")
        raise VerificationInternalError(str(e)) from e

    logger.info(
        "Verified receipt in %.2fs: status=%s qr_decoded=%s tamper=%.3f",
        time.time() - start, decision.status, qr.decoded, forensic.combined_score,
    )
    return decision


def verify_receipt_with_deadline(
    image_bytes: bytes,
    mime: str,
    expected: ExpectedTransaction,
    extractor: VisionExtractor,
    engine: DecisionEngine,
    timeout_s: Optional[float],
    qr_decoder: QrDecoder = decode_qr,
    forensic_scorer: ForensicScorer = score_image,
) -> Decision:
    """
    verify_receipt bounded by a wall-clock deadline.

    On expiry the caller gets the engine's pending_review timeout decision;
    the worker thread is abandoned and its result discarded.
    """
    if timeout_s is None:
        return verify_receipt(image_bytes, mime, expected, extractor, engine, qr_decoder, forensic_scorer)

    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="payproof-verify")
    try:
        future = pool.submit(
            verify_receipt, image_bytes, mime, expected, extractor, engine, qr_decoder, forensic_scorer
        )
        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeoutError:
            logger.warning("Verification exceeded %.1fs deadline", timeout_s)
            return engine.timeout_decision(f"verification did not finish within {timeout_s:g}s.")
    finally:
        pool.shutdown(wait=False)
