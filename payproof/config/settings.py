"""
Verification policy configuration.

Thresholds, policy flags and the destination allow-set are loaded once at
startup and passed explicitly into the DecisionEngine. The dataclass is
frozen so no request can mutate shared policy.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_destinations(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    out = set()
    for part in raw.split(","):
        digits = "".join(ch for ch in part if ch.isdigit())
        if digits:
            out.add(digits)
    return frozenset(out)


@dataclass(frozen=True)
class VerificationConfig:
    """Immutable verification policy."""

    # Destination allow-set (digit strings). Empty = destination check disabled.
    accepted_destinations: FrozenSet[str] = field(default_factory=frozenset)

    # Amount matching
    amount_tolerance_floor: int = 100
    amount_tolerance_pct: float = 0.01
    amount_shorthand_convention: bool = False

    # Policy flags for "verified"
    require_reference_for_verified: bool = False
    require_destination_for_verified: bool = True
    require_qr_decode_for_verified: bool = False

    # Tamper thresholds (0-1)
    tamper_moderate_threshold: float = 0.45
    tamper_high_threshold: float = 0.70

    # Verified confidence band
    verified_confidence_floor: float = 0.80
    verified_confidence_ceiling: float = 0.95
    verified_base_confidence: float = 0.86
    corroboration_bonus: float = 0.03
    tamper_penalty_weight: float = 0.10
    low_field_confidence: float = 0.50
    low_field_confidence_penalty: float = 0.04
    time_drift_penalty: float = 0.03
    failed_label_penalty: float = 0.06
    time_tolerance_minutes: int = 90

    # Terminal confidences
    reject_confidence: float = 0.90
    qr_required_confidence: float = 0.65
    pending_base_confidence: float = 0.60
    pending_confidence_min: float = 0.20
    pending_tamper_weight: float = 0.40

    max_reasons: int = 14

    @classmethod
    def from_env(cls) -> "VerificationConfig":
        """Load config from PAYPROOF_* environment variables."""
        d = cls()
        return cls(
            accepted_destinations=_env_destinations("PAYPROOF_ACCEPTED_DESTINATIONS"),
            amount_tolerance_floor=_env_int("PAYPROOF_AMOUNT_TOLERANCE_FLOOR", d.amount_tolerance_floor),
            amount_tolerance_pct=_env_float("PAYPROOF_AMOUNT_TOLERANCE_PCT", d.amount_tolerance_pct),
            amount_shorthand_convention=_env_bool("PAYPROOF_AMOUNT_SHORTHAND", d.amount_shorthand_convention),
            require_reference_for_verified=_env_bool("PAYPROOF_REQUIRE_REFERENCE", d.require_reference_for_verified),
            require_destination_for_verified=_env_bool("PAYPROOF_REQUIRE_DESTINATION", d.require_destination_for_verified),
            require_qr_decode_for_verified=_env_bool("PAYPROOF_REQUIRE_QR_DECODE", d.require_qr_decode_for_verified),
            tamper_moderate_threshold=_env_float("PAYPROOF_TAMPER_MODERATE", d.tamper_moderate_threshold),
            tamper_high_threshold=_env_float("PAYPROOF_TAMPER_HIGH", d.tamper_high_threshold),
            verified_confidence_floor=_env_float("PAYPROOF_VERIFIED_CONFIDENCE_FLOOR", d.verified_confidence_floor),
            verified_confidence_ceiling=_env_float("PAYPROOF_VERIFIED_CONFIDENCE_CEILING", d.verified_confidence_ceiling),
            max_reasons=_env_int("PAYPROOF_MAX_REASONS", d.max_reasons),
        )


@dataclass(frozen=True)
class AdmissionConfig:
    """Limits applied to uploaded images before verification."""

    min_image_bytes: int = 256
    max_image_bytes: int = 12 * 1024 * 1024
    min_image_side: int = 100
    max_image_pixels: int = 40_000_000
    verify_timeout_s: Optional[float] = 60.0

    @classmethod
    def from_env(cls) -> "AdmissionConfig":
        d = cls()
        timeout = _env_float("PAYPROOF_VERIFY_TIMEOUT_S", d.verify_timeout_s or 0.0)
        return cls(
            min_image_bytes=_env_int("PAYPROOF_MIN_IMAGE_BYTES", d.min_image_bytes),
            max_image_bytes=_env_int("PAYPROOF_MAX_IMAGE_BYTES", d.max_image_bytes),
            min_image_side=_env_int("PAYPROOF_MIN_IMAGE_SIDE", d.min_image_side),
            max_image_pixels=_env_int("PAYPROOF_MAX_IMAGE_PIXELS", d.max_image_pixels),
            verify_timeout_s=timeout if timeout > 0 else None,
        )
