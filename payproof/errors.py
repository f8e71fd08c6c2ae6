# payproof/errors.py
"""
Exception hierarchy for PayProof.

- AdmissionError: request rejected before the decision engine runs
  (bad expected values, disallowed MIME, image out of bounds).
- VerificationInternalError: unexpected fault while computing a decision.
  Surfaced as its own outcome; never mapped onto a business status.
"""


class PayProofError(Exception):
    """Base class for all PayProof errors."""


class AdmissionError(PayProofError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class VerificationInternalError(PayProofError):
    """Raised when the decision engine itself fails unexpectedly."""
