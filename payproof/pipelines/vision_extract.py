# payproof/pipelines/vision_extract.py
"""
Vision LLM Structured Receipt Extraction.

Sends the receipt image (plus the expected values, for context) to a
vision-capable LLM and asks for a per-field best guess:
{value, confidence, reason}.

The model output is treated as UNTRUSTED:
- it may be wrapped in ``` fences or preceded by prose
- any field may be missing, mistyped or hallucinated
- the call itself may fail or time out

Everything is coerced into an ExtractedReceipt; on total failure a
deterministic zero-confidence extraction with an explanatory note is
returned instead. No retries happen here.
"""

import base64
import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import requests
from openai import OpenAI

from payproof.schemas.receipt import (
    EXTRACTED_FIELDS,
    ExpectedTransaction,
    ExtractedReceipt,
    FieldGuess,
    TamperSignal,
    clamp01,
)
from payproof.signals.amount_signals import parse_amount
from payproof.signals.date_signals import normalize_date, normalize_time
from payproof.signals.destination_signals import digits_only

logger = logging.getLogger(__name__)

PARSE_FAILURE_NOTE = "could not parse vision model output"

# Confidence given to a bare value the model returned without a {value, confidence} wrapper
BARE_VALUE_CONFIDENCE = 0.5

MAX_NOTES = 10
MAX_TAMPER_TAGS = 8
MAX_TEXT_LEN = 200

# camelCase keys the model (or older clients) may use
_KEY_ALIASES = {
    "transactionId": "transaction_id",
    "toName": "to_name",
    "toAccount": "to_account",
    "fromAccount": "from_account",
    "statusLabel": "status_label",
    "qrPresent": "qr_present",
    "tamperSignal": "tamper_signal",
}

EXTRACTION_PROMPT = """Look at this payment receipt (bank transfer / deposit / wallet payment) and extract what is VISIBLE.

For context, the payer claims:
- amount: {amount}
- date (YYYY-MM-DD): {date}
Do NOT copy these values. Report only what the image shows.

Return ONLY this JSON object, no other text:
{{
  "amount":         {{"value": "amount exactly as printed", "confidence": 0.0, "reason": ""}},
  "date":           {{"value": "YYYY-MM-DD or DD/MM/YYYY", "confidence": 0.0, "reason": ""}},
  "time":           {{"value": "HH:MM", "confidence": 0.0, "reason": ""}},
  "reference":      {{"value": "reference / receipt number", "confidence": 0.0, "reason": ""}},
  "transactionId":  {{"value": "transaction id", "confidence": 0.0, "reason": ""}},
  "channel":        {{"value": "bank or app name", "confidence": 0.0, "reason": ""}},
  "toName":         {{"value": "recipient name", "confidence": 0.0, "reason": ""}},
  "toAccount":      {{"value": "recipient account or phone, digits only", "confidence": 0.0, "reason": ""}},
  "fromAccount":    {{"value": "payer account or phone, digits only", "confidence": 0.0, "reason": ""}},
  "statusLabel":    {{"value": "status text, e.g. Exitosa / Aprobada", "confidence": 0.0, "reason": ""}},
  "qrPresent":      {{"value": true, "confidence": 0.0, "reason": ""}},
  "confidence": 0.0,
  "tamperSignal": {{"suspected": false, "score": 0.0, "tags": []}},
  "notes": []
}}

Rules:
- Use null as the value for any field that is NOT visible or not legible.
- Never invent a value; a low confidence with a short reason is better.
- confidence values are between 0 and 1."""


class VisionExtractor(Protocol):
    """Capability: read a receipt image into an ExtractedReceipt."""

    def extract(self, image_bytes: bytes, mime: str, expected: ExpectedTransaction) -> ExtractedReceipt:
        ...


def build_prompt(expected: ExpectedTransaction) -> str:
    return EXTRACTION_PROMPT.format(amount=expected.amount, date=expected.date)


# ---------------------------------------------------------------------------
# JSON recovery
# ---------------------------------------------------------------------------

def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    cleaned = cleaned.replace("```json", "```").replace("```JSON", "```")
    return cleaned.replace("```", "").strip()


def _first_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced {...} block, ignoring braces inside strings."""
    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_json_response(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Best-effort JSON object extraction from model output."""
    if not text:
        return None

    cleaned = _strip_fences(str(text))

    # Fast path
    try:
        obj = json.loads(cleaned)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass

    candidate = _first_balanced_object(cleaned)
    if candidate is None:
        return None
    try:
        obj = json.loads(candidate)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


# ---------------------------------------------------------------------------
# Defensive normalization
# ---------------------------------------------------------------------------

def _clean_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    s = str(value).strip()
    return s[:MAX_TEXT_LEN] if s else None


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "yes", "si", "sí", "1"):
            return True
        if v in ("false", "no", "0"):
            return False
    return None


def _coerce_value(name: str, value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return None
    if name == "amount":
        return parse_amount(value)
    if name == "date":
        return normalize_date(value)
    if name == "time":
        return normalize_time(value)
    if name in ("to_account", "from_account"):
        return digits_only(value) or None
    if name == "qr_present":
        return _coerce_bool(value)
    return _clean_text(value)


def _coerce_field(name: str, raw: Any) -> FieldGuess:
    """Accept {value, confidence, reason} or a bare scalar; anything else is illegible."""
    if isinstance(raw, dict):
        value = _coerce_value(name, raw.get("value"))
        reason = _clean_text(raw.get("reason")) or ""
        if value is None:
            return FieldGuess(value=None, confidence=0.0, reason=reason)
        return FieldGuess(value=value, confidence=clamp01(raw.get("confidence")), reason=reason)

    if raw is None or isinstance(raw, list):
        return FieldGuess()

    value = _coerce_value(name, raw)
    if value is None:
        return FieldGuess()
    return FieldGuess(value=value, confidence=BARE_VALUE_CONFIDENCE, reason="unqualified value")


def _coerce_tamper(raw: Any) -> TamperSignal:
    if not isinstance(raw, dict):
        return TamperSignal()
    tags = raw.get("tags")
    if not isinstance(tags, list):
        tags = []
    clean_tags = [t for t in (_clean_text(x) for x in tags) if t][:MAX_TAMPER_TAGS]
    return TamperSignal(
        suspected=_coerce_bool(raw.get("suspected")) is True,
        score=clamp01(raw.get("score")),
        tags=clean_tags,
    )


def _coerce_notes(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [n for n in (_clean_text(x) for x in raw) if n][:MAX_NOTES]


def normalize_extraction(raw: Any) -> ExtractedReceipt:
    """
    Coerce an arbitrary parsed payload into an ExtractedReceipt.

    Unknown shapes become the null/default form, never an exception.
    """
    if not isinstance(raw, dict):
        return ExtractedReceipt.unreadable(PARSE_FAILURE_NOTE)

    data = {_KEY_ALIASES.get(k, k): v for k, v in raw.items()}
    fields = {name: _coerce_field(name, data.get(name)) for name in EXTRACTED_FIELDS}

    return ExtractedReceipt(
        **fields,
        confidence=clamp01(data.get("confidence")),
        tamper_signal=_coerce_tamper(data.get("tamper_signal")),
        notes=_coerce_notes(data.get("notes")),
    )


def extraction_from_text(text: Optional[str]) -> ExtractedReceipt:
    """Model text -> ExtractedReceipt, falling back to the unreadable form."""
    parsed = parse_json_response(text)
    if parsed is None:
        logger.warning("Vision extraction: could not parse JSON from response: %s", (text or "")[:200])
        return ExtractedReceipt.unreadable(PARSE_FAILURE_NOTE)
    return normalize_extraction(parsed)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class OllamaVisionExtractor:
    """Local Ollama vision model via /api/generate."""

    def __init__(self, base_url: str, model: str, timeout: int = 120, temperature: float = 0.1):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    def _query(self, image_bytes: bytes, prompt: str) -> Optional[str]:
        try:
            resp = requests.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "images": [base64.b64encode(image_bytes).decode("utf-8")],
                    "stream": False,
                    "options": {"temperature": self.temperature},
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json().get("response", "")
        except requests.exceptions.ConnectionError:
            logger.warning("Vision extraction: Ollama not reachable at %s", self.base_url)
            return None
        except requests.exceptions.Timeout:
            logger.warning("Vision extraction: timeout after %ds (model=%s)", self.timeout, self.model)
            return None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning("Vision extraction failed: %s", e)
            return None

    def extract(self, image_bytes: bytes, mime: str, expected: ExpectedTransaction) -> ExtractedReceipt:
        start = time.time()
        text = self._query(image_bytes, build_prompt(expected))
        latency = time.time() - start
        if text is None:
            return ExtractedReceipt.unreadable("vision model unavailable")
        logger.info("Vision extraction (ollama, model=%s) answered in %.1fs", self.model, latency)
        return extraction_from_text(text)


class OpenAIVisionExtractor:
    """OpenAI Responses API with the image sent as a data URL."""

    def __init__(self, client: OpenAI, model: str):
        self.client = client
        self.model = model

    @classmethod
    def from_api_key(cls, api_key: str, model: str, timeout: int = 60) -> "OpenAIVisionExtractor":
        return cls(OpenAI(api_key=api_key, timeout=timeout), model)

    def extract(self, image_bytes: bytes, mime: str, expected: ExpectedTransaction) -> ExtractedReceipt:
        data_url = f"data:{mime};base64,{base64.b64encode(image_bytes).decode('utf-8')}"
        start = time.time()
        try:
            response = self.client.responses.create(
                model=self.model,
                input=[
                    {
                        "role": "system",
                        "content": "You read payment receipts. Respond ONLY with valid JSON, no markdown.",
                    },
                    {
                        "role": "user",
                        "content": [
                            {"type": "input_text", "text": build_prompt(expected)},
                            {"type": "input_image", "image_url": data_url},
                        ],
                    },
                ],
            )
        except Exception as e:
            logger.warning("Vision extraction (openai) failed: %s", e)
            return ExtractedReceipt.unreadable("vision model unavailable")

        logger.info("Vision extraction (openai, model=%s) answered in %.1fs", self.model, time.time() - start)
        return extraction_from_text(getattr(response, "output_text", "") or "")


class StaticVisionExtractor:
    """
    Returns a fixed payload for every image.

    Used for offline runs (provider "none") and deterministic tests.
    """

    def __init__(self, payload: Any = None, note: str = "vision extraction disabled"):
        self.payload = payload
        self.note = note

    def extract(self, image_bytes: bytes, mime: str, expected: ExpectedTransaction) -> ExtractedReceipt:
        if self.payload is None:
            return ExtractedReceipt.unreadable(self.note)
        if isinstance(self.payload, ExtractedReceipt):
            return self.payload
        if isinstance(self.payload, str):
            return extraction_from_text(self.payload)
        return normalize_extraction(self.payload)
