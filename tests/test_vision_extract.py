"""
Tests for vision-model output recovery and normalization.

The model output is untrusted: fenced, prose-wrapped, mistyped or missing.
Every path must end in an ExtractedReceipt, never an exception.

Running:
    python -m pytest tests/test_vision_extract.py -v
"""

import json
from types import SimpleNamespace

import pytest
import requests

from payproof.config.llm_config import VisionConfig, get_vision_extractor
from payproof.pipelines import vision_extract
from payproof.pipelines.vision_extract import (
    PARSE_FAILURE_NOTE,
    OllamaVisionExtractor,
    OpenAIVisionExtractor,
    StaticVisionExtractor,
    build_prompt,
    extraction_from_text,
    normalize_extraction,
    parse_json_response,
)
from payproof.schemas.receipt import ExpectedTransaction, ExtractedReceipt

EXPECTED = ExpectedTransaction(amount=45000, date="2024-03-05")

MODEL_OUTPUT = {
    "amount": {"value": "$ 45.000", "confidence": 0.93, "reason": "large bold total"},
    "date": {"value": "05/03/2024", "confidence": 0.9, "reason": ""},
    "time": {"value": "2:30 p. m.", "confidence": 0.8, "reason": ""},
    "reference": {"value": "M889122", "confidence": 0.7, "reason": ""},
    "toAccount": {"value": "313 820 0803", "confidence": 0.85, "reason": ""},
    "statusLabel": {"value": "Transacción exitosa", "confidence": 0.9, "reason": ""},
    "qrPresent": {"value": "yes", "confidence": 0.6, "reason": ""},
    "confidence": 0.88,
    "tamperSignal": {"suspected": False, "score": 0.1, "tags": []},
    "notes": ["slight blur"],
}


# =============================================================================
# 1. JSON recovery
# =============================================================================

class TestParseJsonResponse:

    def test_plain_json(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        text = '```json\n{"a": 1}\n```'
        assert parse_json_response(text) == {"a": 1}

    def test_prose_around_object(self):
        text = 'Sure! Here is the data:\n{"a": {"b": 2}}\nLet me know if you need more.'
        assert parse_json_response(text) == {"a": {"b": 2}}

    def test_braces_inside_strings(self):
        text = 'Result: {"note": "value with } brace", "n": 3} trailing'
        assert parse_json_response(text) == {"note": "value with } brace", "n": 3}

    def test_skips_unbalanced_prefix(self):
        text = 'oops { not json {"a": 1}'
        assert parse_json_response(text) == {"a": 1}

    @pytest.mark.parametrize("text", [None, "", "no json here", "[1, 2, 3]", "{broken"])
    def test_unrecoverable(self, text):
        assert parse_json_response(text) is None


# =============================================================================
# 2. Normalization
# =============================================================================

class TestNormalizeExtraction:

    def test_full_payload(self):
        r = normalize_extraction(MODEL_OUTPUT)
        assert r.amount.value == 45000
        assert r.amount.confidence == pytest.approx(0.93)
        assert r.date.value == "2024-03-05"
        assert r.time.value == "14:30"
        assert r.reference.value == "M889122"
        assert r.to_account.value == "3138200803"
        assert r.status_label.value == "Transacción exitosa"
        assert r.qr_present.value is True
        assert r.confidence == pytest.approx(0.88)
        assert r.notes == ["slight blur"]

    def test_snake_case_keys(self):
        r = normalize_extraction({"to_account": {"value": "3138200803", "confidence": 0.9}})
        assert r.to_account.value == "3138200803"

    def test_missing_fields_are_null(self):
        r = normalize_extraction({})
        assert r.amount.value is None
        assert r.amount.confidence == 0.0
        assert r.tamper_signal.score == 0.0
        assert r.notes == []

    def test_null_value_has_zero_confidence(self):
        r = normalize_extraction({"amount": {"value": None, "confidence": 0.9, "reason": "cropped"}})
        assert r.amount.value is None
        assert r.amount.confidence == 0.0
        assert r.amount.reason == "cropped"

    def test_bare_scalar(self):
        r = normalize_extraction({"amount": 45000, "date": "2024-03-05"})
        assert r.amount.value == 45000
        assert r.amount.confidence == vision_extract.BARE_VALUE_CONFIDENCE
        assert r.date.value == "2024-03-05"

    def test_confidence_clamped(self):
        r = normalize_extraction({
            "amount": {"value": 1, "confidence": 1.7},
            "date": {"value": "2024-03-05", "confidence": "very"},
            "confidence": -3,
        })
        assert r.amount.confidence == 1.0
        assert r.date.confidence == 0.0
        assert r.confidence == 0.0

    def test_unparseable_values_become_null(self):
        r = normalize_extraction({
            "amount": {"value": "illegible", "confidence": 0.4},
            "date": {"value": "yesterday", "confidence": 0.4},
            "toAccount": {"value": {"nested": 1}, "confidence": 0.4},
        })
        assert r.amount.value is None
        assert r.date.value is None
        assert r.to_account.value is None

    def test_tamper_tags_capped(self):
        r = normalize_extraction({"tamperSignal": {"suspected": "true", "score": 0.6, "tags": [f"t{i}" for i in range(20)]}})
        assert r.tamper_signal.suspected is True
        assert r.tamper_signal.score == pytest.approx(0.6)
        assert len(r.tamper_signal.tags) == vision_extract.MAX_TAMPER_TAGS

    def test_string_notes(self):
        assert normalize_extraction({"notes": "glare on total"}).notes == ["glare on total"]

    @pytest.mark.parametrize("raw", [None, [], "text", 42])
    def test_non_dict_is_unreadable(self, raw):
        r = normalize_extraction(raw)
        assert r.notes == [PARSE_FAILURE_NOTE]
        assert r.confidence == 0.0

    def test_extraction_from_garbage_text(self):
        r = extraction_from_text("I cannot read this image, sorry.")
        assert r == ExtractedReceipt.unreadable(PARSE_FAILURE_NOTE)


# =============================================================================
# 3. Providers
# =============================================================================

class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self._payload


class TestOllamaExtractor:

    def test_parses_fenced_response(self, monkeypatch):
        sent = {}

        def fake_post(url, json=None, timeout=None):
            sent["url"] = url
            sent["json"] = json
            return _FakeResponse({"response": "```json\n" + _dumps(MODEL_OUTPUT) + "\n```"})

        monkeypatch.setattr(vision_extract.requests, "post", fake_post)
        extractor = OllamaVisionExtractor("http://ollama:11434/", "qwen2.5vl:32b", timeout=5)
        r = extractor.extract(b"\x89PNGfake", "image/png", EXPECTED)

        assert r.amount.value == 45000
        assert sent["url"] == "http://ollama:11434/api/generate"
        assert sent["json"]["model"] == "qwen2.5vl:32b"
        assert sent["json"]["stream"] is False
        assert len(sent["json"]["images"]) == 1

    def test_connection_error_is_unreadable(self, monkeypatch):
        def fake_post(*args, **kwargs):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr(vision_extract.requests, "post", fake_post)
        r = OllamaVisionExtractor("http://nowhere:1", "m").extract(b"x", "image/png", EXPECTED)
        assert r.notes == ["vision model unavailable"]
        assert r.amount.value is None


class _FakeResponses:
    def __init__(self, output_text=None, error=None):
        self.output_text = output_text
        self.error = error
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return SimpleNamespace(output_text=self.output_text)


class TestOpenAIExtractor:

    def test_sends_data_url_and_parses(self):
        responses = _FakeResponses(output_text="Here you go: " + _dumps(MODEL_OUTPUT))
        extractor = OpenAIVisionExtractor(SimpleNamespace(responses=responses), "gpt-4o-mini")
        r = extractor.extract(b"\xff\xd8\xffjpeg", "image/jpeg", EXPECTED)

        assert r.date.value == "2024-03-05"
        assert responses.kwargs["model"] == "gpt-4o-mini"
        user_content = responses.kwargs["input"][1]["content"]
        image_part = [p for p in user_content if p["type"] == "input_image"][0]
        assert image_part["image_url"].startswith("data:image/jpeg;base64,")

    def test_api_error_is_unreadable(self):
        responses = _FakeResponses(error=RuntimeError("rate limited"))
        extractor = OpenAIVisionExtractor(SimpleNamespace(responses=responses), "gpt-4o-mini")
        r = extractor.extract(b"x", "image/png", EXPECTED)
        assert r.notes == ["vision model unavailable"]


class TestStaticExtractor:

    def test_default_is_unreadable(self):
        r = StaticVisionExtractor().extract(b"x", "image/png", EXPECTED)
        assert r.notes == ["vision extraction disabled"]

    def test_dict_payload(self):
        r = StaticVisionExtractor(MODEL_OUTPUT).extract(b"x", "image/png", EXPECTED)
        assert r.amount.value == 45000

    def test_text_payload(self):
        r = StaticVisionExtractor("```" + _dumps(MODEL_OUTPUT) + "```").extract(b"x", "image/png", EXPECTED)
        assert r.amount.value == 45000

    def test_receipt_payload_returned_as_is(self):
        fixed = ExtractedReceipt.unreadable("fixed")
        assert StaticVisionExtractor(fixed).extract(b"x", "image/png", EXPECTED) is fixed


class TestVisionConfig:

    def test_prompt_carries_expected_values(self):
        prompt = build_prompt(EXPECTED)
        assert "45000" in prompt
        assert "2024-03-05" in prompt

    def test_provider_none(self):
        extractor = get_vision_extractor(VisionConfig(provider="none"))
        assert isinstance(extractor, StaticVisionExtractor)

    def test_openai_without_key_degrades(self):
        extractor = get_vision_extractor(VisionConfig(provider="openai", openai_api_key=None))
        assert isinstance(extractor, StaticVisionExtractor)

    def test_openai_with_key(self):
        extractor = get_vision_extractor(VisionConfig(provider="openai", openai_api_key="sk-test-0123456789"))
        assert isinstance(extractor, OpenAIVisionExtractor)
        assert extractor.model == "gpt-4o-mini"

    def test_ollama(self):
        extractor = get_vision_extractor(VisionConfig(provider="ollama", ollama_model="llava"))
        assert isinstance(extractor, OllamaVisionExtractor)
        assert extractor.model == "llava"

    def test_unknown_provider_degrades(self):
        assert isinstance(get_vision_extractor(VisionConfig(provider="bard")), StaticVisionExtractor)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("VISION_PROVIDER", "OLLAMA")
        monkeypatch.setenv("OLLAMA_VISION_MODEL", "llava:13b")
        monkeypatch.setenv("VISION_TIMEOUT", "15")
        config = VisionConfig.from_env()
        assert config.provider == "ollama"
        assert config.model == "llava:13b"
        assert config.timeout == 15


def _dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False)
