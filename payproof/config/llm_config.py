"""
Vision LLM configuration for receipt field extraction.

Supports:
- Ollama (local models)
- OpenAI (cloud API)
- none (extraction disabled; every receipt goes to manual review)
"""

import logging
import os
from dataclasses import dataclass
from typing import Literal, Optional

from payproof.pipelines.vision_extract import (
    OllamaVisionExtractor,
    OpenAIVisionExtractor,
    StaticVisionExtractor,
    VisionExtractor,
)

logger = logging.getLogger(__name__)


@dataclass
class VisionConfig:
    """Configuration for the vision-extraction collaborator."""

    provider: Literal["ollama", "openai", "none"] = "openai"

    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "qwen2.5vl:32b"

    # OpenAI settings
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Common settings
    temperature: float = 0.1
    timeout: int = 60

    @property
    def model(self) -> Optional[str]:
        if self.provider == "ollama":
            return self.ollama_model
        if self.provider == "openai":
            return self.openai_model
        return None

    @classmethod
    def from_env(cls) -> "VisionConfig":
        """Load config from environment variables."""
        provider = os.getenv("VISION_PROVIDER", "openai").lower()

        return cls(
            provider=provider,
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_VISION_MODEL", "qwen2.5vl:32b"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("AI_MODEL", "gpt-4o-mini"),
            temperature=float(os.getenv("VISION_TEMPERATURE", "0.1")),
            timeout=int(os.getenv("VISION_TIMEOUT", "60")),
        )


def get_vision_extractor(config: Optional[VisionConfig] = None) -> VisionExtractor:
    """
    Build the vision extractor for a configuration.

    Misconfiguration never raises: the service still answers, and the
    engine routes every receipt to manual review.
    """
    if config is None:
        config = VisionConfig.from_env()

    if config.provider == "ollama":
        return OllamaVisionExtractor(
            base_url=config.ollama_base_url,
            model=config.ollama_model,
            timeout=config.timeout,
            temperature=config.temperature,
        )

    if config.provider == "openai":
        key = (config.openai_api_key or "").strip()
        if len(key) < 10:
            logger.warning("OPENAI_API_KEY not set; vision extraction disabled")
            return StaticVisionExtractor(note="vision extraction not configured")
        return OpenAIVisionExtractor.from_api_key(key, config.openai_model, timeout=config.timeout)

    if config.provider != "none":
        logger.warning("Unknown VISION_PROVIDER %r; vision extraction disabled", config.provider)
    return StaticVisionExtractor()
