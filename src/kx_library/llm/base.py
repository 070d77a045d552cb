"""
LLM client base classes.

The cluster summarizer only needs "prompt in, JSON out"; providers implement
_generate_once() and inherit retries and JSON parsing from BaseLLMClient.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 30.0


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    GEMINI = "gemini"
    CLAUDE = "claude"


@dataclass
class GenerationConfig:
    """Model-agnostic generation configuration."""
    temperature: float = 0.3
    max_output_tokens: int = 2048
    top_p: float = 0.95
    top_k: int = 40

    # Provider-specific overrides (optional)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Unified response from any LLM provider."""
    text: str
    model: str
    provider: LLMProvider
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    finish_reason: Optional[str] = None


class BaseLLMClient(ABC):
    """
    Abstract base class for LLM clients.

    Clients are initialized lazily on first use so constructing one never
    touches the network.
    """

    # Lower-cased substrings that mark an error as transient
    retriable_markers: Tuple[str, ...] = ('rate', 'quota', '429', '500', '503', 'timeout')

    def __init__(self, model_id: str, project_id: str, region: str):
        self.model_id = model_id
        self.project_id = project_id
        self.region = region
        self._initialized = False

    @property
    @abstractmethod
    def provider(self) -> LLMProvider:
        """Return the provider type."""

    @abstractmethod
    def _initialize(self) -> None:
        """Create the underlying SDK client."""

    @abstractmethod
    def _generate_once(
        self,
        prompt: str,
        config: GenerationConfig,
        system_prompt: Optional[str]
    ) -> LLMResponse:
        """Single generation attempt; raise on failure."""

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self._initialize()
            self._initialized = True

    def generate(
        self,
        prompt: str,
        config: Optional[GenerationConfig] = None,
        system_prompt: Optional[str] = None
    ) -> LLMResponse:
        """
        Generate text, retrying transient errors with exponential backoff.

        Args:
            prompt: User prompt
            config: Generation configuration (uses defaults if None)
            system_prompt: Optional system prompt / instruction

        Returns:
            LLMResponse with generated text and metadata
        """
        self._ensure_initialized()
        config = config or GenerationConfig()
        backoff = INITIAL_BACKOFF

        for attempt in range(MAX_RETRIES):
            try:
                return self._generate_once(prompt, config, system_prompt)
            except Exception as e:
                error_msg = str(e).lower()
                is_retriable = any(marker in error_msg for marker in self.retriable_markers)
                if not is_retriable or attempt == MAX_RETRIES - 1:
                    logger.error(f"{self.provider.value} generation failed after {attempt + 1} attempts: {e}")
                    raise
                logger.warning(
                    f"Retriable error (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                    f"Retrying after {backoff}s"
                )
                time.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)

        raise RuntimeError("unreachable: retry loop exited without result")

    def generate_json(
        self,
        prompt: str,
        config: Optional[GenerationConfig] = None,
        system_prompt: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Generate and parse a JSON object, stripping markdown code fences.

        Raises:
            ValueError: If the response is not a JSON object
        """
        text = self.generate(prompt, config, system_prompt).text.strip()

        if text.startswith('```'):
            text = text.split('\n', 1)[1] if '\n' in text else text[3:]
            if text.endswith('```'):
                text = text.rsplit('```', 1)[0]
            if text.startswith('json\n'):
                text = text[5:]
            text = text.strip()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON response from {self.provider.value}: {text[:200]}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object from {self.provider.value}, got {type(data).__name__}")
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model_id}, region={self.region})"
