"""
LLM model registry.

Model selection via the LLM_MODEL / LLM_PROVIDER environment variables.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from .base import LLMProvider

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_CLAUDE_MODEL = "claude-haiku-4-5"


@dataclass
class ModelInfo:
    """Information about a specific model."""
    model_id: str
    provider: LLMProvider
    description: str
    max_output: int


MODEL_REGISTRY: Dict[str, ModelInfo] = {
    "gemini-2.5-flash": ModelInfo(
        model_id="gemini-2.5-flash",
        provider=LLMProvider.GEMINI,
        description="Gemini 2.5 Flash - cluster summaries at low cost",
        max_output=8192
    ),
    "gemini-2.5-pro": ModelInfo(
        model_id="gemini-2.5-pro",
        provider=LLMProvider.GEMINI,
        description="Gemini 2.5 Pro - higher quality parent summaries",
        max_output=8192
    ),
    "claude-haiku-4-5": ModelInfo(
        model_id="claude-haiku-4-5@20251001",
        provider=LLMProvider.CLAUDE,
        description="Claude Haiku 4.5 - fast, cost-effective",
        max_output=8192
    ),
    "claude-sonnet-4-5": ModelInfo(
        model_id="claude-sonnet-4-5@20250929",
        provider=LLMProvider.CLAUDE,
        description="Claude Sonnet 4.5 - balanced",
        max_output=8192
    ),
}

MODEL_ALIASES: Dict[str, str] = {
    "gemini": "gemini-2.5-flash",
    "gemini-flash": "gemini-2.5-flash",
    "gemini-pro": "gemini-2.5-pro",
    "claude": "claude-haiku-4-5",
    "claude-haiku": "claude-haiku-4-5",
    "haiku": "claude-haiku-4-5",
    "claude-sonnet": "claude-sonnet-4-5",
    "sonnet": "claude-sonnet-4-5",
}


def resolve_model_name(name: str) -> str:
    """Resolve model name from alias or return as-is."""
    return MODEL_ALIASES.get(name.lower(), name)


def get_model_info(name: str) -> Optional[ModelInfo]:
    """Get model info by name or alias, None if unknown."""
    return MODEL_REGISTRY.get(resolve_model_name(name))


def get_default_model() -> str:
    """
    Get default model from environment or fallback.

    Environment variables:
        LLM_MODEL: Primary model selection
        LLM_PROVIDER: Provider preference (gemini/claude)
    """
    model = os.environ.get('LLM_MODEL')
    if model:
        resolved = resolve_model_name(model)
        if resolved in MODEL_REGISTRY:
            logger.info(f"Using model from LLM_MODEL: {resolved}")
            return resolved
        logger.warning(f"Unknown model '{model}', falling back to default")

    if os.environ.get('LLM_PROVIDER', '').lower() == 'claude':
        logger.info("Using Claude (from LLM_PROVIDER)")
        return DEFAULT_CLAUDE_MODEL

    logger.info(f"Using default model: {DEFAULT_GEMINI_MODEL}")
    return DEFAULT_GEMINI_MODEL
