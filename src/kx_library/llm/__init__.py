"""
LLM clients used for cluster summaries.

Usage:
    from kx_library.llm import get_client
    client = get_client()              # LLM_MODEL / LLM_PROVIDER or gemini-2.5-flash
    client = get_client("haiku")       # alias
    data = client.generate_json("Return JSON with keys: summary, keyTopics")

Environment Variables:
    LLM_MODEL: Default model to use
    LLM_PROVIDER: Provider preference ("gemini" or "claude")
    GCP_PROJECT / GCP_REGION: Vertex AI project and region for Gemini
    CLAUDE_REGION: Vertex AI region for Claude (default: europe-west1)
"""

import logging
import os
from typing import Dict, Optional

from ..config import get_gcp_config
from .base import BaseLLMClient, GenerationConfig, LLMProvider, LLMResponse
from .config import (
    MODEL_ALIASES,
    MODEL_REGISTRY,
    ModelInfo,
    get_default_model,
    get_model_info,
    resolve_model_name,
)

logger = logging.getLogger(__name__)

_client_cache: Dict[str, BaseLLMClient] = {}


def get_client(
    model: Optional[str] = None,
    project_id: Optional[str] = None,
    region: Optional[str] = None,
    cache: bool = True,
) -> BaseLLMClient:
    """
    Get an LLM client for the specified model.

    Args:
        model: Model name or alias; uses get_default_model() if None
        project_id: GCP project ID (uses GCP_PROJECT env var if None)
        region: GCP region (auto-selected based on provider if None)
        cache: Whether to cache and reuse client instances (default: True)

    Raises:
        ValueError: If model is not supported
    """
    model_name = resolve_model_name(model) if model else get_default_model()

    cache_key = f"{model_name}:{project_id}:{region}"
    if cache and cache_key in _client_cache:
        return _client_cache[cache_key]

    model_info = get_model_info(model_name)
    if not model_info:
        available = ", ".join(list(MODEL_REGISTRY) + list(MODEL_ALIASES))
        raise ValueError(f"Unknown model: {model_name}. Available: {available}")

    default_project, default_region = get_gcp_config()
    project_id = project_id or default_project

    if model_info.provider == LLMProvider.GEMINI:
        from .gemini import GeminiClient
        client = GeminiClient(
            model_id=model_info.model_id,
            project_id=project_id,
            region=region or default_region
        )
    else:
        from .claude import ClaudeClient
        client = ClaudeClient(
            model_id=model_info.model_id,
            project_id=project_id,
            region=region or os.environ.get("CLAUDE_REGION", "europe-west1")
        )

    if cache:
        _client_cache[cache_key] = client

    logger.info(f"Created LLM client: {client}")
    return client


def clear_cache() -> None:
    """Clear the client cache."""
    _client_cache.clear()
    logger.info("LLM client cache cleared")


__all__ = [
    "get_client",
    "clear_cache",
    "BaseLLMClient",
    "LLMProvider",
    "GenerationConfig",
    "LLMResponse",
    "ModelInfo",
    "get_default_model",
    "get_model_info",
]
