"""External vision and analysis providers."""
from __future__ import annotations

from typing import Any, Dict

from sightline.providers.anthropic import AnthropicClient
from sightline.providers.base import ProviderResult, VisionMetadataCache, with_retries
from sightline.providers.google_vision import GoogleVisionClient
from sightline.providers.openai import OpenAIClient

__all__ = [
    "AnthropicClient",
    "GoogleVisionClient",
    "OpenAIClient",
    "ProviderResult",
    "VisionMetadataCache",
    "build_providers",
    "with_retries",
]


def build_providers(config: Dict[str, Any]) -> Dict[str, Any]:
    """Clients keyed by the ``provider`` name model cards refer to.

    Vision clients expose ``annotate``; analysis clients expose ``analyze``.
    """
    cache = VisionMetadataCache(ttl_seconds=float(config.get("vision_cache_seconds", 3600)))
    google = config.get("google_vision") or {}
    openai = config.get("openai") or {}
    anthropic = config.get("anthropic") or {}

    openai_client = OpenAIClient(
        api_key=openai.get("api_key"),
        base_url=openai.get("base_url", "https://api.openai.com/v1"),
        vision_model=openai.get("vision_model", "gpt-4o"),
        analysis_model=openai.get("analysis_model", "gpt-4o"),
        cache=cache,
    )
    return {
        "google_vision": GoogleVisionClient(
            api_key=google.get("api_key"),
            base_url=google.get("base_url", "https://vision.googleapis.com/v1"),
            features=google.get("features"),
            cache=cache,
        ),
        "openai_vision": openai_client,
        "openai_analysis": openai_client,
        "anthropic_analysis": AnthropicClient(
            api_key=anthropic.get("api_key"),
            base_url=anthropic.get("base_url", "https://api.anthropic.com/v1"),
            model=anthropic.get("model", "claude-3-5-sonnet-20241022"),
        ),
    }
