"""Anthropic messages API client for analysis."""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict

import httpx

from sightline.providers.base import ProviderResult, analysis_prompt

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"


class AnthropicClient:
    name = "anthropic_analysis"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.anthropic.com/v1",
        model: str = "claude-3-5-sonnet-20241022",
    ) -> None:
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.model = model

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def analyze(
        self,
        image_url: str,
        prompt_context: Dict[str, Any],
        timeout: float = 60.0,
    ) -> ProviderResult:
        if not self.api_key:
            return ProviderResult(provider=self.name, ok=False, error="ANTHROPIC_API_KEY not set")

        body = {
            "model": self.model,
            "max_tokens": 4000,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": analysis_prompt(prompt_context)},
                        {"type": "image", "source": {"type": "url", "url": image_url}},
                    ],
                }
            ],
        }
        headers = {"x-api-key": self.api_key, "anthropic-version": API_VERSION}

        start = time.perf_counter()
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(f"{self.base_url}/messages", json=body, headers=headers)
            duration_ms = (time.perf_counter() - start) * 1000

            if response.status_code != 200:
                return ProviderResult(
                    provider=self.name,
                    ok=False,
                    error=f"HTTP {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )

            content = response.json().get("content") or []
            text = "".join(block.get("text", "") for block in content if block.get("type") == "text")
            if not text:
                return ProviderResult(
                    provider=self.name, ok=False, error="No text content in response", duration_ms=duration_ms
                )
            return ProviderResult(provider=self.name, text=text, duration_ms=duration_ms, data={"model": self.model})

        except httpx.TimeoutException:
            return ProviderResult(
                provider=self.name,
                ok=False,
                error=f"Anthropic API timeout after {timeout}s",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            return ProviderResult(
                provider=self.name,
                ok=False,
                error=f"connection error: {e}",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
