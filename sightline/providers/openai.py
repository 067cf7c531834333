"""OpenAI chat-completions client for vision description and analysis."""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import httpx

from sightline.providers.base import ProviderResult, VisionMetadataCache, analysis_prompt

logger = logging.getLogger(__name__)

VISION_PROMPT = (
    "Describe the user interface in this image as JSON with keys "
    '"elements" (object of element name -> short description), '
    '"layout" ({"grid": {"complexity": "simple|moderate|complex"}}), '
    '"colors" ({"palette": [hex strings]}) and "primary_type" '
    '(dashboard|landing|mobile|form|ecommerce|other). Respond with JSON only.'
)


class OpenAIClient:
    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.openai.com/v1",
        vision_model: str = "gpt-4o",
        analysis_model: str = "gpt-4o",
        cache: VisionMetadataCache | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.vision_model = vision_model
        self.analysis_model = analysis_model
        self.cache = cache

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def annotate(
        self,
        image_url: str | None = None,
        image_base64: str | None = None,
        features: Optional[List[str]] = None,
        timeout: float = 30.0,
    ) -> ProviderResult:
        """Vision pass: structured description of the interface."""
        provider = "openai_vision"
        if image_url and self.cache is not None:
            cached = self.cache.get(provider, image_url)
            if cached is not None:
                return ProviderResult(provider=provider, data=cached, cached=True)

        image_ref = image_url or f"data:image/png;base64,{image_base64}"
        result = self._chat(provider, self.vision_model, VISION_PROMPT, image_ref, timeout, json_mode=True)
        if not result.ok:
            return result
        try:
            result.data = json.loads(result.text)
        except ValueError:
            result.data = {"description": result.text}
        result.text = ""
        if image_url and self.cache is not None:
            self.cache.put(provider, image_url, result.data)
        return result

    def analyze(
        self,
        image_url: str,
        prompt_context: Dict[str, Any],
        timeout: float = 60.0,
    ) -> ProviderResult:
        """Analysis pass. Returns raw text; parsing is the normalizer's job."""
        return self._chat(
            "openai_analysis", self.analysis_model, analysis_prompt(prompt_context), image_url, timeout
        )

    def _chat(
        self,
        provider: str,
        model: str,
        prompt: str,
        image_ref: str,
        timeout: float,
        json_mode: bool = False,
    ) -> ProviderResult:
        if not self.api_key:
            return ProviderResult(provider=provider, ok=False, error="OPENAI_API_KEY not set")

        body: Dict[str, Any] = {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_ref}},
                    ],
                }
            ],
            "max_tokens": 4000,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        start = time.perf_counter()
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
            duration_ms = (time.perf_counter() - start) * 1000

            if response.status_code != 200:
                return ProviderResult(
                    provider=provider,
                    ok=False,
                    error=f"HTTP {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )

            choices = response.json().get("choices", [])
            if not choices:
                return ProviderResult(
                    provider=provider, ok=False, error="No choices in response", duration_ms=duration_ms
                )
            text = (choices[0].get("message") or {}).get("content") or ""
            return ProviderResult(provider=provider, text=text, duration_ms=duration_ms, data={"model": model})

        except httpx.TimeoutException:
            return ProviderResult(
                provider=provider,
                ok=False,
                error=f"OpenAI API timeout after {timeout}s",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            return ProviderResult(
                provider=provider,
                ok=False,
                error=f"connection error: {e}",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
