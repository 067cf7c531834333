"""Shared result type, retry loop and cache for external providers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

RETRYABLE_PATTERNS = (
    "timeout",
    "connection",
    "temporary failure",
    "service unavailable",
    "rate limit",
    "too many requests",
)


@dataclass
class ProviderResult:
    """Result of one provider call. Clients never raise; they return ``ok=False``."""
    provider: str
    ok: bool = True
    data: Dict[str, Any] = field(default_factory=dict)
    text: str = ""
    error: str | None = None
    status_code: int | None = None
    duration_ms: float = 0.0
    retries: int = 0
    cached: bool = False

    @property
    def retryable(self) -> bool:
        if self.ok:
            return False
        if self.status_code is not None:
            return self.status_code == 429 or self.status_code >= 500
        error = (self.error or "").lower()
        return any(pattern in error for pattern in RETRYABLE_PATTERNS)

    def payload(self) -> Dict[str, Any]:
        """Serializable form stored on provider events."""
        body: Dict[str, Any] = dict(self.data)
        if self.text:
            body["text"] = self.text
        return body


def with_retries(
    call: Callable[[], ProviderResult],
    attempts: int = 3,
    backoff_ms: float = 300,
    sleep: Callable[[float], None] = time.sleep,
) -> ProviderResult:
    """Run ``call`` up to ``attempts`` times with linear backoff (backoff_ms * attempt)."""
    attempts = max(1, int(attempts))
    attempt = 0
    result = call()
    total_duration = result.duration_ms

    while not result.ok and attempt < attempts - 1:
        if not result.retryable:
            logger.warning("Provider %s error not retryable: %s", result.provider, result.error)
            break
        logger.warning("Provider %s attempt %s failed: %s", result.provider, attempt + 1, result.error)
        attempt += 1
        delay = backoff_ms * attempt / 1000.0
        logger.info("Provider retry %s/%s after %.1fs delay", attempt, attempts - 1, delay)
        sleep(delay)
        result = call()
        total_duration += result.duration_ms

    result.retries = attempt
    result.duration_ms = total_duration
    return result


class VisionMetadataCache:
    """Per-URL cache of vision results with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] | None = None) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock or time.time
        self._entries: Dict[str, tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _key(self, provider: str, image_url: str) -> str:
        return f"{provider}:{image_url}"

    def get(self, provider: str, image_url: str) -> Dict[str, Any] | None:
        key = self._key(provider, image_url)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, data = entry
            if self.clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return dict(data)

    def put(self, provider: str, image_url: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[self._key(provider, image_url)] = (self.clock(), dict(data))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


ANALYSIS_SCHEMA = """{
  "insights": [{"title": "string", "description": "string", "severity": "low|medium|high"}],
  "suggestions": [
    {"category": "usability|accessibility|visual|content", "title": "string",
     "description": "string", "impact": "low|medium|high", "effort": "low|medium|high"}
  ],
  "patterns": {},
  "summary": {
    "overallScore": 0,
    "categoryScores": {"usability": 0, "accessibility": 0, "visual": 0, "content": 0},
    "keyIssues": ["string"],
    "strengths": ["string"]
  }
}"""


def analysis_prompt(prompt_context: Dict[str, Any]) -> str:
    """Prompt shared by the analysis providers; the model must answer with JSON."""
    lines = ["You are a UX analyst. Review the interface in the attached image."]
    user_context = prompt_context.get("user_context") or {}
    if user_context:
        lines.append(f"User context: {json.dumps(user_context, default=str)}")
    image_count = int(prompt_context.get("image_count") or 1)
    if image_count > 1:
        lines.append(
            f"This is one of {image_count} related screens; describe patterns shared across the group."
        )
    vision = prompt_context.get("vision") or {}
    if vision:
        lines.append(f"Vision metadata: {json.dumps(vision, default=str)[:6000]}")
    lines.append("Respond with JSON only, matching this structure:")
    lines.append(ANALYSIS_SCHEMA)
    return "\n\n".join(lines)
