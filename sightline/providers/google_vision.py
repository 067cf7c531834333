"""Google Cloud Vision client (images:annotate)."""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, Optional

import httpx

from sightline.providers.base import ProviderResult, VisionMetadataCache

logger = logging.getLogger(__name__)

FEATURE_TYPES = {
    "labels": {"type": "LABEL_DETECTION", "maxResults": 10},
    "faces": {"type": "FACE_DETECTION", "maxResults": 10},
    "text": {"type": "TEXT_DETECTION"},
    "objects": {"type": "OBJECT_LOCALIZATION", "maxResults": 10},
    "safe_search": {"type": "SAFE_SEARCH_DETECTION"},
    "properties": {"type": "IMAGE_PROPERTIES"},
}


def parse_annotations(annotations: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an annotate response into labels/faces/text/objects/safe_search/dominant_colors."""
    metadata: Dict[str, Any] = {}
    if annotations.get("labelAnnotations"):
        metadata["labels"] = [
            {"description": label.get("description"), "confidence": label.get("score", 0.0)}
            for label in annotations["labelAnnotations"]
        ]
    if annotations.get("faceAnnotations"):
        metadata["faces"] = [
            {
                "joy": face.get("joyLikelihood", "UNKNOWN"),
                "sorrow": face.get("sorrowLikelihood", "UNKNOWN"),
                "anger": face.get("angerLikelihood", "UNKNOWN"),
                "surprise": face.get("surpriseLikelihood", "UNKNOWN"),
                "confidence": face.get("detectionConfidence", 0.0),
            }
            for face in annotations["faceAnnotations"]
        ]
    if annotations.get("textAnnotations"):
        metadata["text"] = [
            {"description": text.get("description"), "locale": text.get("locale")}
            for text in annotations["textAnnotations"]
        ]
    if annotations.get("localizedObjectAnnotations"):
        metadata["objects"] = [
            {"name": obj.get("name"), "confidence": obj.get("score", 0.0)}
            for obj in annotations["localizedObjectAnnotations"]
        ]
    safe = annotations.get("safeSearchAnnotation")
    if safe:
        metadata["safe_search"] = {
            key: safe.get(key, "UNKNOWN") for key in ("adult", "spoof", "medical", "violence", "racy")
        }
    colors = ((annotations.get("imagePropertiesAnnotation") or {}).get("dominantColors") or {}).get("colors")
    if colors:
        metadata["dominant_colors"] = [
            {
                "red": (color.get("color") or {}).get("red", 0),
                "green": (color.get("color") or {}).get("green", 0),
                "blue": (color.get("color") or {}).get("blue", 0),
                "confidence": color.get("score", 0.0),
            }
            for color in colors
        ]
    return metadata


class GoogleVisionClient:
    """Feature extraction against the Cloud Vision REST API."""

    name = "google_vision"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://vision.googleapis.com/v1",
        features: Optional[List[str]] = None,
        cache: VisionMetadataCache | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("GOOGLE_VISION_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.features = list(features or ["labels", "text", "objects", "properties"])
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
        if not self.api_key:
            return ProviderResult(provider=self.name, ok=False, error="GOOGLE_VISION_API_KEY not set")
        if not image_url and not image_base64:
            return ProviderResult(provider=self.name, ok=False, error="image_url or image_base64 required")

        if image_url and self.cache is not None:
            cached = self.cache.get(self.name, image_url)
            if cached is not None:
                return ProviderResult(provider=self.name, data=cached, cached=True)

        image: Dict[str, Any] = {"source": {"imageUri": image_url}} if image_url else {"content": image_base64}
        requested = features or self.features
        body = {
            "requests": [
                {
                    "image": image,
                    "features": [FEATURE_TYPES.get(name, FEATURE_TYPES["labels"]) for name in requested],
                }
            ]
        }
        url = f"{self.base_url}/images:annotate?key={self.api_key}"

        start = time.perf_counter()
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=body)
            duration_ms = (time.perf_counter() - start) * 1000

            if response.status_code != 200:
                return ProviderResult(
                    provider=self.name,
                    ok=False,
                    error=f"HTTP {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )

            responses = response.json().get("responses") or [{}]
            annotations = responses[0]
            if annotations.get("error"):
                return ProviderResult(
                    provider=self.name,
                    ok=False,
                    error=f"Vision API error: {annotations['error'].get('message', 'unknown')}",
                    status_code=400,
                    duration_ms=duration_ms,
                )

            metadata = parse_annotations(annotations)
            if image_url and self.cache is not None:
                self.cache.put(self.name, image_url, metadata)
            return ProviderResult(provider=self.name, data=metadata, duration_ms=duration_ms)

        except httpx.TimeoutException:
            return ProviderResult(
                provider=self.name,
                ok=False,
                error=f"Vision API timeout after {timeout}s",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            return ProviderResult(
                provider=self.name,
                ok=False,
                error=f"connection error: {e}",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
