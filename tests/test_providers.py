"""Tests for provider clients, retries and the vision cache."""
import unittest
from unittest.mock import MagicMock, patch

import httpx

from sightline.providers import (
    AnthropicClient,
    GoogleVisionClient,
    OpenAIClient,
    ProviderResult,
    VisionMetadataCache,
    with_retries,
)


def _mock_client(mock_client_cls, status_code=200, payload=None, side_effect=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = "upstream error"
    response.json.return_value = payload or {}
    client = MagicMock()
    client.__enter__ = MagicMock(return_value=client)
    client.__exit__ = MagicMock(return_value=False)
    if side_effect is not None:
        client.post.side_effect = side_effect
    else:
        client.post.return_value = response
    mock_client_cls.return_value = client
    return client


class TestWithRetries(unittest.TestCase):
    def test_retries_transient_failures_with_linear_backoff(self):
        results = [
            ProviderResult(provider="p", ok=False, error="HTTP 503", status_code=503, duration_ms=5),
            ProviderResult(provider="p", ok=False, error="timeout", duration_ms=5),
            ProviderResult(provider="p", ok=True, text="done", duration_ms=5),
        ]
        sleeps = []
        result = with_retries(lambda: results.pop(0), attempts=3, backoff_ms=300, sleep=sleeps.append)
        self.assertTrue(result.ok)
        self.assertEqual(result.retries, 2)
        self.assertEqual(result.duration_ms, 15)
        self.assertEqual(sleeps, [0.3, 0.6])

    def test_client_errors_are_not_retried(self):
        calls = []

        def _call():
            calls.append(1)
            return ProviderResult(provider="p", ok=False, error="HTTP 401", status_code=401)

        result = with_retries(_call, attempts=3, sleep=lambda _: None)
        self.assertFalse(result.ok)
        self.assertEqual(len(calls), 1)

    def test_gives_up_after_attempts(self):
        calls = []

        def _call():
            calls.append(1)
            return ProviderResult(provider="p", ok=False, error="HTTP 500", status_code=500)

        result = with_retries(_call, attempts=3, sleep=lambda _: None)
        self.assertFalse(result.ok)
        self.assertEqual(len(calls), 3)
        self.assertEqual(result.retries, 2)


class TestVisionMetadataCache(unittest.TestCase):
    def test_entries_expire(self):
        now = [0.0]
        cache = VisionMetadataCache(ttl_seconds=3600, clock=lambda: now[0])
        cache.put("google_vision", "https://x/1.png", {"labels": []})
        self.assertEqual(cache.get("google_vision", "https://x/1.png"), {"labels": []})
        now[0] = 3601
        self.assertIsNone(cache.get("google_vision", "https://x/1.png"))


class TestGoogleVisionClient(unittest.TestCase):
    @patch.dict("os.environ", {}, clear=True)
    def test_missing_key(self):
        result = GoogleVisionClient(api_key="").annotate(image_url="https://x/1.png")
        self.assertFalse(result.ok)
        self.assertIn("GOOGLE_VISION_API_KEY", result.error)

    @patch("sightline.providers.google_vision.httpx.Client")
    def test_parses_annotations_and_caches(self, mock_client_cls):
        client = _mock_client(
            mock_client_cls,
            payload={
                "responses": [
                    {
                        "labelAnnotations": [{"description": "Website", "score": 0.97}],
                        "localizedObjectAnnotations": [{"name": "Button", "score": 0.8}],
                        "imagePropertiesAnnotation": {
                            "dominantColors": {"colors": [{"color": {"red": 255}, "score": 0.5}]}
                        },
                    }
                ]
            },
        )
        vision = GoogleVisionClient(api_key="k", cache=VisionMetadataCache())
        result = vision.annotate(image_url="https://x/1.png", features=["labels", "objects", "properties"])
        self.assertTrue(result.ok)
        self.assertEqual(result.data["labels"], [{"description": "Website", "confidence": 0.97}])
        self.assertEqual(result.data["objects"][0]["name"], "Button")
        self.assertEqual(result.data["dominant_colors"][0]["red"], 255)
        body = client.post.call_args.kwargs["json"]
        self.assertEqual(body["requests"][0]["image"], {"source": {"imageUri": "https://x/1.png"}})

        cached = vision.annotate(image_url="https://x/1.png")
        self.assertTrue(cached.cached)
        self.assertEqual(client.post.call_count, 1)

    @patch("sightline.providers.google_vision.httpx.Client")
    def test_http_error_is_reported(self, mock_client_cls):
        _mock_client(mock_client_cls, status_code=503)
        result = GoogleVisionClient(api_key="k").annotate(image_url="https://x/1.png")
        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 503)
        self.assertTrue(result.retryable)

    @patch("sightline.providers.google_vision.httpx.Client")
    def test_timeout_is_retryable(self, mock_client_cls):
        _mock_client(mock_client_cls, side_effect=httpx.ReadTimeout("slow"))
        result = GoogleVisionClient(api_key="k").annotate(image_url="https://x/1.png", timeout=1)
        self.assertFalse(result.ok)
        self.assertTrue(result.retryable)


class TestAnalysisClients(unittest.TestCase):
    @patch("sightline.providers.openai.httpx.Client")
    def test_openai_analysis_returns_text(self, mock_client_cls):
        client = _mock_client(
            mock_client_cls,
            payload={"choices": [{"message": {"content": '{"insights": []}'}}]},
        )
        result = OpenAIClient(api_key="k").analyze("https://x/1.png", {"user_context": {"user": {"inferred_role": "designer"}}})
        self.assertTrue(result.ok)
        self.assertEqual(result.text, '{"insights": []}')
        body = client.post.call_args.kwargs["json"]
        self.assertEqual(body["messages"][0]["content"][1]["image_url"]["url"], "https://x/1.png")

    @patch("sightline.providers.openai.httpx.Client")
    def test_openai_vision_parses_json(self, mock_client_cls):
        _mock_client(
            mock_client_cls,
            payload={"choices": [{"message": {"content": '{"primary_type": "dashboard", "elements": {}}'}}]},
        )
        result = OpenAIClient(api_key="k").annotate(image_url="https://x/1.png")
        self.assertTrue(result.ok)
        self.assertEqual(result.provider, "openai_vision")
        self.assertEqual(result.data["primary_type"], "dashboard")

    @patch("sightline.providers.anthropic.httpx.Client")
    def test_anthropic_analysis(self, mock_client_cls):
        client = _mock_client(
            mock_client_cls,
            payload={"content": [{"type": "text", "text": '{"summary": {"overallScore": 80}}'}]},
        )
        result = AnthropicClient(api_key="k").analyze("https://x/1.png", {})
        self.assertTrue(result.ok)
        self.assertIn("overallScore", result.text)
        headers = client.post.call_args.kwargs["headers"]
        self.assertEqual(headers["x-api-key"], "k")

    @patch.dict("os.environ", {}, clear=True)
    def test_anthropic_missing_key(self):
        result = AnthropicClient(api_key="").analyze("https://x/1.png", {})
        self.assertFalse(result.ok)
        self.assertFalse(result.retryable)


if __name__ == "__main__":
    unittest.main()
