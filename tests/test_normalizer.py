"""Tests for AI output normalization."""
import json
import unittest

from sightline.normalizer import Malformed, Normalized, normalize, quality_score

CLEAN = {
    "summary": {"overallScore": 72, "categoryScores": {"usability": 70, "visual": 80}},
    "insights": [{"title": "Clear hierarchy"}],
    "suggestions": [{"title": "Increase contrast"}],
    "patterns": {"navigation": "top bar"},
}


class TestNormalize(unittest.TestCase):
    def test_clean_json_has_no_warnings(self):
        result = normalize(json.dumps(CLEAN))
        self.assertIsInstance(result, Normalized)
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.summary["overallScore"], 72)
        self.assertEqual(result.suggestions, CLEAN["suggestions"])
        self.assertEqual(quality_score(result), 1.0)

    def test_prose_with_fences_recovers_with_warning(self):
        text = "Here is my analysis:\n```json\n" + json.dumps(CLEAN) + "\n```\nHope this helps!"
        result = normalize(text)
        self.assertIsInstance(result, Normalized)
        self.assertTrue(result.warnings)
        self.assertEqual(result.summary["categoryScores"]["visual"], 80)
        self.assertEqual(quality_score(result), 0.7)

    def test_braces_extraction_from_prose(self):
        text = "Analysis follows " + json.dumps(CLEAN) + " end."
        result = normalize(text)
        self.assertIsInstance(result, Normalized)
        self.assertIn("Parsed JSON from unstructured text", result.warnings)

    def test_envelopes_are_unwrapped(self):
        for key in ("analysis", "data", "result"):
            result = normalize(json.dumps({key: CLEAN}))
            self.assertIsInstance(result, Normalized)
            self.assertEqual(result.insights, CLEAN["insights"])

    def test_recommendations_alias(self):
        result = normalize({"recommendations": [{"title": "x"}]})
        self.assertEqual(result.suggestions, [{"title": "x"}])

    def test_numeric_coercion_and_clamping(self):
        payload = {
            "summary": {
                "overallScore": "140",
                "categoryScores": {"usability": "65", "visual": "n/a", "content": 50},
            }
        }
        result = normalize(json.dumps(payload))
        self.assertIsInstance(result, Normalized)
        self.assertEqual(result.summary["overallScore"], 100)
        self.assertEqual(result.summary["categoryScores"], {"usability": 65, "content": 50})
        self.assertIn("categoryScores.visual was not numeric", result.warnings)

    def test_non_numeric_overall_score_is_dropped(self):
        result = normalize({"summary": {"overallScore": "great", "keyIssues": ["x"]}})
        self.assertNotIn("overallScore", result.summary)
        self.assertIn("summary.overallScore was not numeric", result.warnings)

    def test_unparsable_text_is_malformed(self):
        text = "I am unable to analyze this image. " * 40
        result = normalize(text)
        self.assertIsInstance(result, Malformed)
        self.assertEqual(len(result.preview), 500)
        self.assertIn("Could not parse JSON from text content", result.warnings)
        self.assertEqual(quality_score(result), 0.0)

    def test_json_without_content_is_malformed(self):
        result = normalize(json.dumps({"status": "ok"}))
        self.assertIsInstance(result, Malformed)


if __name__ == "__main__":
    unittest.main()
