"""Tests for sightline.timeouts."""
import unittest

from sightline.errors import ValidationError
from sightline.timeouts import (
    calculate_timeout,
    complexity_from_metadata,
    detect_image_complexity,
    model_load,
    warning_threshold,
)


class TestCalculateTimeout(unittest.TestCase):
    def test_base_values_for_simple_single_model(self):
        self.assertEqual(calculate_timeout("vision", "simple", 1), 30000)
        self.assertEqual(calculate_timeout("analysis", "simple", 1), 60000)
        self.assertEqual(calculate_timeout("synthesis", "simple", 1), 45000)

    def test_ai_aliases_analysis(self):
        self.assertEqual(calculate_timeout("ai", "moderate", 2), calculate_timeout("analysis", "moderate", 2))

    def test_multipliers_apply(self):
        # 30000 * 1.5 * 1.3
        self.assertEqual(calculate_timeout("vision", "moderate", 2), 58500)
        # 60000 * 2.0 * 1.6 = 192000, clamped
        self.assertEqual(calculate_timeout("analysis", "complex", 5), 180000)

    def test_monotonic_in_complexity_and_load(self):
        for stage in ("vision", "analysis", "synthesis"):
            previous = 0
            for complexity in ("simple", "moderate", "complex"):
                value = calculate_timeout(stage, complexity, 1)
                self.assertGreaterEqual(value, previous)
                previous = value
            previous = 0
            for count in (0, 1, 2, 3, 4, 8):
                value = calculate_timeout(stage, "moderate", count)
                self.assertGreaterEqual(value, previous)
                previous = value

    def test_always_within_bounds(self):
        for stage in ("vision", "analysis", "synthesis"):
            for complexity in ("simple", "moderate", "complex"):
                for count in range(0, 7):
                    value = calculate_timeout(stage, complexity, count)
                    self.assertGreaterEqual(value, 15000)
                    self.assertLessEqual(value, 180000)

    def test_config_override_clamps_minimum(self):
        config = {"base": {"vision": 1000}}
        self.assertEqual(calculate_timeout("vision", "simple", 1, config), 15000)

    def test_unknown_stage_and_complexity_raise(self):
        with self.assertRaises(ValidationError):
            calculate_timeout("upload")
        with self.assertRaises(ValidationError):
            calculate_timeout("vision", "extreme")

    def test_model_load_buckets(self):
        self.assertEqual(model_load(0), "light")
        self.assertEqual(model_load(1), "light")
        self.assertEqual(model_load(2), "moderate")
        self.assertEqual(model_load(3), "moderate")
        self.assertEqual(model_load(4), "heavy")

    def test_warning_threshold_is_eighty_percent(self):
        self.assertEqual(warning_threshold(50000), 40000)


class TestComplexityDetection(unittest.TestCase):
    def test_no_data_is_moderate(self):
        self.assertEqual(detect_image_complexity(None), "moderate")
        self.assertEqual(detect_image_complexity({}), "moderate")

    def test_many_elements_is_complex(self):
        data = {"elements": {f"e{i}": {} for i in range(21)}}
        self.assertEqual(detect_image_complexity(data), "complex")

    def test_complex_layout_is_complex(self):
        data = {"elements": {"a": {}}, "layout": {"grid": {"complexity": "complex"}}}
        self.assertEqual(detect_image_complexity(data), "complex")

    def test_colors_drive_moderate(self):
        data = {"elements": {"a": {}}, "colors": {"palette": ["#000"] * 6}}
        self.assertEqual(detect_image_complexity(data), "moderate")

    def test_sparse_is_simple(self):
        data = {"elements": {"a": {}, "b": {}}, "colors": {"palette": ["#fff"]}}
        self.assertEqual(detect_image_complexity(data), "simple")

    def test_vision_metadata_mapping(self):
        metadata = {"labels": [{"description": "x"}] * 5, "objects": [{"name": "y"}] * 5}
        self.assertEqual(complexity_from_metadata(metadata), "moderate")
        self.assertEqual(complexity_from_metadata({"labels": [{"description": "x"}]}), "simple")


if __name__ == "__main__":
    unittest.main()
