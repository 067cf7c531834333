"""Adaptive per-stage timeouts.

Everything here is a pure function of its arguments (plus an optional config
mapping), so the whole table can be checked exhaustively in tests.
"""
from __future__ import annotations

from typing import Any, Dict, Optional
import logging

from sightline.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUTS: Dict[str, Any] = {
    "base": {"vision": 30000, "analysis": 60000, "synthesis": 45000},
    "multipliers": {
        "image_complexity": {"simple": 1.0, "moderate": 1.5, "complex": 2.0},
        "model_load": {"light": 1.0, "moderate": 1.3, "heavy": 1.6},
    },
    "warning_threshold": 0.8,
    "limits": {"minimum": 15000, "maximum": 180000},
}

STAGE_ALIASES = {"ai": "analysis"}
COMPLEXITIES = ("simple", "moderate", "complex")


def _section(config: Optional[Dict[str, Any]], *keys: str) -> Dict[str, Any]:
    value: Any = config or {}
    default: Any = DEFAULT_TIMEOUTS
    for key in keys:
        value = value.get(key, {}) if isinstance(value, dict) else {}
        default = default[key]
    merged = dict(default)
    merged.update(value or {})
    return merged


def model_load(model_count: int) -> str:
    if model_count <= 1:
        return "light"
    if model_count <= 3:
        return "moderate"
    return "heavy"


def calculate_timeout(
    stage: str,
    image_complexity: str = "moderate",
    model_count: int = 1,
    config: Optional[Dict[str, Any]] = None,
) -> int:
    """Deadline in milliseconds for ``stage``.

    base[stage] * complexity multiplier * model-load multiplier, clamped to
    the configured [minimum, maximum].
    """
    stage_key = STAGE_ALIASES.get(stage, stage)
    base = _section(config, "base")
    if stage_key not in base:
        raise ValidationError(f"unknown stage for timeout: {stage}")
    complexity = _section(config, "multipliers", "image_complexity")
    if image_complexity not in complexity:
        raise ValidationError(f"unknown image complexity: {image_complexity}")
    load = model_load(model_count)
    load_multipliers = _section(config, "multipliers", "model_load")
    limits = _section(config, "limits")

    calculated = float(base[stage_key]) * float(complexity[image_complexity]) * float(load_multipliers[load])
    timeout = max(float(limits["minimum"]), min(float(limits["maximum"]), calculated))
    logger.debug(
        "timeout stage=%s complexity=%s models=%s load=%s calculated=%.0f final=%.0f",
        stage_key, image_complexity, model_count, load, calculated, timeout,
    )
    return int(timeout)


def warning_threshold(timeout_ms: int, config: Optional[Dict[str, Any]] = None) -> int:
    """Point at which callers surface "taking longer than expected"."""
    threshold = (config or {}).get("warning_threshold", DEFAULT_TIMEOUTS["warning_threshold"])
    return int(timeout_ms * float(threshold))


def detect_image_complexity(vision_data: Optional[Dict[str, Any]] = None) -> str:
    """Heuristic complexity from vision output; ``moderate`` when unknown."""
    if not vision_data:
        return "moderate"
    elements = vision_data.get("elements") or {}
    element_count = len(elements)
    layout = vision_data.get("layout") or {}
    grid = layout.get("grid") if isinstance(layout, dict) else None
    complex_layout = isinstance(grid, dict) and grid.get("complexity") == "complex"
    colors = vision_data.get("colors") or {}
    palette = colors.get("palette") if isinstance(colors, dict) else None
    color_count = len(palette or [])

    if element_count > 20 or complex_layout or color_count > 10:
        return "complex"
    if element_count > 8 or color_count > 5:
        return "moderate"
    return "simple"


def complexity_from_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    """Map provider vision metadata (labels/objects/colors) onto the heuristic."""
    if not metadata:
        return "moderate"
    objects = metadata.get("objects") or []
    labels = metadata.get("labels") or []
    text = metadata.get("text") or []
    colors = metadata.get("dominant_colors") or []
    elements = {f"e{i}": item for i, item in enumerate(list(objects) + list(text) + list(labels))}
    return detect_image_complexity({"elements": elements, "colors": {"palette": colors}})
