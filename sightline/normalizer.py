"""Lenient normalization of free-form AI output into an analysis result.

Providers are asked for JSON but frequently wrap it in prose or Markdown
fences. ``normalize`` recovers what it can and records every recovery step as
a warning; it never invents values.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union
import json
import math
import re

PREVIEW_CHARS = 500
ENVELOPES = ("analysis", "data", "result")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


@dataclass
class Normalized:
    summary: Dict[str, Any] = field(default_factory=dict)
    insights: List[Any] = field(default_factory=list)
    suggestions: List[Any] = field(default_factory=list)
    patterns: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    raw: Any = None

    ok = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "insights": self.insights,
            "suggestions": self.suggestions,
            "patterns": self.patterns,
            "warnings": self.warnings,
            "raw": self.raw,
        }


@dataclass
class Malformed:
    raw_text: str
    warnings: List[str] = field(default_factory=list)

    ok = False

    @property
    def preview(self) -> str:
        return self.raw_text[:PREVIEW_CHARS]


NormalizeResult = Union[Normalized, Malformed]


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def _parse_text(text: str, warnings: List[str]) -> Any:
    parsed = _try_parse(text.strip())
    if isinstance(parsed, dict):
        return parsed

    match = _FENCE_RE.search(text)
    if match:
        parsed = _try_parse(match.group(1).strip())
        if isinstance(parsed, dict):
            warnings.append("Stripped Markdown code fences before parsing")
            return parsed

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        parsed = _try_parse(text[start:end + 1])
        if isinstance(parsed, dict):
            warnings.append("Parsed JSON from unstructured text")
            return parsed

    warnings.append("Could not parse JSON from text content")
    return None


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _coerce_summary(summary: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    summary = dict(summary)
    if summary.get("overallScore") is not None:
        original = summary["overallScore"]
        number = _to_number(original)
        if number is None:
            warnings.append("summary.overallScore was not numeric")
            del summary["overallScore"]
        else:
            if isinstance(original, str):
                warnings.append("summary.overallScore coerced from string")
            clamped = max(0, min(100, number))
            if clamped != number:
                warnings.append(f"summary.overallScore clamped to {clamped}")
            summary["overallScore"] = clamped

    scores = summary.get("categoryScores")
    if isinstance(scores, dict):
        coerced: Dict[str, Any] = {}
        for key, value in scores.items():
            number = _to_number(value)
            if number is None:
                warnings.append(f"categoryScores.{key} was not numeric")
                continue
            if isinstance(value, str):
                warnings.append(f"categoryScores.{key} coerced from string")
            coerced[key] = number
        summary["categoryScores"] = coerced
    elif scores is not None:
        warnings.append("summary.categoryScores was not an object")
        del summary["categoryScores"]
    return summary


def normalize(raw: Any) -> NormalizeResult:
    """Normalize provider output (text or an already-decoded mapping)."""
    warnings: List[str] = []
    raw_text = raw if isinstance(raw, str) else json.dumps(raw, default=str)

    if isinstance(raw, dict):
        obj: Any = raw
    elif isinstance(raw, str):
        obj = _parse_text(raw, warnings)
    else:
        warnings.append(f"Unsupported output type {type(raw).__name__}")
        obj = None

    if not isinstance(obj, dict):
        return Malformed(raw_text=raw_text or "", warnings=warnings)

    candidate = obj
    for key in ENVELOPES:
        if isinstance(obj.get(key), dict):
            candidate = obj[key]
            break

    summary = candidate.get("summary") if isinstance(candidate.get("summary"), dict) else {}
    insights = candidate.get("insights") if isinstance(candidate.get("insights"), list) else []
    suggestions = candidate.get("suggestions")
    if not isinstance(suggestions, list):
        suggestions = candidate.get("recommendations") if isinstance(candidate.get("recommendations"), list) else []
    patterns = candidate.get("patterns") if isinstance(candidate.get("patterns"), dict) else {}

    summary = _coerce_summary(summary, warnings)

    if not (summary or insights or suggestions or patterns):
        warnings.append("No analysis content found")
        return Malformed(raw_text=raw_text, warnings=warnings)

    return Normalized(
        summary=summary,
        insights=list(insights),
        suggestions=list(suggestions),
        patterns=dict(patterns),
        warnings=warnings,
        raw=raw,
    )


def quality_score(result: NormalizeResult) -> float:
    """Quality signal fed back to the optimizer."""
    if isinstance(result, Malformed):
        return 0.0
    return 0.7 if result.warnings else 1.0
