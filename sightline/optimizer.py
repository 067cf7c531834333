"""Model selection: ranks candidate providers per stage from observed performance."""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_TIME_MS = 30000.0
DEFAULT_SUCCESS_RATE = 0.85
DEFAULT_QUALITY = 0.7
DEFAULT_EXPECTED_TIMEOUT_MS = 30000
MAX_EXPECTED_TIMEOUT_MS = 120000
DAY_MS = 24 * 60 * 60 * 1000

STAGE_ALIASES = {"ai": "analysis"}


@dataclass
class ModelPerformanceMetric:
    model: str
    stage: str
    average_response_time: float = DEFAULT_RESPONSE_TIME_MS
    success_rate: float = DEFAULT_SUCCESS_RATE
    quality_score: float = DEFAULT_QUALITY
    last_used: int = 0
    usage_count: int = 0


@dataclass
class Selection:
    primary: List[str]
    secondary: List[str]
    reasoning: str
    expected_timeout_ms: int
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def models(self) -> List[str]:
        return self.primary + self.secondary


@dataclass
class ModelSelectionOptimizer:
    """Per-stage ranking service.

    Metrics are approximate: concurrent updates may overwrite each other and
    nothing downstream treats them as authoritative.
    """

    candidates: Dict[str, List[Dict[str, Any]]]
    learning_rate: float = 0.3
    retention_ms: int = DAY_MS
    metrics_path: Path | None = None
    clock: Callable[[], float] = time.time
    _metrics: Dict[str, Dict[str, ModelPerformanceMetric]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def from_config(cls, config: Dict[str, Any], clock: Callable[[], float] | None = None) -> "ModelSelectionOptimizer":
        metrics_path = config.get("metrics_path")
        instance = cls(
            candidates={
                STAGE_ALIASES.get(stage, stage): list(cards or [])
                for stage, cards in (config.get("models") or {}).items()
            },
            learning_rate=float(config.get("learning_rate", 0.3)),
            retention_ms=int(float(config.get("retention_hours", 24)) * 60 * 60 * 1000),
            metrics_path=Path(metrics_path).expanduser() if metrics_path else None,
            clock=clock or time.time,
        )
        if instance.metrics_path:
            instance.load()
        return instance

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def candidate_ids(self, stage: str) -> List[str]:
        stage = STAGE_ALIASES.get(stage, stage)
        return [card["id"] for card in self.candidates.get(stage, []) if card.get("id")]

    def card(self, stage: str, model: str) -> Dict[str, Any]:
        stage = STAGE_ALIASES.get(stage, stage)
        for card in self.candidates.get(stage, []):
            if card.get("id") == model:
                return card
        return {"id": model}

    # --- metrics ---

    def record_outcome(
        self,
        stage: str,
        model: str,
        response_time_ms: float,
        success: bool,
        quality_score: Optional[float] = None,
    ) -> ModelPerformanceMetric:
        """Fold one attempt into the model's exponential moving averages."""
        stage = STAGE_ALIASES.get(stage, stage)
        alpha = self.learning_rate
        with self._lock:
            self._prune_locked()
            stage_metrics = self._metrics.setdefault(stage, {})
            metric = stage_metrics.get(model) or ModelPerformanceMetric(model=model, stage=stage)
            metric.average_response_time = metric.average_response_time * (1 - alpha) + float(response_time_ms) * alpha
            metric.success_rate = metric.success_rate * (1 - alpha) + (1.0 if success else 0.0) * alpha
            if quality_score is not None:
                metric.quality_score = metric.quality_score * (1 - alpha) + float(quality_score) * alpha
            metric.last_used = self._now_ms()
            metric.usage_count += 1
            stage_metrics[model] = metric
        logger.debug(
            "recorded %s/%s rt=%.0fms success=%s quality=%s",
            stage, model, response_time_ms, success, quality_score,
        )
        return metric

    def get_metrics(self, stage: str, model: str) -> ModelPerformanceMetric | None:
        stage = STAGE_ALIASES.get(stage, stage)
        return self._metrics.get(stage, {}).get(model)

    def metrics_for(self, stage: str, model: str) -> ModelPerformanceMetric:
        """Stored metrics, or conservative defaults for a model with no history."""
        stage = STAGE_ALIASES.get(stage, stage)
        return self.get_metrics(stage, model) or ModelPerformanceMetric(model=model, stage=stage)

    def prune(self) -> List[str]:
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> List[str]:
        cutoff = self._now_ms() - self.retention_ms
        removed: List[str] = []
        for stage, stage_metrics in self._metrics.items():
            for model in [m for m, metric in stage_metrics.items() if metric.last_used < cutoff]:
                del stage_metrics[model]
                removed.append(f"{stage}/{model}")
        if removed:
            logger.info("Pruned stale model metrics: %s", ", ".join(removed))
        return removed

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return {
            stage: {model: asdict(metric) for model, metric in stage_metrics.items()}
            for stage, stage_metrics in self._metrics.items()
        }

    def save(self, path: Path | None = None) -> None:
        path = path or self.metrics_path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.snapshot(), indent=2))

    def load(self, path: Path | None = None) -> None:
        path = path or self.metrics_path
        if path is None or not path.exists():
            return
        try:
            data = json.loads(path.read_text())
        except Exception:
            logger.warning("Failed to load model metrics from %s", path, exc_info=True)
            return
        loaded: Dict[str, Dict[str, ModelPerformanceMetric]] = {}
        for stage, stage_metrics in (data or {}).items():
            for model, entry in (stage_metrics or {}).items():
                try:
                    loaded.setdefault(stage, {})[model] = ModelPerformanceMetric(**entry)
                except TypeError:
                    continue
        with self._lock:
            self._metrics = loaded
            self._prune_locked()

    # --- selection ---

    def select_models(
        self,
        stage: str,
        context: Optional[Dict[str, Any]] = None,
        target_timeout_ms: Optional[float] = None,
    ) -> Selection:
        stage = STAGE_ALIASES.get(stage, stage)
        self.prune()
        ranked = []
        for model in self.candidate_ids(stage):
            metrics = self.metrics_for(stage, model)
            score = self._score(stage, metrics, context, target_timeout_ms)
            ranked.append((model, score, metrics))
        # Ties break on model id so ordering never depends on config/dict order.
        ranked.sort(key=lambda item: (-item[1], item[0]))

        primary = [
            model for model, _, metrics in ranked
            if not target_timeout_ms or metrics.average_response_time <= target_timeout_ms * 0.8
        ][:2]
        secondary = [model for model, _, _ in ranked if model not in primary][:1]

        selected = primary + secondary
        by_model = {model: metrics for model, _, metrics in ranked}
        if selected:
            avg = sum(by_model[m].average_response_time for m in selected) / len(selected)
            expected = int(min(avg * 1.5, MAX_EXPECTED_TIMEOUT_MS))
        else:
            expected = DEFAULT_EXPECTED_TIMEOUT_MS

        reasoning = self._reasoning(ranked, primary, secondary, context, target_timeout_ms)
        logger.debug("selection stage=%s primary=%s secondary=%s (%s)", stage, primary, secondary, reasoning)
        return Selection(
            primary=primary,
            secondary=secondary,
            reasoning=reasoning,
            expected_timeout_ms=expected,
            scores={model: round(score, 4) for model, score, _ in ranked},
        )

    def _score(
        self,
        stage: str,
        metrics: ModelPerformanceMetric,
        context: Optional[Dict[str, Any]],
        target_timeout_ms: Optional[float],
    ) -> float:
        response_seconds = max(metrics.average_response_time, 1.0) / 1000.0
        score = (
            metrics.success_rate * 40
            + (1.0 / response_seconds) * 30
            + metrics.quality_score * 30
        )
        if context:
            strengths = self.card(stage, metrics.model).get("strengths") or {}
            primary_type = (context.get("image") or {}).get("primary_type")
            role = (context.get("user") or {}).get("inferred_role")
            if primary_type and primary_type in (strengths.get("domains") or []):
                score += 10
            if role and role in (strengths.get("roles") or []):
                score += 5
        if target_timeout_ms and metrics.average_response_time > target_timeout_ms:
            score -= 20
        if metrics.last_used and self._now_ms() - metrics.last_used < DAY_MS:
            score += 5
        return max(0.0, score)

    def _reasoning(
        self,
        ranked: List[tuple],
        primary: List[str],
        secondary: List[str],
        context: Optional[Dict[str, Any]],
        target_timeout_ms: Optional[float],
    ) -> str:
        reasons = []
        if primary:
            top = next(item for item in ranked if item[0] == primary[0])
            reasons.append(
                f"Selected {primary[0]} as primary (score: {top[1]:.1f}, avg: {top[2].average_response_time:.0f}ms)"
            )
        else:
            reasons.append("No model within target timeout")
        if context:
            primary_type = (context.get("image") or {}).get("primary_type") or "unknown"
            role = (context.get("user") or {}).get("inferred_role") or "general"
            reasons.append(f"Optimized for {primary_type} interface and {role} user")
        if target_timeout_ms:
            reasons.append(f"Target timeout: {int(target_timeout_ms)}ms")
        if secondary:
            reasons.append(f"Fallback: {secondary[0]}")
        return "; ".join(reasons)
