"""Stage handlers: vision fan-out, AI analysis and group synthesis.

Each handler is re-entrant. It claims its stage in the job store before
touching providers, records every provider attempt in the event log, decides
the fan-in barrier from the log rather than from in-memory state, and checks
cancellation before it writes anything that moves the job forward.
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from sightline.cancellation import CancellationRegistry
from sightline.errors import (
    InvalidTransitionError,
    NormalizationError,
    ProviderError,
    SightlineError,
    StageTimeoutError,
)
from sightline.events import Event, EventLog
from sightline.normalizer import Malformed, Normalized, normalize, quality_score
from sightline.optimizer import ModelSelectionOptimizer
from sightline.providers.base import ProviderResult, with_retries
from sightline.store import Job, JobStore
from sightline.timeouts import (
    COMPLEXITIES,
    calculate_timeout,
    complexity_from_metadata,
    detect_image_complexity,
    warning_threshold,
)

logger = logging.getLogger(__name__)

PROGRESS = {
    "vision_started": 30,
    "vision_completed": 55,
    "ai_advanced": 60,
    "ai_started": 60,
    "ai_completed": 85,
    "synthesis_started": 85,
}


@dataclass
class StageRuntime:
    """Collaborators shared by every stage handler."""

    store: JobStore
    events: EventLog
    optimizer: ModelSelectionOptimizer
    providers: Dict[str, Any]
    cancellation: CancellationRegistry
    timeouts: Dict[str, Any] = field(default_factory=dict)
    stages: Dict[str, Any] = field(default_factory=dict)
    dispatcher: Any = None
    sleep: Callable[[float], None] = time.sleep

    @property
    def attempts(self) -> int:
        return int(self.stages.get("provider_attempts", 3))

    @property
    def backoff_ms(self) -> float:
        return float(self.stages.get("retry_backoff_ms", 300))

    @property
    def max_workers(self) -> int:
        return int(self.stages.get("max_workers", 4))

    @property
    def use_fallback(self) -> bool:
        return bool(self.stages.get("use_fallback", True))

    @property
    def allow_degraded_groups(self) -> bool:
        return bool(self.stages.get("allow_degraded_groups", True))


@dataclass
class _Slot:
    slot: str
    model: str
    image_index: int
    image_url: str


class _Deadline:
    """Wall-clock budget for one stage, with a one-shot warning point."""

    def __init__(self, timeout_ms: int, warning_ms: int) -> None:
        self.timeout_ms = timeout_ms
        self.warning_ms = warning_ms
        self.started = time.monotonic()
        self.warned = False

    def _elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000

    def until_warning(self) -> float:
        return max(0.0, (self.warning_ms - self._elapsed_ms()) / 1000)

    def remaining(self) -> float:
        return max(0.0, (self.timeout_ms - self._elapsed_ms()) / 1000)


class StageHandler:
    stage = ""

    def __init__(self, runtime: StageRuntime) -> None:
        self.rt = runtime

    # --- shared helpers ---

    def _event(self, job: Job, phase: str, progress: int | None = None, **kwargs: Any) -> Event | None:
        return self.rt.events.append(
            job.id,
            f"{job.domain}/{self.stage}.{phase}",
            progress=job.progress if progress is None else progress,
            **kwargs,
        )

    def _should_stop(self, job_id: str) -> bool:
        """True when the job was cancelled or already finished elsewhere."""
        if self.rt.cancellation.is_cancelled(job_id):
            logger.info("Job %s cancelled; %s stage stops before writing results", job_id, self.stage)
            return True
        job = self.rt.store.get_job(job_id)
        return job is None or job.terminal

    def _fail(self, job: Job, error: SightlineError) -> None:
        """Record a stage failure and move the job to failed."""
        error.job_id = error.job_id or job.id
        self._event(
            job,
            "failed",
            status="failed",
            message=error.message,
            metadata={"error": type(error).__name__, **error.details},
        )
        try:
            self.rt.store.mark_terminal(job.id, "failed", error=error.message)
        except InvalidTransitionError:
            logger.info("Job %s already terminal; %s failure not applied", job.id, self.stage)
            return
        logger.warning("Job %s failed in %s stage: %s", job.id, self.stage, error.message)

    def _await(self, job: Job, futures: List[Future], deadline: _Deadline) -> bool:
        """Wait for ``futures`` within the stage deadline, emitting the warning once."""
        if not deadline.warned:
            _, pending = wait(futures, timeout=deadline.until_warning())
            if not pending:
                return True
            deadline.warned = True
            self._event(
                job,
                "warning",
                status="processing",
                message="Analysis is taking longer than expected",
                metadata={"timeout_ms": deadline.timeout_ms, "warning_ms": deadline.warning_ms},
            )
        _, pending = wait(futures, timeout=deadline.remaining())
        return not pending

    def _timeout(self, job: Job, deadline: _Deadline) -> None:
        self._fail(
            job,
            StageTimeoutError(
                f"{self.stage} stage exceeded {deadline.timeout_ms}ms",
                job_id=job.id,
                details={"timeout_ms": deadline.timeout_ms},
            ),
        )

    def _context(self, job: Job, inputs: Dict[str, Any]) -> Dict[str, Any]:
        context = dict(job.metadata.get("user_context") or {})
        image_context = inputs.get("image_context")
        if image_context:
            context["image"] = {**(context.get("image") or {}), **image_context}
        return context

    def run(self, job_id: str, inputs: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class VisionStage(StageHandler):
    """Fans each image out to the selected vision providers."""

    stage = "vision"

    def run(self, job_id: str, inputs: Optional[Dict[str, Any]] = None) -> None:
        inputs = dict(inputs or {})
        store = self.rt.store
        job = store.require_job(job_id)
        if job.terminal or self.rt.cancellation.is_cancelled(job_id):
            return
        if job.current_stage == "queued":
            store.mark_processing(job_id)
            store.advance_stage(job_id, "queued", "vision", PROGRESS["vision_started"])
        candidates = self.rt.optimizer.candidate_ids("vision")
        target = calculate_timeout("vision", "moderate", len(candidates), self.rt.timeouts)
        if not store.claim_stage(job_id, "vision", target):
            logger.info("Vision stage for job %s already claimed; skipping duplicate trigger", job_id)
            return
        job = store.require_job(job_id)

        context = self._context(job, inputs)
        selection = self.rt.optimizer.select_models("vision", context=context, target_timeout_ms=target)
        primary = selection.primary or selection.secondary
        if not primary:
            self._fail(job, ProviderError("no vision providers available", job_id=job.id))
            return

        slots = self._slots(job, primary)
        timeout_ms = calculate_timeout("vision", "moderate", len(primary), self.rt.timeouts)
        deadline = _Deadline(timeout_ms, warning_threshold(timeout_ms, self.rt.timeouts))
        start = self._event(
            job,
            "started",
            progress=PROGRESS["vision_started"],
            status="processing",
            metadata={
                "providers": [slot.slot for slot in slots],
                "plan": selection.reasoning,
                "timeout_ms": timeout_ms,
            },
        )

        executor = ThreadPoolExecutor(max_workers=max(1, min(self.rt.max_workers, len(slots) * 2)))
        try:
            futures = [executor.submit(self._call, job, slot, timeout_ms) for slot in slots]
            if not self._await(job, futures, deadline):
                self._timeout(job, deadline)
                return

            outcomes = self.rt.events.provider_outcomes(job.id, "vision", start.id if start else None)
            failed = [slot for slot in slots if outcomes.get(slot.slot) != "completed"]
            fallback = [m for m in selection.secondary if m not in primary]
            if failed and self.rt.use_fallback and fallback:
                replacements = self._replace(job, failed, fallback[0])
                futures = [executor.submit(self._call, job, slot, timeout_ms) for slot in replacements]
                if not self._await(job, futures, deadline):
                    self._timeout(job, deadline)
                    return
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self._fan_in(job, start, inputs)

    def _slots(self, job: Job, models: List[str]) -> List[_Slot]:
        slots: List[_Slot] = []
        for index, image_url in enumerate(job.images):
            for model in models:
                slot = f"{model}#{index}" if job.is_group else model
                slots.append(_Slot(slot=slot, model=model, image_index=index, image_url=image_url))
        return slots

    def _replace(self, job: Job, failed: List[_Slot], secondary: str) -> List[_Slot]:
        """Swap failed primaries for the secondary; recorded so the barrier can see it."""
        replacements: List[_Slot] = []
        for slot in failed:
            name = f"{secondary}#{slot.image_index}" if job.is_group else secondary
            if name == slot.slot or any(r.slot == name for r in replacements):
                continue
            replacement = _Slot(slot=name, model=secondary, image_index=slot.image_index, image_url=slot.image_url)
            replacements.append(replacement)
            self._event(
                job,
                "warning",
                status="processing",
                message=f"{slot.slot} failed; falling back to {name}",
                metadata={"replaced": slot.slot, "replacement": name},
            )
        return replacements

    def _call(self, job: Job, slot: _Slot, timeout_ms: int) -> None:
        card = self.rt.optimizer.card("vision", slot.model)
        client = self.rt.providers.get(card.get("provider", slot.model))
        meta = {"provider": slot.slot, "model": slot.model, "image_index": slot.image_index}
        self._event(job, "started", status="processing", metadata=meta)

        if client is None:
            result = ProviderResult(provider=slot.model, ok=False, error=f"no client for {slot.model}")
        else:
            try:
                result = with_retries(
                    lambda: client.annotate(image_url=slot.image_url, timeout=timeout_ms / 1000),
                    attempts=self.rt.attempts,
                    backoff_ms=self.rt.backoff_ms,
                    sleep=self.rt.sleep,
                )
            except Exception as exc:
                logger.exception("Vision provider %s raised for job %s", slot.slot, job.id)
                result = ProviderResult(provider=slot.model, ok=False, error=f"{type(exc).__name__}: {exc}")
        self.rt.optimizer.record_outcome(
            "vision", slot.model, result.duration_ms, result.ok, 1.0 if result.ok else None
        )
        if result.ok:
            self._event(
                job,
                "completed",
                status="processing",
                metadata={**meta, "result": result.payload(), "retries": result.retries, "cached": result.cached},
            )
        else:
            self._event(
                job,
                "failed",
                status="processing",
                message=result.error,
                metadata={**meta, "retries": result.retries},
            )

    def _required(self, job: Job, start: Event | None) -> List[str]:
        """Required provider slots, following any recorded fallback replacements."""
        after = self.rt.events.events_after(job.id, start.id if start else None)
        required = list((start.metadata.get("providers") if start else None) or [])
        replaced = {
            e.metadata["replaced"]: e.metadata["replacement"]
            for e in after
            if e.stage == "vision" and e.phase == "warning" and "replaced" in e.metadata
        }
        return [replaced.get(slot, slot) for slot in required]

    def _fan_in(self, job: Job, start: Event | None, inputs: Dict[str, Any]) -> None:
        outcomes = self.rt.events.provider_outcomes(job.id, "vision", start.id if start else None)
        required = self._required(job, start)
        pending = [slot for slot in required if slot not in outcomes]
        if pending:
            logger.info("Vision barrier for job %s still waiting on %s", job.id, pending)
            return
        succeeded = [slot for slot in required if outcomes[slot] == "completed"]
        failed = [slot for slot in required if outcomes[slot] != "completed"]

        if failed:
            degraded_ok = job.is_group and self.rt.allow_degraded_groups and succeeded
            if not degraded_ok:
                self._fail(
                    job,
                    ProviderError(
                        f"vision provider(s) failed: {', '.join(failed)}",
                        job_id=job.id,
                        details={"failed": failed},
                    ),
                )
                return
            self._event(
                job,
                "warning",
                status="processing",
                message=f"Continuing with degraded vision results ({len(succeeded)}/{len(required)})",
                metadata={"degraded": True, "failed": failed},
            )

        if self._should_stop(job.id):
            return
        results = self._results(job, start, succeeded)
        complexity = self._complexity(results)
        image_context = {}
        for data in results.values():
            if isinstance(data, dict) and data.get("primary_type"):
                image_context["primary_type"] = data["primary_type"]
                break

        self._event(
            job,
            "completed",
            progress=PROGRESS["vision_completed"],
            status="processing",
            metadata={"providers": outcomes, "complexity": complexity},
        )
        self.rt.store.record_progress(job.id, PROGRESS["vision_completed"])
        if not self.rt.store.advance_stage(job.id, "vision", "ai", PROGRESS["ai_advanced"]):
            return
        job = self.rt.store.require_job(job.id)
        self.rt.dispatcher.trigger(job, "ai", {"complexity": complexity, "image_context": image_context})

    def _results(self, job: Job, start: Event | None, slots: List[str]) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for event in self.rt.events.events_after(job.id, start.id if start else None):
            if event.stage == "vision" and event.phase == "completed" and event.provider in slots:
                results[event.provider] = event.metadata.get("result") or {}
        return results

    def _complexity(self, results: Dict[str, Any]) -> str:
        found = ["moderate"] if not results else []
        for data in results.values():
            if not isinstance(data, dict):
                continue
            if "elements" in data or "layout" in data:
                found.append(detect_image_complexity(data))
            else:
                found.append(complexity_from_metadata(data))
        return max(found, key=COMPLEXITIES.index)


def vision_results(events: EventLog, job_id: str) -> Dict[str, Any]:
    """Successful vision payloads keyed by provider slot."""
    results: Dict[str, Any] = {}
    for event in events.events_for(job_id):
        if event.stage == "vision" and event.phase == "completed" and event.provider:
            results[event.provider] = event.metadata.get("result") or {}
    return results


class AIStage(StageHandler):
    """Runs the analysis model and normalizes its output."""

    stage = "ai"

    def run(self, job_id: str, inputs: Optional[Dict[str, Any]] = None) -> None:
        inputs = dict(inputs or {})
        store = self.rt.store
        if self.rt.cancellation.is_cancelled(job_id):
            return
        complexity = inputs.get("complexity") or "moderate"
        if complexity not in COMPLEXITIES:
            complexity = "moderate"
        claim_ms = calculate_timeout("ai", complexity, len(self.rt.optimizer.candidate_ids("analysis")), self.rt.timeouts)
        if not store.claim_stage(job_id, "ai", claim_ms):
            logger.info("AI stage for job %s not claimable; skipping", job_id)
            return
        job = store.require_job(job_id)

        target = calculate_timeout("ai", complexity, 1, self.rt.timeouts)
        selection = self.rt.optimizer.select_models("analysis", context=self._context(job, inputs), target_timeout_ms=target)
        models = selection.models if self.rt.use_fallback else selection.primary[:1]
        if not models:
            self._fail(job, ProviderError("no analysis providers available", job_id=job.id))
            return

        timeout_ms = calculate_timeout("ai", complexity, len(selection.primary), self.rt.timeouts)
        deadline = _Deadline(timeout_ms, warning_threshold(timeout_ms, self.rt.timeouts))
        self._event(
            job,
            "started",
            progress=PROGRESS["ai_started"],
            status="processing",
            metadata={"providers": models, "plan": selection.reasoning, "timeout_ms": timeout_ms},
        )
        vision = vision_results(self.rt.events, job.id)
        prompt_context = {
            "vision": vision,
            "user_context": job.metadata.get("user_context") or {},
            "image_count": len(job.images),
            "image_urls": job.images,
        }

        executor = ThreadPoolExecutor(max_workers=1)
        outcome: Normalized | Malformed | None = None
        used_model = None
        errors: List[str] = []
        try:
            for model in models:
                future = executor.submit(self._call, job, model, prompt_context, timeout_ms)
                if not self._await(job, [future], deadline):
                    self._timeout(job, deadline)
                    return
                result, normalized = future.result()
                if not result.ok:
                    errors.append(f"{model}: {result.error}")
                    continue
                outcome, used_model = normalized, model
                break
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if outcome is None:
            self._fail(
                job,
                ProviderError(
                    "analysis provider(s) failed: " + "; ".join(errors),
                    job_id=job.id,
                    details={"failed": models},
                ),
            )
            return
        if isinstance(outcome, Malformed):
            self._fail(
                job,
                NormalizationError(
                    "AI output could not be normalized",
                    raw_preview=outcome.preview,
                    warnings=outcome.warnings,
                    job_id=job.id,
                ),
            )
            return

        if self._should_stop(job.id):
            return
        analysis = outcome.to_dict()
        self._event(
            job,
            "completed",
            progress=PROGRESS["ai_completed"],
            status="processing",
            metadata={"model": used_model, "analysis": analysis},
        )
        if job.is_group:
            store.record_progress(job.id, PROGRESS["ai_completed"])
            if store.advance_stage(job.id, "ai", "synthesis", PROGRESS["synthesis_started"]):
                self.rt.dispatcher.trigger(store.require_job(job.id), "synthesis", {"model": used_model})
            return

        store.save_result(
            job.id,
            {
                "image_id": job.image_id,
                "model": used_model,
                **analysis,
                "vision": vision,
            },
        )
        try:
            store.mark_terminal(job.id, "completed")
        except InvalidTransitionError:
            logger.info("Job %s finished elsewhere before AI completion was recorded", job.id)

    def _call(self, job: Job, model: str, prompt_context: Dict[str, Any], timeout_ms: int):
        card = self.rt.optimizer.card("analysis", model)
        client = self.rt.providers.get(card.get("provider", model))
        meta = {"provider": model, "model": model}
        self._event(job, "started", status="processing", metadata=meta)

        if client is None:
            result = ProviderResult(provider=model, ok=False, error=f"no client for {model}")
        else:
            try:
                result = with_retries(
                    lambda: client.analyze(job.images[0], prompt_context, timeout=timeout_ms / 1000),
                    attempts=self.rt.attempts,
                    backoff_ms=self.rt.backoff_ms,
                    sleep=self.rt.sleep,
                )
            except Exception as exc:
                logger.exception("Analysis provider %s raised for job %s", model, job.id)
                result = ProviderResult(provider=model, ok=False, error=f"{type(exc).__name__}: {exc}")
        if not result.ok:
            self.rt.optimizer.record_outcome("analysis", model, result.duration_ms, False)
            self._event(job, "failed", status="processing", message=result.error, metadata={**meta, "retries": result.retries})
            return result, None

        normalized = normalize(result.text or result.data)
        self.rt.optimizer.record_outcome(
            "analysis", model, result.duration_ms, True, quality_score(normalized)
        )
        if isinstance(normalized, Malformed):
            self._event(
                job,
                "failed",
                status="processing",
                message="output could not be normalized",
                metadata={**meta, "preview": normalized.preview, "warnings": normalized.warnings},
            )
        else:
            self._event(
                job,
                "completed",
                status="processing",
                metadata={**meta, "warnings": normalized.warnings, "retries": result.retries},
            )
        return result, normalized


class SynthesisStage(StageHandler):
    """Aggregates the group analysis into one result record."""

    stage = "synthesis"

    def run(self, job_id: str, inputs: Optional[Dict[str, Any]] = None) -> None:
        store = self.rt.store
        if self.rt.cancellation.is_cancelled(job_id):
            return
        if not store.claim_stage(job_id, "synthesis", calculate_timeout("synthesis", "moderate", 1, self.rt.timeouts)):
            logger.info("Synthesis stage for job %s not claimable; skipping", job_id)
            return
        job = store.require_job(job_id)
        self._event(job, "started", progress=PROGRESS["synthesis_started"], status="processing")

        analysis_event = self._latest_analysis(job)
        raw = ((analysis_event.metadata.get("analysis") or {}).get("raw")) if analysis_event else None
        if raw is None:
            self._fail(job, NormalizationError("no AI analysis available for synthesis", job_id=job.id))
            return
        outcome = normalize(raw)
        if isinstance(outcome, Malformed):
            self._fail(
                job,
                NormalizationError(
                    "AI output could not be normalized",
                    raw_preview=outcome.preview,
                    warnings=outcome.warnings,
                    job_id=job.id,
                ),
            )
            return

        if self._should_stop(job.id):
            return
        record = {
            "summary": {**outcome.summary, "groupJobId": job.id},
            "insights": outcome.insights,
            "suggestions": outcome.suggestions,
            "patterns": outcome.patterns,
            "metadata": {
                "groupJobId": job.id,
                "groupId": job.group_id,
                "imageCount": len(job.images),
                "model": analysis_event.metadata.get("model"),
                "normalization": {"warnings": outcome.warnings},
                "raw": outcome.raw,
            },
        }
        store.save_result(job.id, record)
        self._event(job, "completed", progress=100, status="completed", metadata={"model": record["metadata"]["model"]})
        try:
            store.mark_terminal(job.id, "completed")
        except InvalidTransitionError:
            logger.info("Job %s finished elsewhere before synthesis completed", job.id)

    def _latest_analysis(self, job: Job) -> Event | None:
        # The stage-level completion is written after every per-model one.
        event = self.rt.events.latest(job.id, f"{job.domain}/ai.completed")
        return None if event is None or event.provider else event
