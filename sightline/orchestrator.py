"""Wiring for the job pipeline and the submission API used by the server and CLI."""
from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional
import logging
import threading
import time

from sightline.cancellation import CancellationRegistry
from sightline.config import DISPATCH_MODES, Config
from sightline.dispatch import Dispatcher, EventBusClient
from sightline.errors import (
    DispatchError,
    PermissionDenied,
    RateLimited,
    SightlineError,
    StageTimeoutError,
    ValidationError,
)
from sightline.events import EventLog, parse_event_name
from sightline.optimizer import ModelSelectionOptimizer
from sightline.providers import build_providers
from sightline.stages import AIStage, StageRuntime, SynthesisStage, VisionStage
from sightline.store import DOMAINS, Job, JobStore, validate_group_spec, validate_job_spec
from sightline.timeouts import calculate_timeout

logger = logging.getLogger(__name__)


def _pick(request: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if request.get(key) is not None:
            return request[key]
    return None


class Orchestrator:
    """Owns the store, event log, optimizer and stage handlers for one data dir."""

    def __init__(
        self,
        config: Config,
        providers: Optional[Dict[str, Any]] = None,
        optimizer: ModelSelectionOptimizer | None = None,
        bus: EventBusClient | None = None,
        clock: Callable[[], float] | None = None,
        background: Callable[[Callable[[], None]], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.clock = clock or time.time
        self.events = EventLog(config.data_dir, clock=self.clock)
        self.store = JobStore(config.data_dir, self.events)
        self.optimizer = optimizer or ModelSelectionOptimizer.from_config(config.optimizer)
        self.providers = providers if providers is not None else build_providers(config.providers)
        self.cancellation = CancellationRegistry()
        self.runtime = StageRuntime(
            store=self.store,
            events=self.events,
            optimizer=self.optimizer,
            providers=self.providers,
            cancellation=self.cancellation,
            timeouts=config.timeouts,
            stages=config.stages,
            sleep=sleep,
        )
        self.dispatcher = Dispatcher(
            events=self.events,
            bus=bus if bus is not None else EventBusClient.from_config(config.dispatch),
            invoke=self.run_stage,
            default_mode=config.dispatch_mode,
            fallback_to_direct=bool(config.dispatch.get("fallback_to_direct", True)),
            background=background,
        )
        self.runtime.dispatcher = self.dispatcher
        self.handlers = {
            "vision": VisionStage(self.runtime),
            "ai": AIStage(self.runtime),
            "synthesis": SynthesisStage(self.runtime),
        }
        self._submissions: Dict[str, Deque[float]] = {}
        self._rate_lock = threading.Lock()

    # --- submission ---

    def _check_user(self, user_id: str | None) -> str:
        if not user_id:
            raise ValidationError("missing required fields: user_id")
        user_id = str(user_id)
        if user_id in [str(u) for u in (self.config.limits.get("blocked_users") or [])]:
            raise PermissionDenied(f"user {user_id} may not submit analysis jobs")
        per_minute = int(self.config.limits.get("jobs_per_minute", 0) or 0)
        if per_minute <= 0:
            return user_id
        now = self.clock()
        with self._rate_lock:
            window = self._submissions.setdefault(user_id, deque())
            while window and now - window[0] >= 60:
                window.popleft()
            if len(window) >= per_minute:
                raise RateLimited(f"rate limit of {per_minute} jobs per minute exceeded")
            window.append(now)
        return user_id

    def _dispatch_mode(self, request: Dict[str, Any]) -> str:
        mode = _pick(request, "dispatchMode", "dispatch_mode") or self.config.dispatch_mode
        if mode not in DISPATCH_MODES:
            raise ValidationError(f"unknown dispatch mode: {mode}")
        return mode

    def submit_job(self, request: Dict[str, Any], user_id: str | None) -> Dict[str, str]:
        """Create a single-image job and trigger its vision stage."""
        mode = self._dispatch_mode(request)
        spec = {
            "image_id": _pick(request, "imageId", "image_id"),
            "image_url": _pick(request, "imageUrl", "image_url"),
            "project_id": _pick(request, "projectId", "project_id"),
            "user_id": user_id,
        }
        validate_job_spec(spec)
        spec["user_id"] = self._check_user(user_id)
        spec["metadata"] = {
            "user_context": _pick(request, "userContext", "user_context") or {},
            "dispatch_mode": mode,
        }
        job_id = self.store.create_job(spec)
        return {"jobId": job_id, "dispatch": self._start(job_id)}

    def submit_group_job(self, request: Dict[str, Any], user_id: str | None) -> Dict[str, str]:
        """Create a group job and trigger its vision stage."""
        mode = self._dispatch_mode(request)
        spec = {
            "group_id": _pick(request, "groupId", "group_id"),
            "image_urls": _pick(request, "imageUrls", "image_urls"),
            "project_id": _pick(request, "projectId", "project_id"),
            "user_id": user_id,
        }
        validate_group_spec(spec)
        spec["user_id"] = self._check_user(user_id)
        spec["metadata"] = {
            "user_context": _pick(request, "userContext", "user_context") or {},
            "dispatch_mode": mode,
        }
        job_id = self.store.create_group_job(spec)
        return {"groupJobId": job_id, "dispatch": self._start(job_id)}

    def _start(self, job_id: str) -> str:
        job = self.store.require_job(job_id)
        try:
            return self.dispatcher.trigger(job, "vision")
        except DispatchError as exc:
            exc.job_id = job_id
            self.store.mark_terminal(job_id, "failed", error=exc.message)
            raise

    # --- stage entry points ---

    def run_stage(self, job_id: str, stage: str, inputs: Optional[Dict[str, Any]] = None) -> None:
        """Run one stage handler. Failures end up on the job, never with the caller."""
        handler = self.handlers.get(stage)
        if handler is None:
            raise ValidationError(f"unknown stage: {stage}", job_id=job_id)
        try:
            handler.run(job_id, inputs)
        except SightlineError as exc:
            logger.warning("Stage %s for job %s raised %s: %s", stage, job_id, type(exc).__name__, exc.message)
            self._fail_quietly(job_id, stage, exc.message)
        except Exception as exc:
            logger.exception("Unexpected error in %s stage for job %s", stage, job_id)
            self._fail_quietly(job_id, stage, f"{type(exc).__name__}: {exc}")
        finally:
            try:
                self.optimizer.save()
            except OSError:
                logger.warning("Failed to persist model metrics", exc_info=True)
            job = self.store.get_job(job_id)
            if job is None or job.terminal:
                self.cancellation.discard(job_id)

    def _fail_quietly(self, job_id: str, stage: str, message: str) -> None:
        job = self.store.get_job(job_id)
        if job is None or job.terminal:
            return
        self.events.append(job_id, f"{job.domain}/{stage}.failed", status="failed", progress=job.progress, message=message)
        try:
            self.store.mark_terminal(job_id, "failed", error=message)
        except SightlineError:
            logger.info("Job %s reached a terminal state concurrently", job_id)

    def handle_bus_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Route one event-bus delivery to the matching stage entry point."""
        name = str(event.get("name") or "").strip()
        data = event.get("data") or {}
        domain, stage, phase = parse_event_name(name)
        job_id = _pick(data, "jobId", "job_id", "groupJobId")
        if domain not in DOMAINS.values():
            return {"event": name, "ok": False, "error": "unrouted event"}
        if stage == "job" and phase == "created":
            stage = "vision"
        elif phase != "started" or stage not in self.handlers:
            return {"event": name, "ok": False, "error": "unrouted event"}
        if not job_id:
            return {"event": name, "ok": False, "error": "missing jobId"}
        if self.store.get_job(str(job_id)) is None:
            return {"event": name, "ok": False, "error": f"job {job_id} not found"}
        inputs = {k: v for k, v in data.items() if k not in ("jobId", "job_id", "groupJobId", "stage")}
        self.run_stage(str(job_id), stage, inputs)
        return {"event": name, "ok": True, "stage": stage, "jobId": str(job_id)}

    def handle_bus_events(self, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Accepts a single event or an ``{"events": [...]}`` batch."""
        events = body.get("events") if isinstance(body.get("events"), list) else [body]
        return [self.handle_bus_event(event or {}) for event in events]

    # --- queries and control ---

    def _owned_job(self, job_id: str, user_id: str | None) -> Job:
        job = self.store.require_job(job_id)
        if user_id and job.user_id != str(user_id):
            raise PermissionDenied(f"job {job_id} belongs to another user", job_id=job_id)
        return job

    def status(self, job_id: str, user_id: str | None = None) -> Dict[str, Any]:
        job = self._owned_job(job_id, user_id)
        payload = job.to_dict()
        payload["timings"] = {
            stage: vars(self.events.derive_timing(job_id, stage))
            for stage in ("vision", "ai", "synthesis")
        }
        if job.status == "completed":
            payload["result"] = self.store.get_result(job_id)
        return payload

    def job_events(self, job_id: str, user_id: str | None = None) -> List[Dict[str, Any]]:
        self._owned_job(job_id, user_id)
        return [event.to_dict() for event in self.events.events_for(job_id)]

    def cancel(self, job_id: str, user_id: str | None = None) -> Job:
        self._owned_job(job_id, user_id)
        self.cancellation.cancel(job_id)
        job = self.store.mark_terminal(job_id, "cancelled")
        logger.info("Cancelled job %s", job_id)
        return job

    def reap_stalled(self) -> List[str]:
        """Fail processing jobs whose current stage ran past its deadline."""
        now_ms = self.events.now_ms()
        reaped: List[str] = []
        for job in self.store.list_jobs(status="processing", limit=10_000):
            stage = job.current_stage if job.current_stage in self.handlers else "vision"
            started_ms, timeout_ms = self._stage_clock(job, stage)
            if started_ms is None or now_ms - started_ms <= timeout_ms:
                continue
            error = StageTimeoutError(f"{stage} stage exceeded {timeout_ms}ms", job_id=job.id)
            self.events.append(
                job.id,
                f"{job.domain}/{stage}.failed",
                status="failed",
                progress=job.progress,
                message=error.message,
                metadata={"error": type(error).__name__, "reaped": True, "timeout_ms": timeout_ms},
            )
            try:
                self.store.mark_terminal(job.id, "failed", error=error.message)
            except SightlineError:
                continue
            logger.warning("Reaped stalled job %s in %s stage", job.id, stage)
            reaped.append(job.id)
        return reaped

    def _stage_clock(self, job: Job, stage: str) -> tuple[int | None, int]:
        """When ``stage`` began for ``job`` and how long it may run."""
        started_ms = None
        timeout_ms = None
        for event in reversed(self.events.events_for(job.id)):
            if event.stage == stage and event.phase == "started" and not event.provider:
                started_ms = event.ts
                timeout_ms = event.metadata.get("timeout_ms")
                break
            if event.stage == "job" and event.phase in ("advanced", "processing", "created"):
                started_ms = event.ts
                break
        if timeout_ms is None:
            timeout_ms = calculate_timeout(stage, "moderate", 1, self.config.timeouts)
        return started_ms, int(timeout_ms)

    def models(self) -> Dict[str, Any]:
        stages: Dict[str, Any] = {}
        for stage in ("vision", "analysis"):
            selection = self.optimizer.select_models(stage)
            stages[stage] = {
                "candidates": self.optimizer.candidate_ids(stage),
                "primary": selection.primary,
                "secondary": selection.secondary,
                "reasoning": selection.reasoning,
                "expected_timeout_ms": selection.expected_timeout_ms,
                "scores": selection.scores,
            }
        return {"stages": stages, "metrics": self.optimizer.snapshot()}
