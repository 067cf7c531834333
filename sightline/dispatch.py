"""Stage triggering: in-process, via the external event bus, or both."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from sightline.config import DISPATCH_MODES
from sightline.errors import DispatchError, ValidationError
from sightline.events import EventLog
from sightline.store import Job

logger = logging.getLogger(__name__)

LABEL_DIRECT = "direct"
LABEL_BUS = "inngest"
LABEL_BOTH = "inngest+direct"


class EventBusClient:
    """Publishes ``{name, data, id, ts}`` to the broker's event endpoint.

    Callers pass ``id`` as ``"<jobId>:<stage>"`` rather than the bare job id:
    brokers that dedupe on ``id`` would otherwise drop every stage after the
    first. ``data.jobId`` still carries the job id.
    """

    def __init__(
        self,
        url_template: str = "",
        event_key: str = "",
        timeout: float = 10.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.url_template = url_template or ""
        self.event_key = event_key or ""
        self.timeout = timeout
        self.clock = clock or time.time

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EventBusClient":
        return cls(
            url_template=str(config.get("event_bus_url") or ""),
            event_key=str(config.get("event_key") or ""),
            timeout=float(config.get("timeout_seconds", 10)),
        )

    @property
    def configured(self) -> bool:
        if not self.url_template:
            return False
        if "{event_key}" in self.url_template:
            return bool(self.event_key)
        return True

    @property
    def url(self) -> str:
        return self.url_template.replace("{event_key}", self.event_key)

    def publish(self, name: str, data: Dict[str, Any], event_id: str) -> None:
        if not self.configured:
            raise DispatchError("event bus is not configured")
        body = {"name": name, "data": data, "id": event_id, "ts": int(self.clock() * 1000)}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=body)
        except Exception as e:
            raise DispatchError(f"event bus unreachable: {e}", job_id=data.get("jobId")) from e
        if response.status_code < 200 or response.status_code >= 300:
            raise DispatchError(
                f"event bus rejected {name}: HTTP {response.status_code}: {response.text[:200]}",
                job_id=data.get("jobId"),
            )
        logger.info("Published %s for job %s", name, data.get("jobId"))


class Dispatcher:
    """Triggers the next stage for a job.

    Args:
        events: Event log receiving ``<stage>.dispatched`` events.
        bus: Event bus client; ``None`` or unconfigured means direct only.
        invoke: ``invoke(job_id, stage, inputs)`` runs a stage in-process.
        default_mode: Mode used when the job does not name one.
        fallback_to_direct: Run in-process when the bus publish fails.
        background: Runs the in-process half of ``both`` mode.
    """

    def __init__(
        self,
        events: EventLog,
        bus: EventBusClient | None,
        invoke: Callable[[str, str, Dict[str, Any]], None],
        default_mode: str = "inngest",
        fallback_to_direct: bool = True,
        background: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self.events = events
        self.bus = bus
        self.invoke = invoke
        self.default_mode = default_mode
        self.fallback_to_direct = fallback_to_direct
        self.background = background or self._background_thread
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()

    def _background_thread(self, task: Callable[[], None]) -> None:
        thread = threading.Thread(target=task, daemon=True)
        with self._threads_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def wait(self) -> None:
        """Block until in-process runs started for ``both`` mode have finished.

        Short-lived callers such as the CLI must call this before exiting, or
        the daemon thread dies holding the stage claim.
        """
        while True:
            with self._threads_lock:
                alive = [t for t in self._threads if t.is_alive()]
            if not alive:
                return
            for thread in alive:
                thread.join()

    def resolve_mode(self, job: Job, mode: Optional[str] = None) -> str:
        mode = mode or job.metadata.get("dispatch_mode") or self.default_mode
        if mode not in DISPATCH_MODES:
            raise ValidationError(f"unknown dispatch mode: {mode}", job_id=job.id)
        return mode

    def trigger(
        self,
        job: Job,
        stage: str,
        stage_inputs: Optional[Dict[str, Any]] = None,
        mode: Optional[str] = None,
    ) -> str:
        """Trigger ``stage`` for ``job`` and return the dispatch label."""
        mode = self.resolve_mode(job, mode)
        inputs = dict(stage_inputs or {})
        published = False

        if mode in ("inngest", "both"):
            if self.bus is None or not self.bus.configured:
                logger.info("No event bus configured; dispatching %s for job %s directly", stage, job.id)
            else:
                name = f"{job.domain}/{stage}.started"
                data = {"jobId": job.id, "stage": stage, **inputs}
                try:
                    self.bus.publish(name, data, event_id=f"{job.id}:{stage}")
                    published = True
                except DispatchError as exc:
                    if not self.fallback_to_direct:
                        raise
                    logger.warning("Event bus dispatch failed for job %s, running %s directly: %s", job.id, stage, exc)

        if published and mode == "both":
            label = LABEL_BOTH
        elif published:
            label = LABEL_BUS
        else:
            label = LABEL_DIRECT

        self.events.append(
            job.id,
            f"{job.domain}/{stage}.dispatched",
            status="processing",
            progress=job.progress,
            metadata={"mode": mode, "dispatch": label},
        )

        if label == LABEL_DIRECT:
            self.invoke(job.id, stage, inputs)
        elif label == LABEL_BOTH:
            self.background(lambda: self.invoke(job.id, stage, inputs))
        return label
