"""Append-only event log for analysis jobs.

Each job owns a JSONL file under ``<data_dir>/events/<job_id>.jsonl``; lines
are only ever appended. Timing is derived when an event is written, by
locating the most recent matching ``.started`` event, so there is no separate
timer state to keep in sync and the log can be replayed on its own.

Event names are namespaced as ``<domain>/<stage>.<phase>``, for example
``analysis/vision.started`` followed by ``analysis/vision.completed``; the
completed event carries the duration measured from that start.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

STAGE_PHASES = ("started", "completed", "failed", "dispatched", "warning")
JOB_PHASES = ("created", "processing", "advanced", "claimed", "completed", "failed", "cancelled")
TERMINAL_PHASES = ("completed", "failed")


def parse_event_name(event_name: str) -> tuple[str, str, str]:
    """Split ``analysis/vision.started`` into (domain, stage, phase)."""
    domain, _, rest = event_name.partition("/")
    if not rest:
        return "", domain, ""
    stage, _, phase = rest.partition(".")
    return domain, stage, phase


@dataclass
class Timing:
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    duration_ms: Optional[int] = None


@dataclass
class Event:
    """A single immutable fact about a job."""

    id: str
    job_id: str
    event_name: str
    stage: str
    phase: str
    ts: int  # epoch milliseconds
    status: Optional[str] = None
    progress: int = 0
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    duration_ms: Optional[int] = None

    @property
    def provider(self) -> Optional[str]:
        return self.metadata.get("provider")

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), default=str)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_json(cls, line: str) -> Event:
        data = json.loads(line)
        return cls(**data)


class EventLog:
    """File-backed append-only event store, one JSONL file per job.

    Args:
        root: Data directory; events live in ``root/events``.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(self, root: str | Path, clock: Callable[[], float] | None = None) -> None:
        self.root = Path(root)
        self.events_dir = self.root / "events"
        self.events_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock or time.time
        self._lock = threading.Lock()

    def _path(self, job_id: str) -> Path:
        return self.events_dir / f"{job_id}.jsonl"

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def append(
        self,
        job_id: str,
        event_name: str,
        *,
        status: str | None = None,
        progress: int = 0,
        message: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Event | None:
        """Append an event, deriving its timing fields.

        Never raises: a failed write is logged and ``None`` is returned so the
        caller's own progress is not blocked.
        """
        try:
            _, stage, phase = parse_event_name(event_name)
            metadata = dict(metadata or {})
            ts = self.now_ms()
            event = Event(
                id=uuid.uuid4().hex,
                job_id=job_id,
                event_name=event_name,
                stage=stage,
                phase=phase,
                ts=ts,
                status=status,
                progress=int(progress or 0),
                message=message,
                metadata=metadata,
            )
            with self._lock:
                if phase == "started":
                    event.started_at = ts
                elif phase in TERMINAL_PHASES and stage != "job":
                    timing = self.derive_timing(job_id, stage, metadata.get("provider"), at=ts)
                    event.started_at = timing.started_at
                    event.ended_at = timing.ended_at
                    event.duration_ms = timing.duration_ms
                with open(self._path(job_id), "a", encoding="utf-8") as handle:
                    handle.write(event.to_json() + "\n")
            return event
        except Exception:
            logger.warning("Failed to append event %s for job %s", event_name, job_id, exc_info=True)
            return None

    def events_for(self, job_id: str) -> List[Event]:
        path = self._path(job_id)
        if not path.exists():
            return []
        events: List[Event] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                events.append(Event.from_json(line))
            except (ValueError, TypeError):
                logger.warning("Skipping unreadable event line for job %s", job_id)
        return events

    def derive_timing(
        self,
        job_id: str,
        stage: str,
        provider: str | None = None,
        at: int | None = None,
    ) -> Timing:
        """Timing of the most recent ``<stage>.started`` matching the filter.

        Without ``provider`` only stage-level starts (no provider in metadata)
        match. All fields stay ``None`` when no start is found.
        """
        at = self.now_ms() if at is None else at
        for event in reversed(self.events_for(job_id)):
            if event.stage != stage or event.phase != "started":
                continue
            if event.provider != provider:
                continue
            if event.ts > at:
                continue
            started = event.started_at or event.ts
            return Timing(started_at=started, ended_at=at, duration_ms=at - started)
        return Timing()

    def latest(
        self,
        job_id: str,
        event_name: str,
        provider: str | None = None,
    ) -> Event | None:
        for event in reversed(self.events_for(job_id)):
            if event.event_name != event_name:
                continue
            if provider is not None and event.provider != provider:
                continue
            return event
        return None

    def events_after(self, job_id: str, event_id: str | None) -> List[Event]:
        events = self.events_for(job_id)
        if event_id is None:
            return events
        for index, event in enumerate(events):
            if event.id == event_id:
                return events[index + 1:]
        return []

    def provider_outcomes(
        self,
        job_id: str,
        stage: str,
        after_event_id: str | None = None,
    ) -> Dict[str, str]:
        """Latest terminal phase per provider for ``stage``."""
        outcomes: Dict[str, str] = {}
        for event in self.events_after(job_id, after_event_id):
            if event.stage != stage or event.phase not in TERMINAL_PHASES:
                continue
            if event.provider:
                outcomes[event.provider] = event.phase
        return outcomes
