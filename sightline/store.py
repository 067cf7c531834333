"""Persistent job store.

Job rows are a cached projection of the event log: every mutation appends its
``<domain>/job.<phase>`` event under the same lock before the row is written,
and ``JobStore.rebuild`` can reconstruct a row from events alone.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List
import json
import logging
import threading
import uuid
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

from sightline.errors import InvalidTransitionError, JobNotFoundError, ValidationError
from sightline.events import EventLog

logger = logging.getLogger(__name__)

STATUSES = ("queued", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
STAGES = ("queued", "vision", "ai", "synthesis", "completed", "failed")

# Forward-only stage edges; synthesis exists only for group jobs.
STAGE_EDGES = {
    "single": {("queued", "vision"), ("vision", "ai")},
    "group": {("queued", "vision"), ("vision", "ai"), ("ai", "synthesis")},
}
FINAL_STAGE = {"single": "ai", "group": "synthesis"}
DOMAINS = {"single": "analysis", "group": "group-analysis"}


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def validate_job_spec(spec: Dict[str, Any]) -> None:
    missing = [key for key in ("image_id", "image_url", "user_id") if not spec.get(key)]
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}")


def validate_group_spec(spec: Dict[str, Any]) -> None:
    missing = [key for key in ("group_id", "user_id") if not spec.get(key)]
    image_urls = spec.get("image_urls")
    if not isinstance(image_urls, list) or not image_urls or not all(isinstance(url, str) and url for url in image_urls):
        missing.append("image_urls")
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}")


@dataclass
class Job:
    id: str
    kind: str
    user_id: str
    status: str = "queued"
    current_stage: str = "queued"
    progress: int = 0
    image_id: str | None = None
    image_url: str | None = None
    project_id: str | None = None
    group_id: str | None = None
    image_urls: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None

    @property
    def domain(self) -> str:
        return DOMAINS[self.kind]

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def images(self) -> List[str]:
        if self.is_group:
            return list(self.image_urls)
        return [self.image_url] if self.image_url else []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


@dataclass
class JobStore:
    data_dir: Path
    events: EventLog
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def _jobs_dir(self) -> Path:
        return self.data_dir / "jobs"

    def _results_dir(self) -> Path:
        return self.data_dir / "results"

    def _job_path(self, job_id: str) -> Path:
        return self._jobs_dir() / f"{job_id}.json"

    # --- creation ---

    def create_job(self, spec: Dict[str, Any]) -> str:
        """Create a single-image job. Requires image_id, image_url and user_id."""
        validate_job_spec(spec)
        job = Job(
            id=self.id_factory(),
            kind="single",
            user_id=str(spec["user_id"]),
            image_id=str(spec["image_id"]),
            image_url=str(spec["image_url"]),
            project_id=spec.get("project_id"),
            metadata=dict(spec.get("metadata") or {}),
        )
        return self._insert(job)

    def create_group_job(self, spec: Dict[str, Any]) -> str:
        """Create a group job. Requires group_id, a non-empty image_urls and user_id."""
        validate_group_spec(spec)
        image_urls = spec["image_urls"]
        job = Job(
            id=self.id_factory(),
            kind="group",
            user_id=str(spec["user_id"]),
            group_id=str(spec["group_id"]),
            image_urls=list(image_urls),
            project_id=spec.get("project_id"),
            metadata=dict(spec.get("metadata") or {}),
        )
        return self._insert(job)

    def _insert(self, job: Job) -> str:
        now = _now_iso()
        job.created_at = now
        job.updated_at = now
        self._jobs_dir().mkdir(parents=True, exist_ok=True)
        with self._lock:
            self.events.append(
                job.id,
                f"{job.domain}/job.created",
                status=job.status,
                progress=0,
                metadata={"job": job.to_dict()},
            )
            self._write(job)
        logger.info("Created %s job %s", job.kind, job.id)
        return job.id

    # --- reads ---

    def get_job(self, job_id: str) -> Job | None:
        path = self._job_path(job_id)
        if not path.exists():
            return None
        try:
            return Job.from_dict(json.loads(path.read_text()))
        except Exception:
            logger.warning("Unreadable job row %s", job_id, exc_info=True)
            return None

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found", job_id=job_id)
        return job

    def list_jobs(self, status: str | None = None, limit: int = 50) -> List[Job]:
        if not self._jobs_dir().exists():
            return []
        paths = sorted(self._jobs_dir().glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        jobs: List[Job] = []
        for path in paths:
            job = self.get_job(path.stem)
            if job is None:
                continue
            if status and job.status != status:
                continue
            jobs.append(job)
            if len(jobs) >= limit:
                break
        return jobs

    # --- mutations ---

    def mark_processing(self, job_id: str) -> bool:
        """queued -> processing. Returns False when already past queued."""
        def _update(job: Job) -> bool:
            if job.status != "queued":
                return False
            self.events.append(job.id, f"{job.domain}/job.processing", status="processing", progress=job.progress)
            job.status = "processing"
            return True
        return self._locked_update(job_id, _update)

    def advance_stage(self, job_id: str, from_stage: str, to_stage: str, progress: int) -> bool:
        """Move ``from_stage`` -> ``to_stage`` if the job is still at ``from_stage``.

        Duplicate or stale calls are no-ops returning False.
        """
        def _update(job: Job) -> bool:
            if (from_stage, to_stage) not in STAGE_EDGES[job.kind]:
                raise InvalidTransitionError(
                    f"illegal stage transition {from_stage} -> {to_stage} for {job.kind} job",
                    job_id=job.id,
                )
            if job.terminal or job.current_stage != from_stage:
                return False
            new_progress = max(job.progress, int(progress))
            self.events.append(
                job.id,
                f"{job.domain}/job.advanced",
                status="processing",
                progress=new_progress,
                metadata={"from": from_stage, "to": to_stage},
            )
            job.current_stage = to_stage
            job.status = "processing"
            job.progress = new_progress
            return True
        return self._locked_update(job_id, _update)

    def claim_stage(self, job_id: str, stage: str, ttl_ms: int) -> bool:
        """Claim (job, stage) for ``ttl_ms``; redelivered triggers get False.

        A claim whose holder never advanced the job expires after ``ttl_ms`` so
        a later trigger for the same stage can take the stage over.
        """
        def _update(job: Job) -> bool:
            if job.terminal or job.current_stage != stage:
                return False
            now = self.events.now_ms()
            claims = dict(job.metadata.get("claims") or {})
            held_until = claims.get(stage)
            if held_until is not None and now < held_until:
                return False
            expires_at = now + int(ttl_ms)
            self.events.append(
                job.id,
                f"{job.domain}/job.claimed",
                status=job.status,
                progress=job.progress,
                metadata={"stage": stage, "expires_at": expires_at, "takeover": held_until is not None},
            )
            if held_until is not None:
                logger.warning("Claim on %s stage of job %s expired; taking over", stage, job.id)
            claims[stage] = expires_at
            job.metadata = {**job.metadata, "claims": claims}
            return True
        return self._locked_update(job_id, _update)

    def record_progress(self, job_id: str, progress: int) -> bool:
        """Raise progress to ``progress``; stage events already carry the snapshot."""
        def _update(job: Job) -> bool:
            if job.terminal or progress <= job.progress:
                return False
            job.progress = min(100, int(progress))
            return True
        return self._locked_update(job_id, _update)

    def mark_terminal(self, job_id: str, status: str, error: str | None = None) -> Job:
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"{status} is not a terminal status", job_id=job_id)

        def _update(job: Job) -> Job:
            if job.terminal:
                raise InvalidTransitionError(
                    f"job {job.id} is already {job.status}", job_id=job.id
                )
            if status == "cancelled" and job.status not in ("queued", "processing"):
                raise InvalidTransitionError(f"cannot cancel a {job.status} job", job_id=job.id)
            if status == "completed" and job.current_stage != FINAL_STAGE[job.kind]:
                raise InvalidTransitionError(
                    f"cannot complete {job.kind} job from stage {job.current_stage}",
                    job_id=job.id,
                )
            progress = 100 if status == "completed" else job.progress
            self.events.append(
                job.id,
                f"{job.domain}/job.{status}",
                status=status,
                progress=progress,
                message=error,
                metadata={"from_stage": job.current_stage},
            )
            job.status = status
            job.progress = progress
            job.error = error
            if status == "completed":
                job.current_stage = "completed"
            elif status == "failed":
                job.current_stage = "failed"
            job.completed_at = _now_iso()
            return job
        return self._locked_update(job_id, _update)

    # --- results ---

    def save_result(self, job_id: str, result: Dict[str, Any]) -> Path:
        self._results_dir().mkdir(parents=True, exist_ok=True)
        path = self._results_dir() / f"{job_id}.json"
        payload = {"job_id": job_id, "created_at": _now_iso(), **result}
        path.write_text(json.dumps(payload, indent=2, default=str))
        return path

    def get_result(self, job_id: str) -> Dict[str, Any] | None:
        path = self._results_dir() / f"{job_id}.json"
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except Exception:
            return None

    # --- replay ---

    def rebuild(self, job_id: str) -> Job | None:
        """Reconstruct a job row purely from its event history."""
        job: Job | None = None
        max_progress = 0
        for event in self.events.events_for(job_id):
            max_progress = max(max_progress, event.progress or 0)
            if event.stage != "job":
                continue
            if event.phase == "created":
                job = Job.from_dict(event.metadata.get("job") or {})
                continue
            if job is None:
                continue
            if event.phase == "processing":
                job.status = "processing"
            elif event.phase == "advanced":
                job.current_stage = event.metadata.get("to", job.current_stage)
                job.status = "processing"
            elif event.phase == "claimed":
                claims = dict(job.metadata.get("claims") or {})
                claims[event.metadata.get("stage")] = event.metadata.get("expires_at")
                job.metadata["claims"] = claims
            elif event.phase in TERMINAL_STATUSES:
                job.status = event.phase
                job.error = event.message
                if event.phase in ("completed", "failed"):
                    job.current_stage = event.phase
        if job is not None:
            job.progress = 100 if job.status == "completed" else max(job.progress, max_progress)
        return job

    # --- persistence ---

    def _write(self, job: Job) -> None:
        self._jobs_dir().mkdir(parents=True, exist_ok=True)
        self._job_path(job.id).write_text(json.dumps(job.to_dict(), indent=2))

    def _locked_update(self, job_id: str, updater):
        path = self._job_path(job_id)
        if not path.exists():
            raise JobNotFoundError(f"job {job_id} not found", job_id=job_id)
        with self._lock:
            if fcntl is None:
                job = self.require_job(job_id)
                result = updater(job)
                job.updated_at = _now_iso()
                self._write(job)
                return result
            with path.open("r+", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    handle.seek(0)
                    data = handle.read()
                    if not data.strip():
                        raise JobNotFoundError(f"job {job_id} has an empty row", job_id=job_id)
                    job = Job.from_dict(json.loads(data))
                    before = job.to_dict()
                    result = updater(job)
                    if job.to_dict() != before:
                        job.updated_at = _now_iso()
                        handle.seek(0)
                        handle.truncate()
                        handle.write(json.dumps(job.to_dict(), indent=2))
                    return result
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
