"""Cooperative cancellation flags, one per job."""
from __future__ import annotations

import threading
from typing import Dict


class CancellationRegistry:
    """Handlers poll ``is_cancelled`` before writing results.

    In-flight provider calls are not interrupted; their results are discarded.
    """

    def __init__(self) -> None:
        self._flags: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def _flag(self, job_id: str) -> threading.Event:
        with self._lock:
            flag = self._flags.get(job_id)
            if flag is None:
                flag = threading.Event()
                self._flags[job_id] = flag
            return flag

    def cancel(self, job_id: str) -> None:
        self._flag(job_id).set()

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            flag = self._flags.get(job_id)
        return flag is not None and flag.is_set()

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._flags.pop(job_id, None)
