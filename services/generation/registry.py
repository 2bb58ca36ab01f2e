"""Registry of active job monitors."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from shared.utils import utcnow

from .scheduler import ScheduledTask


@dataclass
class MonitorHandle:
    """Timers owned by the monitor of one job."""

    job_id: str
    poll_task: ScheduledTask | None = None
    timeout_task: ScheduledTask | None = None
    started_at: datetime = field(default_factory=utcnow)

    def cancel(self) -> None:
        for task in (self.poll_task, self.timeout_task):
            if task is not None:
                task.cancel()


class MonitorRegistry:
    """Job id -> monitor handle map with atomic check-and-insert."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, MonitorHandle] = {}

    def register_if_absent(
        self, job_id: str, factory: Callable[[], MonitorHandle]
    ) -> tuple[MonitorHandle, bool]:
        """Insert `factory()` unless a handle exists; returns (handle, created)."""
        with self._lock:
            existing = self._handles.get(job_id)
            if existing is not None:
                return existing, False
            handle = factory()
            self._handles[job_id] = handle
            return handle, True

    def pop(self, job_id: str) -> MonitorHandle | None:
        with self._lock:
            return self._handles.pop(job_id, None)

    def get(self, job_id: str) -> MonitorHandle | None:
        with self._lock:
            return self._handles.get(job_id)

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def clear(self) -> list[MonitorHandle]:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            return handles

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
