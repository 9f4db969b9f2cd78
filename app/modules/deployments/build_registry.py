"""
Thread-safe registry of resource_name -> BuildTracker.

Owned by the orchestrator and shared with the build runner (sole writer per resource) and the
status reconciler (reader). It lives in process memory only: after a restart it is empty and
the persisted deploy_status is the source of truth.
"""
import threading
import time
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from app.core.exceptions import ConflictError

logger = logging.getLogger(__name__)


@dataclass
class BuildTracker:
    started_at: float = field(default_factory=time.time)
    output: str = ""
    exit_code: Optional[int] = None
    finished_at: Optional[float] = None

    @property
    def is_live(self) -> bool:
        return self.exit_code is None


class BuildRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._builds: Dict[str, BuildTracker] = {}

    def begin(self, resource_name: str) -> BuildTracker:
        """Start tracking a build. Raises ConflictError while another build for the resource is live."""
        with self._lock:
            current = self._builds.get(resource_name)
            if current is not None and current.is_live:
                raise ConflictError("A deploy is already in progress")
            tracker = BuildTracker()
            self._builds[resource_name] = tracker
            logger.debug(f"Tracking build for {resource_name}")
            return replace(tracker)

    def append_output(self, resource_name: str, text: str) -> None:
        with self._lock:
            tracker = self._builds.get(resource_name)
            if tracker is not None and tracker.is_live:
                tracker.output += text

    def set_output(self, resource_name: str, text: str) -> None:
        with self._lock:
            tracker = self._builds.get(resource_name)
            if tracker is not None and tracker.is_live:
                tracker.output = text

    def finish(self, resource_name: str, exit_code: int, output: Optional[str] = None) -> None:
        with self._lock:
            tracker = self._builds.get(resource_name)
            if tracker is None:
                tracker = BuildTracker()
                self._builds[resource_name] = tracker
            if output is not None:
                tracker.output = output
            tracker.exit_code = exit_code
            tracker.finished_at = time.time()
        logger.debug(f"Build for {resource_name} finished with exit code {exit_code}")

    def get(self, resource_name: str) -> Optional[BuildTracker]:
        """Snapshot copy of the tracker, safe to read without the lock"""
        with self._lock:
            tracker = self._builds.get(resource_name)
            return replace(tracker) if tracker is not None else None

    def is_building(self, resource_name: str) -> bool:
        with self._lock:
            tracker = self._builds.get(resource_name)
            return tracker is not None and tracker.is_live
