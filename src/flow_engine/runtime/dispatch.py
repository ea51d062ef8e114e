"""Reference job dispatcher.

Real deployments hand jobs to a durable workflow runtime. This one covers
tests and single-host use and dedupes on ``(run_id, step_id, type)``.
"""

from __future__ import annotations

import logging
import threading

from flow_engine.core.types import PlannedJob

logger = logging.getLogger(__name__)


class InMemoryJobDispatcher:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[tuple[str, str, str]] = set()
        self.jobs: list[PlannedJob] = []

    def dispatch(self, job: PlannedJob) -> bool:
        with self._lock:
            if job.dedupe_key in self._seen:
                return False
            self._seen.add(job.dedupe_key)
            self.jobs.append(job)
        logger.info("Dispatched job", extra=job.to_json())
        return True


