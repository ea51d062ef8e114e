"""Per-instance flow locks.

Evaluation of one flow instance must not interleave with another evaluation
of the same instance: both would read the same step states and race on the
upsert. Locks carry a TTL so a crashed holder cannot wedge an instance, and a
random token so only the holder can release.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 30.0


class FlowLockUnavailable(RuntimeError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"flow_lock_unavailable: {instance_id}")
        self.instance_id = instance_id


@dataclass(frozen=True, slots=True)
class _Lease:
    token: str
    expires_at: float


class FlowLockManager:
    """In-process lock table keyed by flow instance id."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._guard = threading.Lock()
        self._leases: dict[str, _Lease] = {}

    def acquire(self, instance_id: str, token: str, ttl_seconds: float | None = None) -> bool:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock()
        with self._guard:
            lease = self._leases.get(instance_id)
            if lease is not None and lease.expires_at > now and lease.token != token:
                return False
            self._leases[instance_id] = _Lease(token=token, expires_at=now + ttl)
            return True

    def release(self, instance_id: str, token: str) -> bool:
        with self._guard:
            lease = self._leases.get(instance_id)
            if lease is None or lease.token != token:
                return False
            del self._leases[instance_id]
            return True

    def is_locked(self, instance_id: str) -> bool:
        with self._guard:
            lease = self._leases.get(instance_id)
            return lease is not None and lease.expires_at > self._clock()

    @contextmanager
    def hold(self, instance_id: str, ttl_seconds: float | None = None) -> Iterator[str]:
        token = uuid.uuid4().hex
        if not self.acquire(instance_id, token, ttl_seconds):
            logger.warning("Flow lock unavailable", extra={"instance_id": instance_id})
            raise FlowLockUnavailable(instance_id)
        try:
            yield token
        finally:
            if not self.release(instance_id, token):
                logger.warning("Flow lock expired before release", extra={"instance_id": instance_id})
