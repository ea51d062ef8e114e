"""Runtime around the pure core.

This package owns every side effect of a flow evaluation:
- persistence of instances, runs, step states and events (``store``)
- folding events into step states and available inputs (``runtime``)
- per-instance locking (``locks``) and event dedupe keys (``idempotency``)
- handing planned jobs to a dispatcher (``dispatch``)
"""

from flow_engine.runtime.actions import UnknownActionError, derive_actions
from flow_engine.runtime.events import FlowEvent
from flow_engine.runtime.locks import FlowLockManager, FlowLockUnavailable
from flow_engine.runtime.runtime import FlowRuntime, FlowState
from flow_engine.runtime.store import JsonFlowStore

__all__ = [
    "FlowEvent",
    "FlowLockManager",
    "FlowLockUnavailable",
    "FlowRuntime",
    "FlowState",
    "JsonFlowStore",
    "UnknownActionError",
    "derive_actions",
]
