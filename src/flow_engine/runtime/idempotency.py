"""Deterministic dedupe keys for flow events."""

from __future__ import annotations

import hashlib
import json

from flow_engine.runtime.events import FlowEvent


def stable_json(value: object) -> str:
    """Serialise ``value`` with sorted keys so equal payloads hash equally."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def build_dedupe_key(event: FlowEvent) -> str:
    if event.dedupe_key:
        return event.dedupe_key
    raw = f"{event.type}:{event.run_id or 'global'}:{stable_json(event.payload)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def job_planned_key(run_id: str, step_id: str) -> str:
    return f"job:{run_id}:{step_id}"
