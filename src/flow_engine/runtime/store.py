"""Local JSON-file persistence for flow instances, runs, step states and events.

One file per collection under a state directory, rewritten on every change.
This is meant for single-host deployments and tests; a database-backed
:class:`~flow_engine.runtime.ports.FlowStore` can replace it without touching
the runtime.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel

from flow_engine.core.types import StepState
from flow_engine.runtime.records import (
    FlowEventRecord,
    FlowInstanceRecord,
    FlowRunRecord,
    StepStateRecord,
    utc_iso_now,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonFlowStore:
    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.RLock()

    @property
    def instances_file(self) -> Path:
        return self.root / "instances.json"

    @property
    def runs_file(self) -> Path:
        return self.root / "runs.json"

    @property
    def step_states_file(self) -> Path:
        return self.root / "step_states.json"

    @property
    def events_file(self) -> Path:
        return self.root / "events.json"

    # -- file helpers -----------------------------------------------------

    def _load(self, path: Path, model: type[M]) -> list[M]:
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file", extra={"path": str(path)})
            return []
        if not isinstance(raw, list):
            return []
        return [model.model_validate(item) for item in raw]

    def _save(self, path: Path, items: list[M]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = [item.model_dump(mode="json") for item in items]
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

    def _find(self, path: Path, model: type[M], pred: Callable[[M], bool]) -> M | None:
        for item in self._load(path, model):
            if pred(item):
                return item
        return None

    # -- instances ----------------------------------------------------------

    def get_instance(self, subject_id: str) -> FlowInstanceRecord | None:
        with self._lock:
            return self._find(
                self.instances_file, FlowInstanceRecord, lambda i: i.subject_id == subject_id
            )

    def get_instance_by_id(self, instance_id: str) -> FlowInstanceRecord | None:
        with self._lock:
            return self._find(self.instances_file, FlowInstanceRecord, lambda i: i.id == instance_id)

    def get_or_create_instance(
        self, *, subject_id: str, flow_definition_id: str, definition_json: dict[str, object]
    ) -> FlowInstanceRecord:
        with self._lock:
            existing = self.get_instance(subject_id)
            if existing is not None:
                return existing
            instances = self._load(self.instances_file, FlowInstanceRecord)
            record = FlowInstanceRecord(
                id=uuid.uuid4().hex,
                subject_id=subject_id,
                flow_definition_id=flow_definition_id,
                definition_json=definition_json,
            )
            instances.append(record)
            self._save(self.instances_file, instances)
            logger.info(
                "Created flow instance",
                extra={"instance_id": record.id, "subject_id": subject_id},
            )
            return record

    def upsert_instance_definition(
        self, *, subject_id: str, flow_definition_id: str, definition_json: dict[str, object]
    ) -> FlowInstanceRecord:
        with self._lock:
            instances = self._load(self.instances_file, FlowInstanceRecord)
            for idx, instance in enumerate(instances):
                if instance.subject_id != subject_id:
                    continue
                merged = instance.model_copy(
                    update={
                        "flow_definition_id": flow_definition_id,
                        "definition_json": definition_json,
                        "updated_at": utc_iso_now(),
                    }
                )
                instances[idx] = merged
                self._save(self.instances_file, instances)
                return merged
            return self.get_or_create_instance(
                subject_id=subject_id,
                flow_definition_id=flow_definition_id,
                definition_json=definition_json,
            )

    # -- runs ---------------------------------------------------------------

    def get_run(self, run_id: str) -> FlowRunRecord | None:
        with self._lock:
            return self._find(self.runs_file, FlowRunRecord, lambda r: r.id == run_id)

    def get_latest_run(self, instance_id: str) -> FlowRunRecord | None:
        with self._lock:
            runs = [
                run
                for run in self._load(self.runs_file, FlowRunRecord)
                if run.instance_id == instance_id
            ]
            if not runs:
                return None
            return max(runs, key=lambda r: (r.created_at, r.period))

    def find_run(self, instance_id: str, period: str) -> FlowRunRecord | None:
        with self._lock:
            return self._find(
                self.runs_file,
                FlowRunRecord,
                lambda r: r.instance_id == instance_id and r.period == period,
            )

    def get_or_create_run(self, *, instance_id: str, period: str) -> FlowRunRecord:
        with self._lock:
            runs = self._load(self.runs_file, FlowRunRecord)
            for run in runs:
                if run.instance_id == instance_id and run.period == period:
                    return run
            record = FlowRunRecord(id=uuid.uuid4().hex, instance_id=instance_id, period=period)
            runs.append(record)
            self._save(self.runs_file, runs)
            logger.info(
                "Created flow run",
                extra={"run_id": record.id, "instance_id": instance_id, "period": period},
            )
            return record

    # -- step states --------------------------------------------------------

    def list_step_states(self, run_id: str) -> list[StepState]:
        with self._lock:
            return [
                record.to_state()
                for record in self._load(self.step_states_file, StepStateRecord)
                if record.run_id == run_id
            ]

    def upsert_step_states(self, states: list[StepState]) -> None:
        with self._lock:
            records = self._load(self.step_states_file, StepStateRecord)
            index = {(r.run_id, r.step_id): idx for idx, r in enumerate(records)}
            for state in states:
                record = StepStateRecord.from_state(state)
                key = (record.run_id, record.step_id)
                if key in index:
                    records[index[key]] = record
                else:
                    index[key] = len(records)
                    records.append(record)
            self._save(self.step_states_file, records)

    # -- events -------------------------------------------------------------

    def insert_event(
        self,
        *,
        subject_id: str,
        run_id: str | None,
        type: str,
        payload: dict[str, object] | None,
        dedupe_key: str,
    ) -> tuple[FlowEventRecord, bool]:
        with self._lock:
            events = self._load(self.events_file, FlowEventRecord)
            for event in events:
                if event.subject_id == subject_id and event.dedupe_key == dedupe_key:
                    return event, False
            record = FlowEventRecord(
                id=uuid.uuid4().hex,
                subject_id=subject_id,
                run_id=run_id,
                type=type,
                payload=payload,
                dedupe_key=dedupe_key,
            )
            events.append(record)
            self._save(self.events_file, events)
            return record, True

    def list_events(
        self, subject_id: str, *, run_id: str | None = None, limit: int | None = None
    ) -> list[FlowEventRecord]:
        """Events in insertion order; with ``limit``, only the most recent ones."""

        with self._lock:
            events = [
                event
                for event in self._load(self.events_file, FlowEventRecord)
                if event.subject_id == subject_id and (run_id is None or event.run_id == run_id)
            ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
