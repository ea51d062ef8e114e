"""Collaborator interfaces the runtime depends on.

Keeping persistence, evidence lookup and dispatch behind these protocols is
what lets the evaluator and planner stay pure.
"""

from __future__ import annotations

from typing import Protocol

from flow_engine.core.types import AvailableInput, FlowDefinition, PlannedJob, StepState
from flow_engine.runtime.records import FlowEventRecord, FlowInstanceRecord, FlowRunRecord


class FlowStore(Protocol):
    """State store keyed by ``(run_id, step_id)`` plus instances, runs and events."""

    def get_instance(self, subject_id: str) -> FlowInstanceRecord | None: ...

    def get_instance_by_id(self, instance_id: str) -> FlowInstanceRecord | None: ...

    def get_or_create_instance(
        self, *, subject_id: str, flow_definition_id: str, definition_json: dict[str, object]
    ) -> FlowInstanceRecord: ...

    def upsert_instance_definition(
        self, *, subject_id: str, flow_definition_id: str, definition_json: dict[str, object]
    ) -> FlowInstanceRecord: ...

    def get_run(self, run_id: str) -> FlowRunRecord | None: ...

    def get_latest_run(self, instance_id: str) -> FlowRunRecord | None: ...

    def find_run(self, instance_id: str, period: str) -> FlowRunRecord | None: ...

    def get_or_create_run(self, *, instance_id: str, period: str) -> FlowRunRecord: ...

    def list_step_states(self, run_id: str) -> list[StepState]: ...

    def upsert_step_states(self, states: list[StepState]) -> None: ...

    def insert_event(
        self,
        *,
        subject_id: str,
        run_id: str | None,
        type: str,
        payload: dict[str, object] | None,
        dedupe_key: str,
    ) -> tuple[FlowEventRecord, bool]:
        """Append an event; returns the stored record and whether it was new."""
        ...

    def list_events(
        self, subject_id: str, *, run_id: str | None = None, limit: int | None = None
    ) -> list[FlowEventRecord]: ...


class EvidenceSource(Protocol):
    """Answers which deliverables already exist out-of-band for a run."""

    def available_inputs(
        self, *, subject_id: str, run_id: str, definition: FlowDefinition
    ) -> list[AvailableInput]: ...


class JobDispatcher(Protocol):
    """Hands planned jobs to the execution layer.

    Implementations must be idempotent on ``PlannedJob.dedupe_key``: the
    runtime dispatches every planned job on every evaluation.
    """

    def dispatch(self, job: PlannedJob) -> bool:
        """Returns True when the job was newly accepted."""
        ...
