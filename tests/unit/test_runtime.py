"""Unit tests for the flow runtime.

These exercise the full evaluate -> persist -> plan -> dispatch cycle against
the JSON store, including re-runs and completion feedback.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from flow_engine.core.definition import DefinitionError
from flow_engine.core.types import AvailableInput, FlowDefinition, PlannedJob, StepState, StepStatus
from flow_engine.runtime import FlowEvent, FlowLockUnavailable, FlowRuntime, UnknownActionError
from flow_engine.runtime.dispatch import InMemoryJobDispatcher
from flow_engine.runtime.runtime import format_period
from flow_engine.runtime.store import JsonFlowStore


def _statuses(state) -> dict[str, str]:
    return {s.step_id: s.status.value for s in state.steps}


def test_first_evaluation_creates_instance_and_run(runtime: FlowRuntime) -> None:
    state = runtime.evaluate("obra-1")

    assert state.run is not None
    assert state.run.period == "2025-03"
    assert state.instance_id
    assert _statuses(state) == {
        "budget_base": "blocked",
        "measurement": "blocked",
        "certificate": "blocked",
    }
    assert state.planned_jobs == []
    assert runtime.store.list_step_states(state.run.id) == state.steps


def test_pmc_flow_end_to_end(runtime: FlowRuntime, dispatcher: InMemoryJobDispatcher) -> None:
    state = runtime.apply_action("obra-1", "2025-01", "mark_budget_base", {"file": "p.xlsx"})
    assert _statuses(state) == {
        "budget_base": "done",
        "measurement": "ready",
        "certificate": "blocked",
    }
    assert state.steps[0].inputs == {"file": "p.xlsx"}

    state = runtime.apply_action("obra-1", "2025-01", "submit_measurement", {"rows": [1, 2]})
    assert _statuses(state)["certificate"] == "ready"
    assert state.steps[1].outputs == {"rows": [1, 2]}

    run_id = state.run.id
    expected = PlannedJob(type="generate_certificate", step_id="certificate", run_id=run_id)
    assert state.planned_jobs == [expected]
    assert dispatcher.jobs == [expected]

    # Re-evaluating plans the same job again; the dispatcher drops the duplicate.
    again = runtime.evaluate("obra-1", "2025-01")
    assert again.planned_jobs == [expected]
    assert dispatcher.jobs == [expected]
    planned_events = [
        e for e in runtime.store.list_events("obra-1", run_id=run_id) if e.type == "job.planned"
    ]
    assert len(planned_events) == 1
    assert planned_events[0].dedupe_key == f"job:{run_id}:certificate"

    runtime.report_job_completed(run_id, "certificate", {"certificate_xlsx": "c.xlsx"})
    final = runtime.evaluate("obra-1", "2025-01")
    assert _statuses(final) == {"budget_base": "done", "measurement": "done", "certificate": "done"}
    assert final.planned_jobs == []
    assert final.steps[2].outputs == {"certificate_xlsx": "c.xlsx"}


def test_runs_are_independent_per_period(runtime: FlowRuntime) -> None:
    runtime.apply_action("obra-1", "2025-01", "mark_budget_base")
    other = runtime.evaluate("obra-1", "2025-02")
    assert _statuses(other)["budget_base"] == "blocked"


def test_done_steps_stay_done_across_evaluations(runtime: FlowRuntime) -> None:
    state = runtime.apply_action("obra-1", "2025-01", "mark_budget_base")
    run_id = state.run.id
    runtime.report_job_completed(run_id, "measurement")

    for _ in range(2):
        state = runtime.evaluate("obra-1", "2025-01")
        assert _statuses(state)["measurement"] == "done"


def test_updated_at_only_moves_on_change(store: JsonFlowStore) -> None:
    clock = {"now": datetime(2025, 1, 10, tzinfo=UTC)}
    runtime = FlowRuntime(store, now=lambda: clock["now"])

    first = runtime.evaluate("obra-1", "2025-01")
    clock["now"] = datetime(2025, 1, 11, tzinfo=UTC)
    second = runtime.apply_action("obra-1", "2025-01", "mark_budget_base")

    stamps = {s.step_id: s.updated_at for s in second.steps}
    before = {s.step_id: s.updated_at for s in first.steps}
    assert stamps["budget_base"] != before["budget_base"]
    assert stamps["measurement"] != before["measurement"]
    assert stamps["certificate"] == before["certificate"]


def test_emit_event_is_deduplicated(runtime: FlowRuntime) -> None:
    event = FlowEvent(type="budget_base.marked", period="2025-01", payload={"a": 1})
    first = runtime.emit_event("obra-1", event)
    second = runtime.emit_event("obra-1", event)

    assert first.id == second.id
    assert first.run_id is not None
    assert len(runtime.store.list_events("obra-1")) == 1


def test_unknown_action_is_rejected(runtime: FlowRuntime) -> None:
    with pytest.raises(UnknownActionError):
        runtime.apply_action("obra-1", "2025-01", "launch_rockets")


def test_open_period_records_nothing(runtime: FlowRuntime) -> None:
    state = runtime.apply_action("obra-1", "2025-04", "open_period")
    assert state.run.period == "2025-04"
    assert runtime.store.list_events("obra-1") == []


def test_generate_request_payload_is_attached_to_job(runtime: FlowRuntime) -> None:
    runtime.apply_action("obra-1", "2025-01", "mark_budget_base")
    runtime.emit_event(
        "obra-1",
        FlowEvent(type="certificate.generate.requested", period="2025-01", payload={"lang": "es"}),
    )
    state = runtime.apply_action("obra-1", "2025-01", "submit_measurement")
    assert state.planned_jobs[0].payload == {"lang": "es"}


def test_evaluate_fails_fast_when_instance_is_locked(runtime: FlowRuntime) -> None:
    instance = runtime.init_flow_instance("obra-1")
    with runtime.locks.hold(instance.id):
        with pytest.raises(FlowLockUnavailable):
            runtime.evaluate("obra-1", "2025-01")


def test_evidence_sources_are_consulted(store: JsonFlowStore) -> None:
    class UploadedBudget:
        def available_inputs(
            self, *, subject_id: str, run_id: str, definition: FlowDefinition
        ) -> list[AvailableInput]:
            return [AvailableInput(step_id="budget_base", run_id=run_id, data={"source": "ocr"})]

    runtime = FlowRuntime(store, evidence=[UploadedBudget()])
    state = runtime.evaluate("obra-1", "2025-01")
    assert state.steps[0].status is StepStatus.DONE
    assert state.steps[0].inputs == {"source": "ocr"}


def test_set_flow_definition_validates_and_applies(runtime: FlowRuntime) -> None:
    with pytest.raises(DefinitionError):
        runtime.set_flow_definition(
            "obra-1", {"id": "bad", "name": "Bad", "steps": [{"id": "a", "requires": ["a"]}]}
        )
    assert runtime.store.get_instance("obra-1") is None

    runtime.set_flow_definition(
        "obra-1",
        {
            "id": "single",
            "name": "Single",
            "steps": [{"id": "send", "type": "generate", "job_type": "send_email"}],
        },
    )
    state = runtime.evaluate("obra-1", "2025-01")
    assert state.definition.id == "single"
    assert [job.type for job in state.planned_jobs] == ["send_email"]


def test_get_flow_state_reads_without_evaluating(runtime: FlowRuntime) -> None:
    empty = runtime.get_flow_state("obra-1")
    assert empty.instance_id == "" and empty.run is None and empty.steps == []

    runtime.apply_action("obra-1", "2025-01", "mark_budget_base")
    snapshot = runtime.get_flow_state("obra-1")
    assert snapshot.run.period == "2025-01"
    assert [s.step_id for s in snapshot.steps] == ["budget_base", "measurement", "certificate"]
    assert snapshot.planned_jobs == []


def test_report_job_completed_for_unknown_run(runtime: FlowRuntime) -> None:
    with pytest.raises(KeyError):
        runtime.report_job_completed("missing", "certificate")


def test_format_period_uses_utc() -> None:
    assert format_period(datetime(2025, 12, 31, 23, 30, tzinfo=UTC)) == "2025-12"


def test_completion_cannot_interleave_with_evaluation(tmp_path: Path) -> None:
    class InterleavingStore(JsonFlowStore):
        runtime: FlowRuntime
        armed = False
        rejected = 0

        def upsert_step_states(self, states: list[StepState]) -> None:
            if self.armed:
                self.armed = False
                try:
                    self.runtime.report_job_completed(states[0].run_id, "certificate")
                except FlowLockUnavailable:
                    self.rejected += 1
            super().upsert_step_states(states)

    store = InterleavingStore(tmp_path / "flow_state")
    runtime = FlowRuntime(store)
    store.runtime = runtime
    runtime.apply_action("obra-1", "2025-01", "mark_budget_base")

    store.armed = True
    run_id = runtime.apply_action("obra-1", "2025-01", "submit_measurement").run.id
    assert store.rejected == 1
    assert all(e.type != "job.completed" for e in store.list_events("obra-1", run_id=run_id))

    runtime.report_job_completed(run_id, "certificate")
    persisted = {s.step_id: s.status for s in store.list_step_states(run_id)}
    assert persisted["certificate"] is StepStatus.DONE
    assert _statuses(runtime.evaluate("obra-1", "2025-01"))["certificate"] == "done"


def test_report_job_completed_fails_fast_when_locked(runtime: FlowRuntime) -> None:
    run_id = runtime.apply_action("obra-1", "2025-01", "mark_budget_base").run.id
    instance = runtime.init_flow_instance("obra-1")
    with runtime.locks.hold(instance.id):
        with pytest.raises(FlowLockUnavailable):
            runtime.report_job_completed(run_id, "certificate")
    assert all(e.type != "job.completed" for e in runtime.store.list_events("obra-1"))


def test_get_flow_state_does_not_create_runs(runtime: FlowRuntime) -> None:
    runtime.apply_action("obra-1", "2025-01", "mark_budget_base")
    instance = runtime.init_flow_instance("obra-1")

    snapshot = runtime.get_flow_state("obra-1", "2030-12")
    assert snapshot.run is None and snapshot.steps == []
    assert runtime.store.find_run(instance.id, "2030-12") is None
    assert runtime.store.get_latest_run(instance.id).period == "2025-01"
