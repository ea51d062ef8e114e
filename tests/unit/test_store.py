"""Unit tests for the JSON-file flow store."""

from __future__ import annotations

from flow_engine.core.types import StepState, StepStatus
from flow_engine.runtime.store import JsonFlowStore


def test_instance_get_or_create_is_idempotent(store: JsonFlowStore) -> None:
    assert store.get_instance("obra-1") is None

    first = store.get_or_create_instance(
        subject_id="obra-1", flow_definition_id="pmc_v1", definition_json={"id": "pmc_v1"}
    )
    second = store.get_or_create_instance(
        subject_id="obra-1", flow_definition_id="other", definition_json={"id": "other"}
    )

    assert first.id == second.id
    assert second.flow_definition_id == "pmc_v1"
    assert store.get_instance_by_id(first.id) == first


def test_upsert_instance_definition_replaces_definition(store: JsonFlowStore) -> None:
    created = store.get_or_create_instance(
        subject_id="obra-1", flow_definition_id="pmc_v1", definition_json={"id": "pmc_v1"}
    )
    updated = store.upsert_instance_definition(
        subject_id="obra-1", flow_definition_id="custom", definition_json={"id": "custom"}
    )
    assert updated.id == created.id
    assert store.get_instance("obra-1").definition_json == {"id": "custom"}


def test_runs_are_unique_per_period(store: JsonFlowStore) -> None:
    jan = store.get_or_create_run(instance_id="i", period="2025-01")
    assert store.get_or_create_run(instance_id="i", period="2025-01").id == jan.id
    feb = store.get_or_create_run(instance_id="i", period="2025-02")

    assert feb.id != jan.id
    assert store.get_run(jan.id) == jan
    assert store.get_latest_run("i").id == feb.id
    assert store.get_latest_run("missing") is None


def test_step_states_upsert_by_run_and_step(store: JsonFlowStore) -> None:
    store.upsert_step_states(
        [
            StepState(run_id="r1", step_id="a", status=StepStatus.READY),
            StepState(run_id="r2", step_id="a", status=StepStatus.BLOCKED),
        ]
    )
    store.upsert_step_states(
        [StepState(run_id="r1", step_id="a", status=StepStatus.DONE, outputs={"n": 1})]
    )

    r1 = store.list_step_states("r1")
    assert r1 == [StepState(run_id="r1", step_id="a", status=StepStatus.DONE, outputs={"n": 1})]
    assert [s.status for s in store.list_step_states("r2")] == [StepStatus.BLOCKED]


def test_events_are_deduplicated_per_subject(store: JsonFlowStore) -> None:
    first, created = store.insert_event(
        subject_id="obra-1", run_id="r", type="x", payload={"a": 1}, dedupe_key="k"
    )
    again, created_again = store.insert_event(
        subject_id="obra-1", run_id="r", type="x", payload={"a": 2}, dedupe_key="k"
    )
    _, other_subject = store.insert_event(
        subject_id="obra-2", run_id="r", type="x", payload=None, dedupe_key="k"
    )

    assert created and not created_again and other_subject
    assert again.id == first.id
    assert again.payload == {"a": 1}


def test_list_events_filters_and_limits(store: JsonFlowStore) -> None:
    for idx in range(5):
        store.insert_event(
            subject_id="obra-1",
            run_id="r1" if idx % 2 == 0 else "r2",
            type=f"e{idx}",
            payload=None,
            dedupe_key=f"k{idx}",
        )

    assert [e.type for e in store.list_events("obra-1")] == ["e0", "e1", "e2", "e3", "e4"]
    assert [e.type for e in store.list_events("obra-1", run_id="r2")] == ["e1", "e3"]
    assert [e.type for e in store.list_events("obra-1", limit=2)] == ["e3", "e4"]
    assert store.list_events("obra-1", limit=0) == []
    assert store.list_events("nobody") == []


def test_corrupt_file_reads_as_empty(store: JsonFlowStore) -> None:
    store.root.mkdir(parents=True)
    store.events_file.write_text("{oops", encoding="utf-8")
    assert store.list_events("obra-1") == []
