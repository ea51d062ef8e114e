"""Effectful wrapper around the pure core.

The runtime owns everything the evaluator and planner must not do: loading
and persisting state, folding the event log into states and evidence, holding
the per-instance lock and handing jobs to the dispatcher. An evaluation pass
is idempotent, so a crash anywhere in it is recovered by running it again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from flow_engine.core.definition import FlowDefinitionInput, resolve
from flow_engine.core.evaluator import collapse_states, evaluate_flow
from flow_engine.core.planner import plan_jobs
from flow_engine.core.types import (
    AvailableInput,
    FlowDefinition,
    PlannedJob,
    StepState,
    StepStatus,
    StepType,
)
from flow_engine.runtime.actions import event_type_for_action
from flow_engine.runtime.events import (
    GENERATE_REQUESTED_SUFFIX,
    JOB_COMPLETED,
    JOB_PLANNED,
    MARKED_SUFFIX,
    SUBMITTED_SUFFIX,
    FlowEvent,
    step_event,
)
from flow_engine.runtime.idempotency import build_dedupe_key, job_planned_key
from flow_engine.runtime.locks import FlowLockManager
from flow_engine.runtime.ports import EvidenceSource, FlowStore, JobDispatcher
from flow_engine.runtime.records import FlowEventRecord, FlowInstanceRecord, FlowRunRecord

logger = logging.getLogger(__name__)


def format_period(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m")


@dataclass(frozen=True, slots=True)
class FlowState:
    definition: FlowDefinition
    instance_id: str
    run: FlowRunRecord | None
    steps: list[StepState]
    planned_jobs: list[PlannedJob]

    def to_json(self) -> dict[str, object]:
        return {
            "definition_id": self.definition.id,
            "instance_id": self.instance_id,
            "run": self.run.model_dump(mode="json") if self.run is not None else None,
            "steps": [state.to_json() for state in self.steps],
            "planned_jobs": [job.to_json() for job in self.planned_jobs],
        }


def _latest(events: Sequence[FlowEventRecord], type_: str) -> FlowEventRecord | None:
    for event in reversed(events):
        if event.type == type_:
            return event
    return None


def derive_available_inputs(
    definition: FlowDefinition, events: Sequence[FlowEventRecord], run_id: str
) -> list[AvailableInput]:
    """Evidence from ``<step>.marked`` events of ``input`` steps."""

    inputs: list[AvailableInput] = []
    for step in definition.ordered_steps():
        if step.type is not StepType.INPUT:
            continue
        marked = _latest(events, step_event(step.id, MARKED_SUFFIX))
        if marked is not None:
            inputs.append(AvailableInput(step_id=step.id, run_id=run_id, data=marked.payload))
    return inputs


def fold_completions(
    definition: FlowDefinition,
    states: Iterable[StepState],
    events: Sequence[FlowEventRecord],
    run_id: str,
) -> list[StepState]:
    """Add ``done`` states for submitted steps and completed jobs.

    The folded states are appended rather than substituted; precedence in the
    evaluator takes care of any conflict with what was persisted.
    """

    out = list(states)
    known = {step.id for step in definition.steps}
    for step in definition.ordered_steps():
        submitted = _latest(events, step_event(step.id, SUBMITTED_SUFFIX))
        if submitted is not None:
            out.append(
                StepState(
                    run_id=run_id,
                    step_id=step.id,
                    status=StepStatus.DONE,
                    outputs=submitted.payload,
                    updated_at=submitted.created_at,
                )
            )

    for event in events:
        if event.type != JOB_COMPLETED or not event.payload:
            continue
        step_id = event.payload.get("step_id")
        if not isinstance(step_id, str) or step_id not in known:
            continue
        outputs = event.payload.get("outputs")
        out.append(
            StepState(
                run_id=run_id,
                step_id=step_id,
                status=StepStatus.DONE,
                outputs=outputs if isinstance(outputs, dict) else None,
                updated_at=event.created_at,
            )
        )
    return out


def _stamp(
    states: Iterable[StepState], previous: dict[str, StepState], now_iso: str
) -> list[StepState]:
    stamped: list[StepState] = []
    for state in states:
        prev = previous.get(state.step_id)
        unchanged = prev is not None and (
            prev.status,
            prev.reason,
            prev.inputs,
            prev.outputs,
        ) == (state.status, state.reason, state.inputs, state.outputs)
        if unchanged and prev is not None and prev.updated_at:
            stamped.append(replace(state, updated_at=prev.updated_at))
        else:
            stamped.append(replace(state, updated_at=now_iso))
    return stamped


class FlowRuntime:
    def __init__(
        self,
        store: FlowStore,
        *,
        dispatcher: JobDispatcher | None = None,
        evidence: Sequence[EvidenceSource] = (),
        locks: FlowLockManager | None = None,
        default_definition: FlowDefinitionInput | None = None,
        lock_ttl_seconds: float | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.evidence = list(evidence)
        self.locks = locks or FlowLockManager()
        self.default_definition = resolve(default_definition)
        self.lock_ttl_seconds = lock_ttl_seconds
        self._now = now or (lambda: datetime.now(tz=UTC))

    # -- instances ----------------------------------------------------------

    def definition_for(self, instance: FlowInstanceRecord | None) -> FlowDefinition:
        if instance is None or not instance.definition_json:
            return self.default_definition
        return resolve(instance.definition_json)

    def init_flow_instance(
        self, subject_id: str, definition: FlowDefinitionInput | None = None
    ) -> FlowInstanceRecord:
        resolved = self.default_definition if definition is None else resolve(definition)
        return self.store.get_or_create_instance(
            subject_id=subject_id,
            flow_definition_id=resolved.id,
            definition_json=resolved.to_json(),
        )

    def set_flow_definition(
        self, subject_id: str, definition: FlowDefinitionInput
    ) -> FlowInstanceRecord:
        """Replace the definition of a subject's flow instance.

        Raises:
            DefinitionError: if the definition is invalid; nothing is stored.
        """

        resolved = resolve(definition)
        record = self.store.upsert_instance_definition(
            subject_id=subject_id,
            flow_definition_id=resolved.id,
            definition_json=resolved.to_json(),
        )
        logger.info(
            "Flow definition set",
            extra={"subject_id": subject_id, "flow_definition_id": resolved.id},
        )
        return record

    # -- events -------------------------------------------------------------

    def emit_event(self, subject_id: str, event: FlowEvent) -> FlowEventRecord:
        instance = self.init_flow_instance(subject_id)

        run_id = event.run_id
        if run_id is None and event.period:
            run_id = self.store.get_or_create_run(instance_id=instance.id, period=event.period).id

        dedupe_key = build_dedupe_key(replace(event, run_id=run_id))
        record, created = self.store.insert_event(
            subject_id=subject_id,
            run_id=run_id,
            type=event.type,
            payload=event.payload,
            dedupe_key=dedupe_key,
        )
        if not created:
            logger.debug(
                "Duplicate event ignored",
                extra={"subject_id": subject_id, "event_type": event.type, "dedupe_key": dedupe_key},
            )
        return record

    def apply_action(
        self,
        subject_id: str,
        period: str,
        action: str,
        payload: dict[str, object] | None = None,
    ) -> FlowState:
        """Record the event behind ``action`` and re-evaluate the run.

        Raises:
            UnknownActionError: if the action does not apply to the flow.
        """

        definition = self.definition_for(self.store.get_instance(subject_id))
        event_type = event_type_for_action(definition, action)
        if event_type is not None:
            self.emit_event(subject_id, FlowEvent(type=event_type, period=period, payload=payload))
        return self.evaluate(subject_id, period)

    # -- evaluation ---------------------------------------------------------

    def _collect_evidence(
        self, subject_id: str, run_id: str, definition: FlowDefinition
    ) -> list[AvailableInput]:
        found: list[AvailableInput] = []
        for source in self.evidence:
            found.extend(
                source.available_inputs(subject_id=subject_id, run_id=run_id, definition=definition)
            )
        return found

    def evaluate(self, subject_id: str, period: str | None = None) -> FlowState:
        """Evaluate one run, persist its states and dispatch its jobs.

        Raises:
            FlowLockUnavailable: if another evaluation holds the instance lock.
        """

        instance = self.init_flow_instance(subject_id)
        definition = self.definition_for(instance)

        with self.locks.hold(instance.id, self.lock_ttl_seconds):
            run = self.store.get_or_create_run(
                instance_id=instance.id, period=period or format_period(self._now())
            )
            events = self.store.list_events(subject_id, run_id=run.id)
            persisted = self.store.list_step_states(run.id)
            previous = {
                step_id: state for (_, step_id), state in collapse_states(persisted).items()
            }

            current = fold_completions(definition, persisted, events, run.id)
            available = derive_available_inputs(definition, events, run.id)
            available.extend(self._collect_evidence(subject_id, run.id, definition))

            result = evaluate_flow(definition, current, available, run_id=run.id)
            states = _stamp(result.states, previous, self._now().isoformat())
            self.store.upsert_step_states(states)

            jobs = [self._with_request_payload(job, events) for job in plan_jobs(definition, states)]
            for job in jobs:
                self.store.insert_event(
                    subject_id=subject_id,
                    run_id=run.id,
                    type=JOB_PLANNED,
                    payload={"job_type": job.type, "step_id": job.step_id},
                    dedupe_key=job_planned_key(run.id, job.step_id),
                )
                if self.dispatcher is not None:
                    self.dispatcher.dispatch(job)

        logger.info(
            "Evaluated flow run",
            extra={
                "subject_id": subject_id,
                "run_id": run.id,
                "period": run.period,
                "statuses": {state.step_id: state.status.value for state in states},
                "planned_jobs": [job.type for job in jobs],
            },
        )
        return FlowState(
            definition=definition,
            instance_id=instance.id,
            run=run,
            steps=states,
            planned_jobs=jobs,
        )

    @staticmethod
    def _with_request_payload(job: PlannedJob, events: Sequence[FlowEventRecord]) -> PlannedJob:
        requested = _latest(events, step_event(job.step_id, GENERATE_REQUESTED_SUFFIX))
        if requested is None or requested.payload is None:
            return job
        return replace(job, payload=requested.payload)

    def get_flow_state(self, subject_id: str, period: str | None = None) -> FlowState:
        """Snapshot of persisted states without evaluating."""

        instance = self.store.get_instance(subject_id)
        definition = self.definition_for(instance)
        if instance is None:
            return FlowState(
                definition=definition, instance_id="", run=None, steps=[], planned_jobs=[]
            )

        if period:
            run = self.store.find_run(instance.id, period)
        else:
            run = self.store.get_latest_run(instance.id)
        if run is None:
            return FlowState(
                definition=definition, instance_id=instance.id, run=None, steps=[], planned_jobs=[]
            )

        collapsed = collapse_states(self.store.list_step_states(run.id))
        order = {step_id: idx for idx, step_id in enumerate(definition.order)}
        steps = sorted(
            (state for (_, step_id), state in collapsed.items() if step_id in order),
            key=lambda s: order[s.step_id],
        )
        return FlowState(
            definition=definition, instance_id=instance.id, run=run, steps=steps, planned_jobs=[]
        )

    # -- dispatcher feedback ------------------------------------------------

    def report_job_completed(
        self, run_id: str, step_id: str, outputs: dict[str, object] | None = None
    ) -> StepState:
        """Record that the job for ``step_id`` finished.

        Runs under the instance lock, like :meth:`evaluate`; nothing is
        recorded when the lock is taken and the caller should retry.

        Raises:
            KeyError: if the run is unknown.
            FlowLockUnavailable: if an evaluation holds the instance lock.
        """

        run = self.store.get_run(run_id)
        if run is None:
            raise KeyError(run_id)
        instance = self.store.get_instance_by_id(run.instance_id)
        if instance is None:
            raise KeyError(run.instance_id)

        with self.locks.hold(instance.id, self.lock_ttl_seconds):
            self.store.insert_event(
                subject_id=instance.subject_id,
                run_id=run_id,
                type=JOB_COMPLETED,
                payload={"step_id": step_id, "outputs": outputs},
                dedupe_key=f"job-completed:{run_id}:{step_id}",
            )
            state = StepState(
                run_id=run_id,
                step_id=step_id,
                status=StepStatus.DONE,
                outputs=outputs,
                updated_at=self._now().isoformat(),
            )
            self.store.upsert_step_states([state])
        logger.info("Job completed", extra={"run_id": run_id, "step_id": step_id})
        return state
