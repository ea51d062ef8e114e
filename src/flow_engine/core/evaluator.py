"""Step evaluation.

``evaluate_flow`` is a pure function of its arguments: it performs no I/O,
keeps no state between calls and never raises for missing or conflicting data.
The runtime may call it on every state change, on a timer, or concurrently for
many runs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from flow_engine.core.types import (
    AvailableInput,
    BlockedReason,
    EvaluateResult,
    FlowDefinition,
    StepDefinition,
    StepState,
    StepStatus,
    StepType,
)

logger = logging.getLogger(__name__)


def collapse_states(states: Iterable[StepState]) -> dict[tuple[str, str], StepState]:
    """Index states by ``(run_id, step_id)``.

    Conflicting records for the same pair are resolved by status precedence
    (``done > ready > blocked``); among records with the same status the one
    with the latest ``updated_at`` is kept, so the result does not depend on
    the order the caller passed them in.
    """

    out: dict[tuple[str, str], StepState] = {}
    for state in states:
        key = (state.run_id, state.step_id)
        existing = out.get(key)
        if existing is None or _wins(state, existing):
            out[key] = state
    return out


def _wins(candidate: StepState, existing: StepState) -> bool:
    if candidate.status.precedence != existing.status.precedence:
        return candidate.status.precedence > existing.status.precedence
    return (candidate.updated_at or "") > (existing.updated_at or "")


def _infer_run_id(states: Iterable[StepState]) -> str:
    run_ids = sorted({state.run_id for state in states if state.run_id})
    if len(run_ids) > 1:
        logger.debug("Multiple run ids in current states", extra={"run_ids": run_ids})
    return run_ids[0] if run_ids else ""


def _status_for(
    step: StepDefinition,
    computed: dict[str, StepStatus],
    has_input: bool,
) -> tuple[StepStatus, BlockedReason | None]:
    if has_input:
        return StepStatus.DONE, None

    deps_done = all(computed.get(dep) is StepStatus.DONE for dep in step.requires)
    if step.type is StepType.INPUT and step.required:
        return StepStatus.BLOCKED, BlockedReason.INPUT_MISSING
    if deps_done:
        return StepStatus.READY, None
    return StepStatus.BLOCKED, BlockedReason.DEPENDENCIES_MISSING


def evaluate_flow(
    definition: FlowDefinition,
    current_states: Iterable[StepState],
    available_inputs: Iterable[AvailableInput],
    *,
    run_id: str | None = None,
) -> EvaluateResult:
    """Compute the status of every step of ``definition`` for one run.

    Per step, in dependency order:

    1. a recorded ``done`` state stays ``done``;
    2. an available input makes the step ``done``;
    3. a step whose dependencies are all ``done`` is ``ready``;
    4. anything else is ``blocked``.

    Required ``input`` steps are only ever satisfied by evidence (1 or 2).

    Args:
        definition: A resolved definition.
        current_states: Recorded states for the run. Records for other runs
            and for steps unknown to the definition are ignored.
        available_inputs: Out-of-band evidence. Inputs scoped to another run
            are ignored; inputs without a run apply to every run.
        run_id: The run being evaluated. Defaults to the run of the recorded
            states, or an empty string when there are none.
    """

    states = list(current_states)
    effective_run = run_id if run_id is not None else _infer_run_id(states)

    # Run-less records apply to every run and compete with run-scoped ones.
    recorded: dict[str, StepState] = {}
    for (state_run, step_id), state in collapse_states(states).items():
        if state_run != effective_run and state_run:
            continue
        prev = recorded.get(step_id)
        recorded[step_id] = state if prev is None or _wins(state, prev) else prev
    evidence: dict[str, AvailableInput] = {}
    for item in available_inputs:
        if item.run_id is not None and item.run_id != effective_run:
            continue
        evidence.setdefault(item.step_id, item)

    computed: dict[str, StepStatus] = {}
    out: list[StepState] = []
    for step in definition.ordered_steps():
        current = recorded.get(step.id)
        if current is not None and current.status is StepStatus.DONE:
            computed[step.id] = StepStatus.DONE
            out.append(
                StepState(
                    run_id=effective_run,
                    step_id=step.id,
                    status=StepStatus.DONE,
                    reason=None,
                    inputs=current.inputs,
                    outputs=current.outputs,
                    updated_at=current.updated_at,
                )
            )
            continue

        available = evidence.get(step.id)
        status, reason = _status_for(step, computed, available is not None)
        computed[step.id] = status
        out.append(
            StepState(
                run_id=effective_run,
                step_id=step.id,
                status=status,
                reason=reason.value if reason is not None else None,
                inputs=available.data if available is not None else None,
                outputs=current.outputs if current is not None else None,
            )
        )

    return EvaluateResult(states=tuple(out))
