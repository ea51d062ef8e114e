"""Value types shared by the definition resolver, the evaluator and the planner.

All types are frozen so a resolved definition (and its cached topological
order) can be shared across threads and evaluations without copying.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class StepType(str, Enum):
    INPUT = "input"
    GENERATE = "generate"


class StepMode(str, Enum):
    HUMAN_INPUT = "human_input"
    AUTO = "auto"


class StepStatus(str, Enum):
    BLOCKED = "blocked"
    READY = "ready"
    DONE = "done"

    @property
    def precedence(self) -> int:
        return _PRECEDENCE[self]

    @classmethod
    def strongest(cls, a: StepStatus, b: StepStatus) -> StepStatus:
        """Return whichever status wins under ``done > ready > blocked``."""

        return a if a.precedence >= b.precedence else b


_PRECEDENCE: dict[StepStatus, int] = {
    StepStatus.BLOCKED: 0,
    StepStatus.READY: 1,
    StepStatus.DONE: 2,
}


class BlockedReason(str, Enum):
    INPUT_MISSING = "input_missing"
    DEPENDENCIES_MISSING = "dependencies_missing"


@dataclass(frozen=True, slots=True)
class StepDefinition:
    id: str
    type: StepType = StepType.GENERATE
    requires: tuple[str, ...] = ()
    mode: StepMode = StepMode.HUMAN_INPUT
    required: bool = True
    job_type: str | None = None
    outputs: tuple[str, ...] = ()
    doc_kinds: tuple[str, ...] = ()

    @property
    def automation(self) -> str | None:
        """Job type to enqueue when the step becomes ready, if any.

        An explicit ``job_type`` wins; otherwise ``generate`` steps running in
        ``auto`` mode get ``generate_<id>``. Everything else is manual.
        """

        if self.job_type:
            return self.job_type
        if self.type is StepType.GENERATE and self.mode is StepMode.AUTO:
            return f"generate_{self.id}"
        return None

    @property
    def is_automatable(self) -> bool:
        return self.automation is not None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "id": self.id,
            "type": self.type.value,
            "requires": list(self.requires),
            "mode": self.mode.value,
            "required": self.required,
        }
        if self.job_type is not None:
            out["job_type"] = self.job_type
        if self.outputs:
            out["outputs"] = list(self.outputs)
        if self.doc_kinds:
            out["doc_kinds"] = list(self.doc_kinds)
        return out


@dataclass(frozen=True, slots=True)
class FlowDefinition:
    """A validated flow.

    Instances are built by :func:`flow_engine.core.definition.resolve`, which
    guarantees unique ids, resolvable dependencies, an acyclic graph and a
    ``order`` listing every step id with dependencies first.
    """

    id: str
    name: str
    steps: tuple[StepDefinition, ...]
    order: tuple[str, ...]
    run_key: str = "period"
    dependents: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def step(self, step_id: str) -> StepDefinition | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ordered_steps(self) -> list[StepDefinition]:
        by_id = {step.id: step for step in self.steps}
        return [by_id[step_id] for step_id in self.order]

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "run_key": self.run_key,
            "steps": [step.to_json() for step in self.steps],
        }


@dataclass(frozen=True, slots=True)
class StepState:
    run_id: str
    step_id: str
    status: StepStatus
    reason: str | dict[str, object] | None = None
    inputs: dict[str, object] | None = None
    outputs: dict[str, object] | None = None
    updated_at: str | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "run_id": self.run_id,
            "step_id": self.step_id,
            "status": self.status.value,
        }
        if self.reason is not None:
            out["reason"] = self.reason
        if self.inputs is not None:
            out["inputs"] = self.inputs
        if self.outputs is not None:
            out["outputs"] = self.outputs
        if self.updated_at is not None:
            out["updated_at"] = self.updated_at
        return out

    @staticmethod
    def from_json(obj: Mapping[str, object]) -> StepState:
        def _dict(v: object) -> dict[str, object] | None:
            return dict(v) if isinstance(v, Mapping) else None

        reason_raw = obj.get("reason")
        reason: str | dict[str, object] | None
        if isinstance(reason_raw, str):
            reason = reason_raw
        else:
            reason = _dict(reason_raw)
        updated_raw = obj.get("updated_at")
        return StepState(
            run_id=str(obj.get("run_id") or ""),
            step_id=str(obj["step_id"]),
            status=StepStatus(obj.get("status", StepStatus.BLOCKED.value)),
            reason=reason,
            inputs=_dict(obj.get("inputs")),
            outputs=_dict(obj.get("outputs")),
            updated_at=updated_raw if isinstance(updated_raw, str) else None,
        )


@dataclass(frozen=True, slots=True)
class AvailableInput:
    """Evidence that a step's deliverable already exists out-of-band.

    ``run_id`` of ``None`` means the evidence is not tied to a particular run.
    """

    step_id: str
    run_id: str | None = None
    data: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class PlannedJob:
    type: str
    step_id: str
    run_id: str
    payload: dict[str, object] | None = None

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.run_id, self.step_id, self.type)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "type": self.type,
            "step_id": self.step_id,
            "run_id": self.run_id,
        }
        if self.payload is not None:
            out["payload"] = self.payload
        return out


@dataclass(frozen=True, slots=True)
class EvaluateResult:
    states: tuple[StepState, ...]

    def status_of(self, step_id: str) -> StepStatus | None:
        for state in self.states:
            if state.step_id == step_id:
                return state.status
        return None
