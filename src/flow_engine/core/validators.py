"""Non-raising validation of raw flow definition documents.

Used where a user-supplied definition must be checked and reported on (the
definition API) rather than rejected at startup.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from flow_engine.core.definition import DefinitionError, build_definition
from flow_engine.core.types import StepType

_STEP_TYPES = {t.value for t in StepType}


@dataclass(frozen=True, slots=True)
class FlowDefinitionValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _validate_step(step: object, index: int) -> list[str]:
    if not isinstance(step, Mapping):
        return [f"steps[{index}] must be an object"]
    errors: list[str] = []
    step_id = step.get("id")
    if not isinstance(step_id, str) or not step_id:
        errors.append(f"steps[{index}].id is required")
    if step.get("type") not in _STEP_TYPES:
        errors.append(f"steps[{index}].type must be input or generate")
    requires = step.get("requires")
    if requires is not None and not isinstance(requires, list):
        errors.append(f"steps[{index}].requires must be an array")
    if "required" in step and not isinstance(step["required"], bool):
        errors.append(f"steps[{index}].required must be a boolean")
    return errors


def validate_flow_definition(definition: object) -> FlowDefinitionValidation:
    if not isinstance(definition, Mapping):
        return FlowDefinitionValidation(valid=False, errors=["definition is required"])

    errors: list[str] = []
    if not definition.get("id"):
        errors.append("id is required")
    if not definition.get("name"):
        errors.append("name is required")
    run_key = definition.get("run_key", definition.get("runKey"))
    if run_key != "period":
        errors.append("run_key must be period")

    steps = definition.get("steps")
    if not isinstance(steps, list) or not steps:
        errors.append("steps must be a non-empty array")
    else:
        seen: set[str] = set()
        for index, step in enumerate(steps):
            errors.extend(_validate_step(step, index))
            step_id = step.get("id") if isinstance(step, Mapping) else None
            if isinstance(step_id, str) and step_id:
                if step_id in seen:
                    errors.append(f"duplicate step id: {step_id}")
                seen.add(step_id)

    if not errors:
        # Structure is sound; the graph checks live in the resolver.
        try:
            build_definition(definition)
        except DefinitionError as e:
            errors.extend(e.errors)

    return FlowDefinitionValidation(valid=not errors, errors=errors)
