"""User-facing actions and how they map onto flow events.

Action names are derived from the definition:

- ``open_period``: creates the run, records nothing.
- ``mark_<step>``: supplies evidence for an ``input`` step.
- ``submit_<step>``: completes a human-driven step.
- ``<job type>`` (e.g. ``generate_certificate``): requests the automated job
  of a ready step.
"""

from __future__ import annotations

from collections.abc import Iterable

from flow_engine.core.types import FlowDefinition, StepDefinition, StepState, StepStatus, StepType
from flow_engine.runtime.events import (
    GENERATE_REQUESTED_SUFFIX,
    MARKED_SUFFIX,
    SUBMITTED_SUFFIX,
    step_event,
)

OPEN_PERIOD = "open_period"


class UnknownActionError(ValueError):
    def __init__(self, action: str, supported: Iterable[str] = ()) -> None:
        self.action = action
        self.supported: tuple[str, ...] = tuple(supported)
        message = f"Unsupported action: {action}"
        if self.supported:
            message += f" (supported: {', '.join(self.supported)})"
        super().__init__(message)


def _is_human_step(step: StepDefinition) -> bool:
    return step.type is not StepType.INPUT and not step.is_automatable


def supported_actions(definition: FlowDefinition) -> list[str]:
    actions = [OPEN_PERIOD]
    for step in definition.ordered_steps():
        if step.type is StepType.INPUT:
            actions.append(f"mark_{step.id}")
        elif _is_human_step(step):
            actions.append(f"submit_{step.id}")
        elif step.automation is not None:
            actions.append(step.automation)
    return actions


def event_type_for_action(definition: FlowDefinition, action: str) -> str | None:
    """Return the event type an action records, ``None`` for ``open_period``.

    Raises:
        UnknownActionError: if the action does not apply to this definition.
    """

    if action == OPEN_PERIOD:
        return None
    for step in definition.ordered_steps():
        if step.type is StepType.INPUT and action == f"mark_{step.id}":
            return step_event(step.id, MARKED_SUFFIX)
        if _is_human_step(step) and action == f"submit_{step.id}":
            return step_event(step.id, SUBMITTED_SUFFIX)
        if step.is_automatable and action == step.automation:
            return step_event(step.id, GENERATE_REQUESTED_SUFFIX)
    raise UnknownActionError(action, supported_actions(definition))


def derive_actions(definition: FlowDefinition, states: Iterable[StepState]) -> list[str]:
    """Actions that currently make sense for a run, in step order."""

    status_by_id = {state.step_id: state.status for state in states}
    actions: list[str] = []
    for step in definition.ordered_steps():
        status = status_by_id.get(step.id, StepStatus.BLOCKED)
        if step.type is StepType.INPUT:
            if status is not StepStatus.DONE:
                actions.append(f"mark_{step.id}")
        elif status is StepStatus.READY:
            if _is_human_step(step):
                actions.append(f"submit_{step.id}")
            elif step.automation is not None:
                actions.append(step.automation)
    return actions
