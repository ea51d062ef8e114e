"""Flow definition resolution.

A definition is resolved once per process (or once per stored instance) and
then treated as immutable configuration. Resolution is where every structural
guarantee the evaluator relies on is checked, so an invalid flow fails loudly
at startup instead of producing wrong step statuses later.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Union

from flow_engine.core.types import FlowDefinition, StepDefinition, StepMode, StepType

logger = logging.getLogger(__name__)

DEFAULT_FLOW_ID = "pmc_v1"

FlowDefinitionInput = Union[FlowDefinition, Mapping[str, object], str, Path]


class DefinitionError(ValueError):
    """Raised when a flow definition cannot be used.

    ``step_ids`` names the offending steps (empty when the problem is not tied
    to a step, e.g. an unknown built-in id).
    """

    def __init__(self, message: str, *, step_ids: Iterable[str] = (), errors: Sequence[str] = ()):
        super().__init__(message)
        self.step_ids: tuple[str, ...] = tuple(step_ids)
        self.errors: tuple[str, ...] = tuple(errors) or (message,)


def _get(raw: Mapping[str, object], *keys: str) -> object:
    # Stored definitions may use either snake_case or the camelCase of the UI.
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _str_tuple(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise TypeError(f"expected a list of strings, got {type(value).__name__}")
    return tuple(str(item) for item in value)


def parse_step(raw: Mapping[str, object], index: int = 0) -> StepDefinition:
    step_id = raw.get("id")
    if not isinstance(step_id, str) or not step_id:
        raise DefinitionError(f"steps[{index}].id is required")
    try:
        step_type = StepType(raw.get("type", StepType.GENERATE.value))
        mode = StepMode(raw.get("mode", StepMode.HUMAN_INPUT.value))
        requires = _str_tuple(raw.get("requires"))
        outputs = _str_tuple(raw.get("outputs"))
        doc_kinds = _str_tuple(_get(raw, "doc_kinds", "docKinds"))
    except (TypeError, ValueError) as e:
        raise DefinitionError(f"steps[{index}] ({step_id}): {e}", step_ids=[step_id]) from e

    required = raw.get("required", True)
    if not isinstance(required, bool):
        raise DefinitionError(
            f"steps[{index}] ({step_id}): required must be a boolean", step_ids=[step_id]
        )

    job_type = _get(raw, "job_type", "jobType")
    return StepDefinition(
        id=step_id,
        type=step_type,
        requires=requires,
        mode=mode,
        required=required,
        job_type=job_type if isinstance(job_type, str) and job_type else None,
        outputs=outputs,
        doc_kinds=doc_kinds,
    )


def _cycle_members(remaining: set[str], children: Mapping[str, list[str]]) -> set[str]:
    # Steps left over by Kahn's algorithm sit on a cycle or downstream of one;
    # repeatedly dropping those with no remaining dependents leaves the cycles.
    remaining = set(remaining)
    pruned = True
    while pruned:
        pruned = False
        for step_id in list(remaining):
            if not any(child in remaining for child in children[step_id]):
                remaining.discard(step_id)
                pruned = True
    return remaining


def topological_order(steps: Sequence[StepDefinition]) -> tuple[str, ...]:
    """Order step ids so every step comes after all of its dependencies.

    Kahn's algorithm; ties are broken by declaration order so the result is
    stable for a given definition.

    Raises:
        DefinitionError: on duplicate ids, dangling dependencies or cycles.
    """

    ids = [step.id for step in steps]
    dupes = sorted({step_id for step_id in ids if ids.count(step_id) > 1})
    if dupes:
        raise DefinitionError(
            f"Duplicate step ids: {dupes}",
            step_ids=dupes,
            errors=[f"duplicate step id: {step_id}" for step_id in dupes],
        )

    known = set(ids)
    dangling = [
        f"step '{step.id}' requires unknown step '{dep}'"
        for step in steps
        for dep in step.requires
        if dep not in known
    ]
    if dangling:
        offenders = sorted({step.id for step in steps if any(d not in known for d in step.requires)})
        raise DefinitionError(
            f"Unresolved dependencies: {'; '.join(dangling)}",
            step_ids=offenders,
            errors=dangling,
        )

    position = {step_id: idx for idx, step_id in enumerate(ids)}
    children: dict[str, list[str]] = {step_id: [] for step_id in ids}
    indeg: dict[str, int] = {step_id: 0 for step_id in ids}
    for step in steps:
        for dep in dict.fromkeys(step.requires):
            children[dep].append(step.id)
            indeg[step.id] += 1

    queue = deque(step_id for step_id in ids if indeg[step_id] == 0)
    order: list[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        released = []
        for child in children[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                released.append(child)
        queue.extend(sorted(released, key=position.__getitem__))

    if len(order) != len(ids):
        in_cycle = _cycle_members({step_id for step_id in ids if indeg[step_id] > 0}, children)
        stuck = [step_id for step_id in ids if step_id in in_cycle]
        raise DefinitionError(
            f"Dependency cycle between steps: {stuck}",
            step_ids=stuck,
            errors=[f"dependency cycle involving steps: {', '.join(stuck)}"],
        )
    return tuple(order)


def build_definition(raw: Mapping[str, object]) -> FlowDefinition:
    """Build a :class:`FlowDefinition` from a JSON-like document."""

    flow_id = raw.get("id")
    if not isinstance(flow_id, str) or not flow_id:
        raise DefinitionError("id is required")
    name = raw.get("name")
    run_key = _get(raw, "run_key", "runKey") or "period"
    if run_key != "period":
        raise DefinitionError("run_key must be period")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, Sequence) or isinstance(raw_steps, str) or not raw_steps:
        raise DefinitionError("steps must be a non-empty array")

    steps: list[StepDefinition] = []
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, Mapping):
            raise DefinitionError(f"steps[{index}] must be an object")
        steps.append(parse_step(raw_step, index))

    order = topological_order(steps)
    dependents: dict[str, tuple[str, ...]] = {
        step.id: tuple(other.id for other in steps if step.id in other.requires) for step in steps
    }
    definition = FlowDefinition(
        id=flow_id,
        name=name if isinstance(name, str) and name else flow_id,
        steps=tuple(steps),
        order=order,
        run_key="period",
        dependents=dependents,
    )
    logger.debug(
        "Resolved flow definition",
        extra={"flow_id": definition.id, "order": list(definition.order)},
    )
    return definition


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise DefinitionError(f"Cannot read flow definition {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise DefinitionError(f"Flow definition {path} is not valid JSON: {e}") from e
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Flow definition {path} must be a JSON object")
    return raw


@lru_cache(maxsize=None)
def _builtin(flow_id: str) -> FlowDefinition:
    ref = resources.files("flow_engine.flows").joinpath(f"{flow_id}.flow.json")
    raw = json.loads(ref.read_text(encoding="utf-8"))
    return build_definition(raw)


def builtin_flow_ids() -> list[str]:
    root = resources.files("flow_engine.flows")
    return sorted(
        entry.name.removesuffix(".flow.json")
        for entry in root.iterdir()
        if entry.name.endswith(".flow.json")
    )


def resolve(source: FlowDefinitionInput | None = None) -> FlowDefinition:
    """Resolve a flow definition.

    ``source`` may be ``None`` (the default ``pmc_v1`` flow), a built-in flow
    id, a path to a ``.json`` file, a raw JSON document or an already resolved
    definition.

    Raises:
        DefinitionError: if the definition is unknown or invalid.
    """

    if source is None or source == "":
        return _builtin(DEFAULT_FLOW_ID)
    if isinstance(source, FlowDefinition):
        return source
    if isinstance(source, Mapping):
        return build_definition(source)
    if isinstance(source, str) and source in builtin_flow_ids():
        return _builtin(source)

    path = Path(source)
    if path.suffix == ".json" and path.exists():
        return build_definition(_load_json(path))
    raise DefinitionError(f"Unknown flow definition: {source}")
