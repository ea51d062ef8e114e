"""Pure flow core: definition resolution, step evaluation and job planning."""

from flow_engine.core.definition import DEFAULT_FLOW_ID, DefinitionError, resolve
from flow_engine.core.evaluator import evaluate_flow
from flow_engine.core.planner import plan_jobs
from flow_engine.core.types import (
    AvailableInput,
    EvaluateResult,
    FlowDefinition,
    PlannedJob,
    StepDefinition,
    StepState,
    StepStatus,
)
from flow_engine.core.validators import FlowDefinitionValidation, validate_flow_definition

__all__ = [
    "DEFAULT_FLOW_ID",
    "AvailableInput",
    "DefinitionError",
    "EvaluateResult",
    "FlowDefinition",
    "FlowDefinitionValidation",
    "PlannedJob",
    "StepDefinition",
    "StepState",
    "StepStatus",
    "evaluate_flow",
    "plan_jobs",
    "resolve",
    "validate_flow_definition",
]
