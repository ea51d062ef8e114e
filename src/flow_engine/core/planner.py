"""Job planning.

The planner answers "what should run right now", never "what has already
been scheduled": it has no view of dispatch history, so the dispatcher is
expected to dedupe on ``(run_id, step_id, type)``.
"""

from __future__ import annotations

from collections.abc import Iterable

from flow_engine.core.evaluator import collapse_states
from flow_engine.core.types import FlowDefinition, PlannedJob, StepState, StepStatus


def plan_jobs(definition: FlowDefinition, states: Iterable[StepState]) -> list[PlannedJob]:
    """Return one job per ``ready`` step that carries an automation descriptor.

    Jobs are grouped by run (in the order runs first appear in ``states``) and
    follow the definition's topological order within a run.
    """

    collapsed = collapse_states(states)
    runs = list(dict.fromkeys(run_id for run_id, _ in collapsed))

    jobs: list[PlannedJob] = []
    for run_id in runs:
        for step in definition.ordered_steps():
            job_type = step.automation
            if job_type is None:
                continue
            state = collapsed.get((run_id, step.id))
            if state is None or state.status is not StepStatus.READY:
                continue
            jobs.append(PlannedJob(type=job_type, step_id=step.id, run_id=run_id))
    return jobs
