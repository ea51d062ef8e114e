from __future__ import annotations

from dataclasses import dataclass

JOB_PLANNED = "job.planned"
JOB_COMPLETED = "job.completed"

MARKED_SUFFIX = ".marked"
SUBMITTED_SUFFIX = ".submitted"
GENERATE_REQUESTED_SUFFIX = ".generate.requested"


@dataclass(frozen=True, slots=True)
class FlowEvent:
    """A fact reported to a flow instance.

    Events never perform work; they are folded into step states and available
    inputs on the next evaluation. ``run_id`` wins over ``period`` when both
    are given.
    """

    type: str
    payload: dict[str, object] | None = None
    dedupe_key: str | None = None
    run_id: str | None = None
    period: str | None = None


def step_event(step_id: str, suffix: str) -> str:
    return f"{step_id}{suffix}"
