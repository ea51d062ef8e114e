#!/usr/bin/env python3
"""Programmatic evaluation example.

Walks the bundled ``pmc_v1`` flow through one period using the pure core
directly, then the same through the runtime with a throwaway state directory.
"""

from __future__ import annotations

import argparse
import tempfile
from pathlib import Path
from typing import Sequence

from flow_engine.config import FlowEngineSettings
from flow_engine.core import AvailableInput, evaluate_flow, plan_jobs, resolve
from flow_engine.logging import configure_logging
from flow_engine.runtime import FlowRuntime, JsonFlowStore
from flow_engine.runtime.dispatch import InMemoryJobDispatcher


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate the bundled flow (example).")
    parser.add_argument("--subject", default="obra-1", help="Subject id (e.g. a construction work)")
    parser.add_argument("--period", default="2025-01", help="Run period, YYYY-MM")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = FlowEngineSettings()
    configure_logging(settings.log_level)

    definition = resolve()
    result = evaluate_flow(
        definition,
        current_states=[],
        available_inputs=[AvailableInput(step_id="budget_base")],
        run_id="example-run",
    )
    for state in result.states:
        print(f"{state.step_id}: {state.status.value}")

    with tempfile.TemporaryDirectory() as tmp:
        dispatcher = InMemoryJobDispatcher()
        runtime = FlowRuntime(JsonFlowStore(Path(tmp)), dispatcher=dispatcher)
        runtime.apply_action(args.subject, args.period, "mark_budget_base", {"file": "budget.xlsx"})
        state = runtime.apply_action(args.subject, args.period, "submit_measurement", {"rows": []})
        for job in plan_jobs(state.definition, state.steps):
            print(f"planned: {job.type} for step {job.step_id}")
        print(f"dispatched: {[job.type for job in dispatcher.jobs]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
