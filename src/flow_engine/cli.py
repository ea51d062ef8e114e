"""CLI entrypoint for the flow engine.

Every command prints JSON on stdout; logs go to stderr.

Exit codes: 0 ok, 1 unexpected failure, 2 invalid configuration, definition,
action or payload, 3 flow lock unavailable, 4 unknown run.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from flow_engine import __version__
from flow_engine.config import FlowEngineSettings
from flow_engine.core.definition import DefinitionError, resolve
from flow_engine.logging import configure_logging
from flow_engine.runtime.actions import UnknownActionError, derive_actions
from flow_engine.runtime.events import FlowEvent
from flow_engine.runtime.locks import FlowLockManager, FlowLockUnavailable
from flow_engine.runtime.runtime import FlowRuntime, FlowState
from flow_engine.runtime.store import JsonFlowStore

logger = logging.getLogger(__name__)


def _parse_payload(value: str | None) -> dict[str, object] | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"--payload is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("--payload must be a JSON object")
    return parsed


def _print_json(obj: object) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _state_json(state: FlowState) -> dict[str, object]:
    out = state.to_json()
    out["actions"] = derive_actions(state.definition, state.steps)
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flow-engine",
        description="Evaluate workflow step graphs and plan jobs",
    )
    parser.add_argument("--version", action="version", version=f"flow-engine {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Resolve and validate a flow definition")
    validate.add_argument(
        "--definition",
        default=None,
        help="Built-in flow id or path to a JSON definition (defaults to FLOW_ENGINE_DEFINITION)",
    )

    plan = subparsers.add_parser(
        "plan", help="Evaluate a run, persist its step states and print the planned jobs"
    )
    plan.add_argument("--subject", required=True, help="Subject the flow instance belongs to")
    plan.add_argument("--period", default=None, help="Run period (YYYY-MM, defaults to now)")

    state = subparsers.add_parser("state", help="Print persisted step states without evaluating")
    state.add_argument("--subject", required=True, help="Subject the flow instance belongs to")
    state.add_argument("--period", default=None, help="Run period (defaults to the latest run)")

    emit = subparsers.add_parser("emit", help="Record an event for a flow instance")
    emit.add_argument("--subject", required=True, help="Subject the flow instance belongs to")
    emit.add_argument("--type", dest="event_type", required=True, help="Event type")
    emit.add_argument("--period", default=None, help="Run period the event belongs to")
    emit.add_argument("--payload", default=None, help="Event payload as a JSON object")

    action = subparsers.add_parser("action", help="Apply a user action and re-evaluate")
    action.add_argument("--subject", required=True, help="Subject the flow instance belongs to")
    action.add_argument("--period", required=True, help="Run period")
    action.add_argument("name", help="Action, e.g. mark_budget_base or submit_measurement")
    action.add_argument("--payload", default=None, help="Action payload as a JSON object")

    complete = subparsers.add_parser("complete", help="Report a finished job for a step")
    complete.add_argument("--run", required=True, help="Run id")
    complete.add_argument("--step", required=True, help="Step id")
    complete.add_argument("--outputs", default=None, help="Job outputs as a JSON object")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = FlowEngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            definition = resolve(args.definition or settings.definition)
            _print_json(
                {
                    "valid": True,
                    "id": definition.id,
                    "order": list(definition.order),
                    "dependents": {k: list(v) for k, v in definition.dependents.items()},
                }
            )
            return 0

        runtime = FlowRuntime(
            JsonFlowStore(settings.state_path),
            locks=FlowLockManager(ttl_seconds=settings.lock_ttl_seconds),
            default_definition=settings.definition,
        )

        if args.command == "plan":
            _print_json(_state_json(runtime.evaluate(args.subject, args.period)))
            return 0

        if args.command == "state":
            _print_json(_state_json(runtime.get_flow_state(args.subject, args.period)))
            return 0

        if args.command == "emit":
            record = runtime.emit_event(
                args.subject,
                FlowEvent(
                    type=args.event_type,
                    period=args.period,
                    payload=_parse_payload(args.payload),
                ),
            )
            _print_json(record.model_dump(mode="json"))
            return 0

        if args.command == "action":
            result = runtime.apply_action(
                args.subject, args.period, args.name, _parse_payload(args.payload)
            )
            _print_json(_state_json(result))
            return 0

        if args.command == "complete":
            step_state = runtime.report_job_completed(
                args.run, args.step, _parse_payload(args.outputs)
            )
            _print_json(step_state.to_json())
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except DefinitionError as e:
        logger.error("Invalid flow definition", extra={"step_ids": list(e.step_ids)})
        _print_json({"valid": False, "errors": list(e.errors), "step_ids": list(e.step_ids)})
        return 2

    except (UnknownActionError, argparse.ArgumentTypeError) as e:
        print(str(e), file=sys.stderr)
        return 2

    except FlowLockUnavailable as e:
        logger.warning(str(e), extra={"instance_id": e.instance_id})
        print(str(e), file=sys.stderr)
        return 3

    except KeyError as e:
        print(f"Not found: {e.args[0]}", file=sys.stderr)
        return 4

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
