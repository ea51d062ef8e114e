"""Unit tests for the CLI entrypoint."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from flow_engine.cli import main


@pytest.fixture(autouse=True)
def _env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FLOW_ENGINE_DEFINITION", raising=False)
    monkeypatch.setenv("FLOW_ENGINE_STATE_PATH", str(tmp_path / "flow_state"))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _stdout_json(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out)


def test_validate_default_definition(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["validate"]) == 0
    out = _stdout_json(capsys)
    assert out == {
        "valid": True,
        "id": "pmc_v1",
        "order": ["budget_base", "measurement", "certificate"],
        "dependents": {
            "budget_base": ["measurement"],
            "measurement": ["certificate"],
            "certificate": [],
        },
    }


def test_validate_reports_cycles(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "cyclic.json"
    path.write_text(
        json.dumps(
            {
                "id": "c",
                "name": "C",
                "steps": [{"id": "a", "requires": ["b"]}, {"id": "b", "requires": ["a"]}],
            }
        ),
        encoding="utf-8",
    )
    assert main(["validate", "--definition", str(path)]) == 2
    out = _stdout_json(capsys)
    assert out["valid"] is False
    assert out["step_ids"] == ["a", "b"]


def test_action_then_plan(capsys: pytest.CaptureFixture[str]) -> None:
    args = ["--subject", "obra-1", "--period", "2025-01"]
    assert main(["action", *args, "mark_budget_base", "--payload", '{"file": "p.xlsx"}']) == 0
    capsys.readouterr()
    assert main(["action", *args, "submit_measurement"]) == 0
    capsys.readouterr()

    assert main(["plan", *args]) == 0
    out = _stdout_json(capsys)
    assert [s["status"] for s in out["steps"]] == ["done", "done", "ready"]
    assert [j["type"] for j in out["planned_jobs"]] == ["generate_certificate"]
    assert out["actions"] == ["generate_certificate"]

    run_id = out["run"]["id"]
    assert main(["complete", "--run", run_id, "--step", "certificate"]) == 0
    assert _stdout_json(capsys)["status"] == "done"

    assert main(["state", "--subject", "obra-1"]) == 0
    assert [s["status"] for s in _stdout_json(capsys)["steps"]] == ["done", "done", "done"]


def test_emit_records_event(capsys: pytest.CaptureFixture[str]) -> None:
    assert (
        main(
            [
                "emit",
                "--subject",
                "obra-1",
                "--type",
                "budget_base.marked",
                "--period",
                "2025-01",
                "--payload",
                '{"source": "manual"}',
            ]
        )
        == 0
    )
    out = _stdout_json(capsys)
    assert out["type"] == "budget_base.marked"
    assert out["payload"] == {"source": "manual"}
    assert out["run_id"]


def test_bad_payload_and_unknown_action_exit_2() -> None:
    args = ["--subject", "obra-1", "--period", "2025-01"]
    assert main(["action", *args, "mark_budget_base", "--payload", "[1, 2]"]) == 2
    assert main(["action", *args, "fly"]) == 2


def test_complete_unknown_run_exits_4() -> None:
    assert main(["complete", "--run", "nope", "--step", "certificate"]) == 4


def test_configuration_error_exits_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_ENGINE_LOCK_TTL_SECONDS", "-1")
    assert main(["validate"]) == 2
