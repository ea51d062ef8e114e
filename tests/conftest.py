"""Test configuration and fixtures."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from flow_engine.core import FlowDefinition, resolve
from flow_engine.runtime import FlowRuntime, JsonFlowStore
from flow_engine.runtime.dispatch import InMemoryJobDispatcher


@pytest.fixture
def definition() -> FlowDefinition:
    """The bundled budget -> measurement -> certificate flow."""
    return resolve()


@pytest.fixture
def diamond() -> FlowDefinition:
    """A -> (B, C) -> D, with B and D automated."""
    return resolve(
        {
            "id": "diamond",
            "name": "Diamond",
            "run_key": "period",
            "steps": [
                {"id": "a", "type": "generate"},
                {"id": "b", "type": "generate", "mode": "auto", "requires": ["a"]},
                {"id": "c", "type": "generate", "requires": ["a"]},
                {"id": "d", "type": "generate", "job_type": "notify", "requires": ["b", "c"]},
            ],
        }
    )


@pytest.fixture
def store(tmp_path: Path) -> JsonFlowStore:
    """Provide a store rooted in a temporary state directory."""
    return JsonFlowStore(tmp_path / "flow_state")


@pytest.fixture
def dispatcher() -> InMemoryJobDispatcher:
    return InMemoryJobDispatcher()


@pytest.fixture
def runtime(store: JsonFlowStore, dispatcher: InMemoryJobDispatcher) -> FlowRuntime:
    """Provide a runtime with a fixed clock (2025-03-15 UTC)."""
    return FlowRuntime(
        store,
        dispatcher=dispatcher,
        now=lambda: datetime(2025, 3, 15, 12, 0, tzinfo=UTC),
    )
