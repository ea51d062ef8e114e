"""Persisted record shapes."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from flow_engine.core.types import StepState, StepStatus


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class FlowInstanceRecord(BaseModel):
    id: str
    subject_id: str
    flow_definition_id: str
    definition_json: dict[str, Any]
    created_at: str = Field(default_factory=utc_iso_now)
    updated_at: str = Field(default_factory=utc_iso_now)


class FlowRunRecord(BaseModel):
    id: str
    instance_id: str
    period: str
    status: Literal["active", "archived"] = "active"
    created_at: str = Field(default_factory=utc_iso_now)


class StepStateRecord(BaseModel):
    run_id: str
    step_id: str
    status: StepStatus
    reason: str | dict[str, Any] | None = None
    inputs: dict[str, Any] | None = None
    outputs: dict[str, Any] | None = None
    updated_at: str | None = None

    @classmethod
    def from_state(cls, state: StepState) -> StepStateRecord:
        return cls.model_validate(state.to_json())

    def to_state(self) -> StepState:
        return StepState.from_json(self.model_dump(mode="json"))


class FlowEventRecord(BaseModel):
    id: str
    subject_id: str
    run_id: str | None = None
    type: str
    payload: dict[str, Any] | None = None
    dedupe_key: str
    created_at: str = Field(default_factory=utc_iso_now)
