"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ApiStepState(BaseModel):
    run_id: str
    step_id: str
    status: Literal["blocked", "ready", "done"]
    reason: str | dict[str, Any] | None = None
    inputs: dict[str, Any] | None = None
    outputs: dict[str, Any] | None = None
    updated_at: str | None = None


class ApiPlannedJob(BaseModel):
    type: str
    step_id: str
    run_id: str
    payload: dict[str, Any] | None = None


class FlowStateResponse(BaseModel):
    subject_id: str
    period: str | None
    definition_id: str
    steps: list[ApiStepState]
    planned_jobs: list[ApiPlannedJob]
    actions: list[str] = Field(default_factory=list)


class ActionRequest(BaseModel):
    subject_id: str = Field(min_length=1)
    period: str = Field(min_length=1)
    action: str = Field(min_length=1)
    payload: dict[str, Any] | None = None


class DefinitionRequest(BaseModel):
    action: Literal["validate", "set"]
    definition: dict[str, Any]
    subject_id: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class DefinitionResponse(BaseModel):
    validation: ValidationResult
    instance_id: str | None = None
    flow_definition_id: str | None = None


class ApiEvent(BaseModel):
    type: str
    payload: dict[str, Any] | None = None
    dedupe_key: str
    run_id: str | None = None
    created_at: str


class EventsResponse(BaseModel):
    events: list[ApiEvent]
