"""FastAPI app factory.

Endpoints are thin wrappers over :class:`flow_engine.runtime.FlowRuntime`.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from flow_engine import __version__
from flow_engine.config import FlowEngineSettings
from flow_engine.core.definition import DefinitionError
from flow_engine.core.validators import validate_flow_definition
from flow_engine.runtime.actions import UnknownActionError, derive_actions
from flow_engine.runtime.dispatch import InMemoryJobDispatcher
from flow_engine.runtime.locks import FlowLockManager, FlowLockUnavailable
from flow_engine.runtime.runtime import FlowRuntime, FlowState
from flow_engine.runtime.store import JsonFlowStore
from flow_engine.server.models import (
    ActionRequest,
    ApiEvent,
    DefinitionRequest,
    DefinitionResponse,
    EventsResponse,
    FlowStateResponse,
    ValidationResult,
)

logger = logging.getLogger(__name__)


def build_runtime(settings: FlowEngineSettings) -> FlowRuntime:
    return FlowRuntime(
        JsonFlowStore(settings.state_path),
        dispatcher=InMemoryJobDispatcher(),
        locks=FlowLockManager(ttl_seconds=settings.lock_ttl_seconds),
        default_definition=settings.definition,
    )


def _state_response(subject_id: str, period: str | None, state: FlowState) -> FlowStateResponse:
    return FlowStateResponse.model_validate(
        {
            "subject_id": subject_id,
            "period": state.run.period if state.run is not None else period,
            "definition_id": state.definition.id,
            "steps": [s.to_json() for s in state.steps],
            "planned_jobs": [j.to_json() for j in state.planned_jobs],
            "actions": derive_actions(state.definition, state.steps),
        }
    )


def create_app(
    settings: FlowEngineSettings | None = None, runtime: FlowRuntime | None = None
) -> FastAPI:
    settings = settings or FlowEngineSettings()
    runtime = runtime or build_runtime(settings)

    app = FastAPI(
        title="Flow Engine",
        version=__version__,
        description="Step evaluation and job planning for declarative workflows.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.settings = settings
    app.state.runtime = runtime

    @app.exception_handler(FlowLockUnavailable)
    def _lock_unavailable(_request: Request, exc: FlowLockUnavailable) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(DefinitionError)
    def _definition_error(_request: Request, exc: DefinitionError) -> JSONResponse:
        logger.error("Stored flow definition is invalid", extra={"step_ids": list(exc.step_ids)})
        return JSONResponse(
            status_code=422,
            content={"validation": {"valid": False, "errors": list(exc.errors)}},
        )

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/flows/definition")
    def get_definition(subject_id: str | None = None) -> dict[str, object]:
        instance = runtime.store.get_instance(subject_id) if subject_id else None
        return runtime.definition_for(instance).to_json()

    @app.post("/api/flows/definition", response_model=DefinitionResponse)
    def post_definition(req: DefinitionRequest) -> DefinitionResponse | JSONResponse:
        validation = validate_flow_definition(req.definition)
        if not validation.valid:
            return JSONResponse(status_code=422, content={"validation": validation.to_json()})

        result = ValidationResult(valid=True, errors=[])
        if req.action == "validate":
            return DefinitionResponse(validation=result)

        if not req.subject_id:
            raise HTTPException(status_code=400, detail="subject_id is required")
        instance = runtime.set_flow_definition(req.subject_id, req.definition)
        return DefinitionResponse(
            validation=result,
            instance_id=instance.id,
            flow_definition_id=instance.flow_definition_id,
        )

    @app.get("/api/flows/state", response_model=FlowStateResponse)
    def get_state(
        subject_id: str = Query(min_length=1),
        period: str | None = None,
    ) -> FlowStateResponse:
        state = runtime.evaluate(subject_id, period)
        return _state_response(subject_id, period, state)

    @app.post("/api/flows/action", response_model=FlowStateResponse)
    def post_action(req: ActionRequest) -> FlowStateResponse:
        try:
            state = runtime.apply_action(req.subject_id, req.period, req.action, req.payload)
        except UnknownActionError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return _state_response(req.subject_id, req.period, state)

    @app.get("/api/flows/events", response_model=EventsResponse)
    def get_events(
        subject_id: str = Query(min_length=1),
        limit: int = 10,
    ) -> EventsResponse:
        bounded = limit if limit > 0 else 10
        bounded = min(bounded, settings.events_limit_max)
        records = runtime.store.list_events(subject_id, limit=bounded)
        return EventsResponse(
            events=[
                ApiEvent.model_validate(record.model_dump(mode="json"))
                for record in reversed(records)
            ]
        )

    return app
