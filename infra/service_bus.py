"""
FastAPI Service Bus
-------------------
Local HTTP surface for agent runtimes that cannot call the hooks in-process.

Endpoints:
- GET  /health
- POST /hooks/pre-tool-use   tool hook then Bash hook, returns the decision payload
- POST /scope/check          CLI scope check for a (group, subcommand)
- GET  /relations            filtered relation listing

This is NOT an external-facing API; bind it to loopback.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from core.errors import StorageError
from core.runtime import Gatekeeper
from hooks.pre_tool_use import run_hooks
from infra.logging import get_logger
from security.context import ScopeContext, ScopeContextScope
from security.relations import RelationFilter

VERSION = "1.0.0"


# Request/Response Models

class PreToolUseRequest(BaseModel):
    """Hook input plus the identity of the calling agent."""
    hook_event_name: str = "PreToolUse"
    tool_name: str
    tool_input: Dict[str, Any] = Field(default_factory=dict)
    tool_use_id: Optional[str] = None
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    session_name: Optional[str] = None


class ScopeCheckRequest(BaseModel):
    """Scope check for a CLI command; scope defaults to the command table's entry."""
    group: str
    subcommand: Optional[str] = None
    scope: Optional[str] = None
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    session_name: Optional[str] = None


class ScopeCheckResponse(BaseModel):
    allowed: bool
    scope: str
    error_message: str = ""


class RelationInfo(BaseModel):
    subject_type: str
    subject_id: str
    relation: str
    object_type: str
    object_id: str
    source: str
    created_at: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str = VERSION
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


# Service Bus

class ServiceBus:
    """
    HTTP wrapper around a Gatekeeper runtime.

    The runtime must already be initialized; the bus flushes its audit
    events when the application shuts down.
    """

    def __init__(self, gatekeeper: Gatekeeper):
        self._gk = gatekeeper
        self._logger = get_logger("infra.service_bus")
        self._app: Optional[FastAPI] = None

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self._logger.info("Service bus starting...")
            yield
            self._logger.info("Service bus shutting down...")
            self._gk.shutdown()

        app = FastAPI(
            title="Gatekeeper",
            description="Permission hooks and scope checks for agent runtimes",
            version=VERSION,
            lifespan=lifespan,
        )

        self._register_routes(app)

        self._app = app
        return app

    def _register_routes(self, app: FastAPI) -> None:
        gk = self._gk

        @app.get("/health", response_model=HealthResponse, tags=["System"])
        def health_check():
            return HealthResponse(status="healthy")

        @app.post("/hooks/pre-tool-use", tags=["Hooks"])
        def pre_tool_use(req: PreToolUseRequest) -> Dict[str, Any]:
            """Run the pre-tool-use hooks; {} allows, otherwise the deny payload."""
            ctx = ScopeContext(req.agent_id, req.session_key, req.session_name)
            hook_input = {
                "hook_event_name": req.hook_event_name,
                "tool_name": req.tool_name,
                "tool_input": req.tool_input,
            }
            with ScopeContextScope(ctx):
                return run_hooks(gk.hooks_for(req.agent_id), hook_input, req.tool_use_id)

        @app.post("/scope/check", response_model=ScopeCheckResponse, tags=["Scope"])
        def scope_check(req: ScopeCheckRequest):
            scope = req.scope or gk.dispatcher.scope_for(req.group, req.subcommand)
            ctx = ScopeContext(req.agent_id, req.session_key, req.session_name)
            try:
                result = gk.enforcer.enforce_scope_check(scope, req.group, req.subcommand, ctx)
            except StorageError as e:
                self._logger.error(f"Scope check failed: {e}")
                return ScopeCheckResponse(allowed=False, scope=scope, error_message="permission check failed")
            return ScopeCheckResponse(allowed=result.allowed, scope=scope, error_message=result.error_message)

        @app.get("/relations", response_model=List[RelationInfo], tags=["Relations"])
        def list_relations(
            subject_type: Optional[str] = Query(None),
            subject_id: Optional[str] = Query(None),
            relation: Optional[str] = Query(None),
            object_type: Optional[str] = Query(None),
            object_id: Optional[str] = Query(None),
            source: Optional[str] = Query(None),
        ):
            try:
                rows = gk.store.list_relations(RelationFilter(
                    subject_type=subject_type,
                    subject_id=subject_id,
                    relation=relation,
                    object_type=object_type,
                    object_id=object_id,
                    source=source,
                ))
            except StorageError as e:
                raise HTTPException(status_code=503, detail=str(e))
            return [
                RelationInfo(
                    subject_type=r.subject_type,
                    subject_id=r.subject_id,
                    relation=r.relation,
                    object_type=r.object_type,
                    object_id=r.object_id,
                    source=r.source,
                    created_at=r.created_at,
                )
                for r in rows
            ]


def create_app(gatekeeper: Gatekeeper) -> FastAPI:
    """Create the FastAPI application."""
    return ServiceBus(gatekeeper).create_app()


def run_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8787) -> None:
    """Run the service bus server (blocking)."""
    import uvicorn

    uvicorn.run(app, host=host, port=port, log_level="info")
