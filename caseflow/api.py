"""
FastAPI REST API Module

HTTP adapter over the workflow engine: catalog browsing, case workflow
status, transition requests, the audit trail and on-demand SLA sweeps.
Rejected transitions are normal 200 responses carrying the rejection; only
engine exceptions map to error status codes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .exceptions import (
    CaseNotFoundError, ConcurrentModificationError, ConfigurationDriftError,
    TransitionTimeoutError,
)
from .system import WorkflowSystem


# Pydantic models for API requests/responses
class TransitionRequest(BaseModel):
    action: str = Field(..., min_length=1, description="Requested action (destination step name)")
    actor_id: str = Field(..., min_length=1, description="Who performs the action")
    timeout_seconds: Optional[float] = Field(None, gt=0)


class TransitionResponse(BaseModel):
    accepted: bool
    case_id: str
    action: str
    message: str
    reason: Optional[str] = None
    new_step: Optional[str] = None
    previous_step: Optional[str] = None
    current_step: Optional[str] = None
    case_status: Optional[str] = None
    next_available_actions: List[str] = []


class SweepResponse(BaseModel):
    escalated: int
    breaches: List[Dict[str, Any]]


def get_system(request: Request) -> WorkflowSystem:
    return request.app.state.system


def _error(status_code: int, exc: Exception, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": str(exc)})


def create_app(system: WorkflowSystem) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Caseflow Workflow Engine API",
        description="Case workflow state machine with auditing and SLA escalation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CaseNotFoundError)
    async def case_not_found_handler(request: Request, exc: CaseNotFoundError):
        return _error(404, exc, "case_not_found")

    @app.exception_handler(ConcurrentModificationError)
    async def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError):
        return _error(409, exc, "concurrent_modification")

    @app.exception_handler(ConfigurationDriftError)
    async def drift_handler(request: Request, exc: ConfigurationDriftError):
        return _error(500, exc, "configuration_drift")

    @app.exception_handler(TransitionTimeoutError)
    async def timeout_handler(request: Request, exc: TransitionTimeoutError):
        return _error(504, exc, "transition_timeout")

    @app.get("/health")
    def health_check(system: WorkflowSystem = Depends(get_system)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "categories": len(system.catalog),
            "catalog_checksum": system.catalog.checksum(),
            "sla_monitor_running": system.sla_monitor.running,
        }

    # Catalog

    @app.get("/workflows")
    def list_workflows(system: WorkflowSystem = Depends(get_system)):
        """List configured workflow categories"""
        return {
            "workflows": [
                {
                    "category": definition.category,
                    "display_name": definition.display_name,
                    "kind": definition.kind.value,
                    "initial_step": definition.initial_step,
                    "sla_hours": definition.sla_hours,
                }
                for definition in system.catalog
            ]
        }

    @app.get("/workflows/{category}")
    def get_workflow(category: str, system: WorkflowSystem = Depends(get_system)):
        """Full definition of one category"""
        definition = system.catalog.lookup(category)
        if definition is None:
            raise HTTPException(status_code=404, detail=f"No workflow configured for category '{category}'")
        return {"category": definition.category, **definition.to_dict()}

    # Case workflows

    @app.get("/cases/{case_id}/workflow")
    def get_case_workflow(case_id: str, system: WorkflowSystem = Depends(get_system)):
        """Current workflow position of a case"""
        view = system.engine.get_status(case_id)
        if view is None:
            raise HTTPException(status_code=404, detail=f"No workflow configured for case {case_id}")
        return view.to_dict()

    @app.post("/cases/{case_id}/workflow/transitions", response_model=TransitionResponse)
    def execute_transition(case_id: str, request: TransitionRequest,
                           system: WorkflowSystem = Depends(get_system)):
        """Request a workflow transition"""
        actor = system.cases.get_actor(request.actor_id)

        result = system.engine.execute(case_id, request.action, actor, timeout=request.timeout_seconds)
        return result.to_dict()

    @app.get("/cases/{case_id}/workflow/actions")
    def get_available_actions(case_id: str, actor_id: str, system: WorkflowSystem = Depends(get_system)):
        """Actions the given actor may take from the case's current step"""
        actor = system.cases.get_actor(actor_id)
        return {
            "case_id": case_id,
            "actor_id": actor_id,
            "actions": system.engine.available_actions(case_id, actor),
        }

    @app.get("/cases/{case_id}/audit")
    def get_case_audit(case_id: str, include_archived: bool = False,
                       system: WorkflowSystem = Depends(get_system)):
        """Audit entries for a case, oldest first"""
        entries = system.audit.entries_for_case(case_id, include_archived=include_archived)
        return {"case_id": case_id, "entries": [entry.to_dict() for entry in entries]}

    @app.get("/audit/verify")
    def verify_audit(system: WorkflowSystem = Depends(get_system)):
        """Verify the audit hash chain"""
        return system.audit.verify_integrity()

    # SLA

    @app.post("/sla/sweep", response_model=SweepResponse)
    def run_sla_sweep(system: WorkflowSystem = Depends(get_system)):
        """Run one SLA sweep now"""
        breaches = system.sla_monitor.sweep()
        return {"escalated": len(breaches), "breaches": [breach.to_dict() for breach in breaches]}

    return app
