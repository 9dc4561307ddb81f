"""Project endpoints: creation, validation, execution and rollback."""

from typing import List, Optional
from fastapi import APIRouter, Depends

from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import (
    CancelResponse,
    ProjectCreate,
    ProjectResponse,
    RollbackResponse,
    StartResponse,
    ValidateRequest,
    ValidationResponse,
)

router = APIRouter()


@router.post("", response_model=ProjectResponse, status_code=201)
def create_project(data: ProjectCreate, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Create a new project."""
    project = orchestrator.create_project(
        name=data.name,
        source_org_id=data.source_org_id,
        target_org_id=data.target_org_id,
        template_id=data.template_id,
        selection=data.selection,
    )
    return project.to_dict()


@router.get("", response_model=List[ProjectResponse])
def list_projects(status: Optional[str] = None, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """List projects."""
    projects = orchestrator.list_projects()
    if status:
        projects = [p for p in projects if p.status.value == status]
    return [p.to_dict() for p in projects]


@router.get("/{project_id}", response_model=ProjectResponse)
def get_project(project_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Get a specific project."""
    return orchestrator.get_project(project_id).to_dict()


@router.post("/{project_id}/validate", response_model=ValidationResponse)
def validate_project(
    project_id: str,
    data: Optional[ValidateRequest] = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Run pre-flight validation; failed checks are reported, not raised."""
    selection = data.selection if data else None
    return orchestrator.validate(project_id, selection=selection).to_dict()


@router.post("/{project_id}/start", response_model=StartResponse, status_code=202)
def start_project(project_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Start a migration session in the background."""
    session_id = orchestrator.start(project_id)
    return StartResponse(project_id=project_id, session_id=session_id)


@router.post("/{project_id}/cancel", response_model=CancelResponse)
def cancel_project(project_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Request cancellation at the next step boundary."""
    return CancelResponse(project_id=project_id, cancelled=orchestrator.cancel(project_id))


@router.post("/{project_id}/rollback", response_model=RollbackResponse)
def rollback_project(project_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Delete the records created by the project's latest session."""
    return orchestrator.rollback(project_id).to_dict()
