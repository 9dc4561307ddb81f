"""Organisation connection and token health endpoints."""

from fastapi import APIRouter, Depends

from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import OrgConnect, OrgSessionResponse, TokenHealthResponse

router = APIRouter()


@router.get("/health", response_model=TokenHealthResponse)
def token_health(orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Token health across every connected organisation."""
    return orchestrator.get_token_health_report().to_dict()


@router.post("", response_model=OrgSessionResponse, status_code=201)
def connect_org(data: OrgConnect, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Store OAuth tokens for an organisation."""
    snapshot = orchestrator.connect_org(
        data.org_id,
        data.instance_url,
        data.access_token,
        data.refresh_token,
        expires_in=data.expires_in,
        org_name=data.org_name,
    )
    return snapshot.to_dict()


@router.get("/{org_id}", response_model=OrgSessionResponse)
def get_org(org_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_org_session(org_id).to_dict()


@router.delete("/{org_id}")
def disconnect_org(org_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Forget an organisation's credential."""
    return {"org_id": org_id, "disconnected": orchestrator.disconnect_org(org_id)}
