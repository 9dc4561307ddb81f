"""Session progress and record endpoints."""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends

from ...models.record import RecordStatus
from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import ProgressResponse

router = APIRouter()


@router.get("/{session_id}")
def get_session(session_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.get_session(session_id).to_dict()


@router.get("/{session_id}/progress", response_model=ProgressResponse)
def get_progress(session_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Point-in-time progress snapshot for polling."""
    return orchestrator.get_progress(session_id).to_dict()


@router.get("/{session_id}/records")
def list_records(
    session_id: str,
    status: Optional[RecordStatus] = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    orchestrator.get_session(session_id)
    return [r.to_dict() for r in orchestrator.list_records(session_id, status=status)]
