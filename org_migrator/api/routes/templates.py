"""Template catalog endpoints."""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException

from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import TemplateListResponse, TemplateSummary

router = APIRouter()


@router.get("", response_model=TemplateListResponse)
def list_templates(
    category: Optional[str] = None,
    search: Optional[str] = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """List registered templates, optionally filtered by category or text."""
    registry = orchestrator.registry
    if category:
        try:
            catalog = registry.list_by_category(category)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown category: {category}")
    elif search:
        catalog = registry.search(search)
    else:
        catalog = orchestrator.list_templates()

    templates = [TemplateSummary(**t.summary()) for t in catalog]
    return TemplateListResponse(templates=templates, total=len(templates))


@router.get("/{template_id}")
def get_template(
    template_id: str,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Get a template with its steps in execution order."""
    template = orchestrator.get_template(template_id)
    data = template.to_dict()
    data["execution_order"] = [step.name for step in orchestrator.registry.execution_order(template)]
    return data
