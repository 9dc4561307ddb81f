"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class MigrationStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TokenHealthEnum(str, Enum):
    HEALTHY = "healthy"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    INVALID = "invalid"


# Request Models
class ProjectCreate(BaseModel):
    name: str
    source_org_id: str
    target_org_id: str
    template_id: str
    selection: Dict[str, List[str]] = Field(default_factory=dict)


class ValidateRequest(BaseModel):
    selection: Optional[Dict[str, List[str]]] = None


class OrgConnect(BaseModel):
    org_id: str
    instance_url: str
    access_token: str
    refresh_token: str
    expires_in: Optional[int] = None
    org_name: str = ""


# Response Models
class TemplateSummary(BaseModel):
    id: str
    name: str
    version: str
    category: str
    description: str = ""
    complexity: str
    estimated_duration_minutes: int = 0
    step_count: int


class TemplateListResponse(BaseModel):
    templates: List[TemplateSummary]
    total: int


class ProjectResponse(BaseModel):
    id: str
    name: str
    source_org_id: str
    target_org_id: str
    template_id: str
    status: MigrationStatusEnum
    selection: Dict[str, List[str]] = Field(default_factory=dict)
    latest_session_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ValidationCheckResponse(BaseModel):
    name: str
    status: str
    message: str
    step_name: Optional[str] = None


class ValidationResponse(BaseModel):
    project_id: Optional[str] = None
    template_id: str
    source_org_id: str
    target_org_id: str
    checks: List[ValidationCheckResponse]
    summary: Dict[str, int]
    is_valid: bool
    can_proceed: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    record_estimates: Dict[str, int] = Field(default_factory=dict)
    validated_at: str


class StartResponse(BaseModel):
    status: str = "started"
    project_id: str
    session_id: str


class CancelResponse(BaseModel):
    project_id: str
    cancelled: bool


class StepProgressResponse(BaseModel):
    name: str
    order: int
    object_type: str
    state: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class ProgressResponse(BaseModel):
    session_id: str
    project_id: str
    status: MigrationStatusEnum
    current_step_index: Optional[int] = None
    current_step_name: Optional[str] = None
    total_steps: int
    total_records: int
    successful_records: int
    failed_records: int
    skipped_records: int
    started_at: Optional[str] = None
    estimated_completion: Optional[str] = None
    steps: List[StepProgressResponse] = Field(default_factory=list)


class RollbackErrorItem(BaseModel):
    record_id: str
    error: str


class RollbackResponse(BaseModel):
    success: bool
    deleted_records: int
    failed_deletions: int
    errors: List[RollbackErrorItem] = Field(default_factory=list)


class OrgSessionResponse(BaseModel):
    org_id: str
    org_name: str = ""
    instance_url: str
    expires_at: str
    health: TokenHealthEnum
    token_version: int
    connected_at: str
    last_refresh_at: Optional[str] = None
    refresh_failure_count: int = 0
    requires_reconnect: bool = False
    last_error: Optional[str] = None


class TokenHealthResponse(BaseModel):
    checked_at: str
    total_orgs: int
    healthy_orgs: int
    unhealthy_orgs: int
    require_reconnect: int = 0
    details: List[OrgSessionResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    kind: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
