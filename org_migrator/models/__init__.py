"""Data models for the migration core."""

from .template import (
    Complexity,
    ExtractSpec,
    FieldMapping,
    LoadOperation,
    LoadSpec,
    LookupMapping,
    Step,
    Template,
    TemplateCategory,
    TemplateMetadata,
    TransformKind,
    TransformRules,
)
from .migration import (
    IdMap,
    MigrationStatus,
    ProgressSnapshot,
    Project,
    Session,
    StepProgress,
    StepState,
)
from .record import (
    MigrationRecord,
    MigrationResult,
    RecordStatus,
    RollbackResult,
    SourceRow,
    TransformedRecord,
)
from .credential import (
    Credential,
    CredentialSnapshot,
    TokenHealth,
    TokenHealthReport,
)
from .validation import (
    CheckStatus,
    ValidationCheck,
    ValidationResult,
)

__all__ = [
    "Complexity",
    "ExtractSpec",
    "FieldMapping",
    "LoadOperation",
    "LoadSpec",
    "LookupMapping",
    "Step",
    "Template",
    "TemplateCategory",
    "TemplateMetadata",
    "TransformKind",
    "TransformRules",
    "IdMap",
    "MigrationStatus",
    "ProgressSnapshot",
    "Project",
    "Session",
    "StepProgress",
    "StepState",
    "MigrationRecord",
    "MigrationResult",
    "RecordStatus",
    "RollbackResult",
    "SourceRow",
    "TransformedRecord",
    "Credential",
    "CredentialSnapshot",
    "TokenHealth",
    "TokenHealthReport",
    "CheckStatus",
    "ValidationCheck",
    "ValidationResult",
]
