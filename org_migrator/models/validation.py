"""Pre-flight validation result models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"


@dataclass
class ValidationCheck:
    """A single pre-flight check outcome."""
    name: str
    status: CheckStatus
    message: str
    step_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "step_name": self.step_name,
        }


@dataclass
class ValidationResult:
    """All checks for one template against one source/target pair."""
    template_id: str
    source_org_id: str
    target_org_id: str
    project_id: Optional[str] = None
    checks: List[ValidationCheck] = field(default_factory=list)
    record_estimates: Dict[str, int] = field(default_factory=dict)
    validated_at: datetime = field(default_factory=datetime.utcnow)

    def add(self, name: str, status: CheckStatus, message: str, step_name: Optional[str] = None) -> ValidationCheck:
        check = ValidationCheck(name=name, status=status, message=message, step_name=step_name)
        self.checks.append(check)
        return check

    def get_check(self, name: str) -> Optional[ValidationCheck]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def _count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.checks),
            "passed": self._count(CheckStatus.PASS),
            "failed": self._count(CheckStatus.FAIL),
            "warnings": self._count(CheckStatus.WARNING),
        }

    @property
    def errors(self) -> List[str]:
        return [f"{c.name}: {c.message}" for c in self.checks if c.status == CheckStatus.FAIL]

    @property
    def warnings(self) -> List[str]:
        return [f"{c.name}: {c.message}" for c in self.checks if c.status == CheckStatus.WARNING]

    @property
    def is_valid(self) -> bool:
        return self._count(CheckStatus.FAIL) == 0

    @property
    def can_proceed(self) -> bool:
        """Warnings never block a run; any failed check does."""
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "template_id": self.template_id,
            "source_org_id": self.source_org_id,
            "target_org_id": self.target_org_id,
            "checks": [c.to_dict() for c in self.checks],
            "summary": self.summary,
            "is_valid": self.is_valid,
            "can_proceed": self.can_proceed,
            "errors": self.errors,
            "warnings": self.warnings,
            "record_estimates": self.record_estimates,
            "validated_at": self.validated_at.isoformat(),
        }
