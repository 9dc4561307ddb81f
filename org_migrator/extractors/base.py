"""Base extractor interface for source organisations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from ..models.record import SourceRow


@dataclass
class ExtractionResult:
    """Result of an extraction operation."""
    object_type: str
    rows: List[SourceRow] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_extracted(self) -> int:
        return len(self.rows)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class BaseExtractor(ABC):
    """
    Base class for data extractors.

    Subclasses implement `stream`; `extract` collects the stream into an
    ExtractionResult.
    """

    def __init__(self, object_type: str):
        self.object_type = object_type
        self._errors: List[Dict[str, Any]] = []

    @abstractmethod
    def stream(self) -> Iterator[SourceRow]:
        """Yield source rows one at a time."""

    def extract(self) -> ExtractionResult:
        """Extract every row."""
        self._errors = []
        result = ExtractionResult(object_type=self.object_type, started_at=datetime.utcnow())
        for row in self.stream():
            result.rows.append(row)
        result.errors = list(self._errors)
        result.completed_at = datetime.utcnow()
        return result

    def add_error(self, message: str, row: Optional[Dict[str, Any]] = None) -> None:
        self._errors.append({
            "object_type": self.object_type,
            "message": message,
            "row": row,
        })
