"""Base loader interface for target organisations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..errors import AuthError, ConnectivityError, MigrationError
from ..models.record import MigrationResult, TransformedRecord

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """Result of a load operation."""
    object_type: str
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    batches: int = 0
    results: List[MigrationResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    fatal_error: Optional[MigrationError] = None  # Set when loading stopped early

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return self.total_succeeded / self.total_attempted

    @property
    def created_ids(self) -> List[str]:
        return [r.target_id for r in self.results if r.success and r.target_id]

    def add(self, result: MigrationResult) -> None:
        self.results.append(result)
        self.total_attempted += 1
        if result.success:
            self.total_succeeded += 1
        else:
            self.total_failed += 1
            self.errors.append({
                "record_id": result.record_id,
                "error": result.error,
                "error_code": result.error_code,
            })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "batches": self.batches,
            "success_rate": self.success_rate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
            "fatal_error": self.fatal_error.message if self.fatal_error else None,
        }


class BaseLoader(ABC):
    """
    Base class for data loaders.

    Loaders write transformed records to a target in fixed-size batches and
    report one MigrationResult per input record.
    """

    def __init__(self, object_type: str, batch_size: int = 200):
        """
        Initialize the loader.

        Args:
            object_type: Target object type
            batch_size: Number of records per batch
        """
        self.object_type = object_type
        self.batch_size = max(1, batch_size)

    @abstractmethod
    def load_batch(self, records: List[TransformedRecord]) -> List[MigrationResult]:
        """
        Load one batch.

        Returns:
            One MigrationResult per input record, in input order

        Raises:
            AuthError, ConnectivityError: when the target cannot be reached at all
        """

    def load_all(self, records: List[TransformedRecord]) -> LoadResult:
        """
        Load all records in batches.

        A batch that cannot reach the target stops the load; that batch and
        every later one are reported as failed so each input still has an
        outcome.
        """
        result = LoadResult(object_type=self.object_type)
        result.started_at = datetime.utcnow()

        batches = [records[i:i + self.batch_size] for i in range(0, len(records), self.batch_size)]
        logger.info(f"Loading {len(records)} {self.object_type} records in {len(batches)} batches...")

        for index, batch in enumerate(batches):
            try:
                batch_results = self.load_batch(batch)
            except (AuthError, ConnectivityError) as e:
                logger.error(f"Loading {self.object_type} stopped at batch {index + 1}/{len(batches)}: {e}")
                result.fatal_error = e
                for pending in batches[index:]:
                    for record in pending:
                        result.add(MigrationResult(
                            record_id=record.source_id,
                            success=False,
                            error=e.message,
                            error_kind=e.kind,
                        ))
                break

            result.batches += 1
            for batch_result in batch_results:
                result.add(batch_result)

        result.completed_at = datetime.utcnow()
        logger.info(
            f"Loaded {self.object_type}: {result.total_succeeded}/{result.total_attempted} succeeded"
        )
        return result
