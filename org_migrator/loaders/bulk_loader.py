"""Bulk loader writing batches through a platform client."""

import logging
from typing import Callable, Dict, List, Optional

from ..clients.base import PlatformClient, WriteResult
from ..errors import (
    AuthError,
    ConnectivityError,
    ErrorKind,
    TransientApiError,
    is_retryable_code,
)
from ..models.record import MigrationResult, TransformedRecord
from ..models.template import LoadSpec
from ..retry import RetryPolicy
from .base import BaseLoader

logger = logging.getLogger(__name__)

Reauthenticate = Callable[[PlatformClient], PlatformClient]


class BulkLoader(BaseLoader):
    """
    Loads records with the platform's bulk write capability.

    Whole-batch transient failures and per-record retryable errors (such as
    row locks) are retried with backoff. An AuthError gets one token refresh
    and one more try.
    """

    def __init__(
        self,
        client: PlatformClient,
        load_spec: LoadSpec,
        retry_policy: Optional[RetryPolicy] = None,
        reauthenticate: Optional[Reauthenticate] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Initialize the loader.

        Args:
            client: Target organisation client
            load_spec: The step's load specification
            retry_policy: Backoff settings for transient failures
            reauthenticate: Returns a fresh client after an AuthError
            batch_size: Override for the step's batch size
        """
        super().__init__(load_spec.object_type, batch_size or load_spec.batch_size)
        self.client = client
        self.load_spec = load_spec
        self.retry_policy = retry_policy or RetryPolicy()
        self._reauthenticate = reauthenticate

    def _write(self, records: List[TransformedRecord]) -> List[WriteResult]:
        payload = [record.data for record in records]

        def call(client: PlatformClient) -> List[WriteResult]:
            return client.bulk_write(
                self.load_spec.object_type,
                payload,
                self.load_spec.operation,
                batch_size=self.batch_size,
                external_id_field=self.load_spec.external_id_field,
            )

        try:
            return call(self.client)
        except AuthError:
            if self._reauthenticate is None:
                raise
            logger.info(f"Target session rejected while loading {self.object_type}; refreshing token")
            self.client = self._reauthenticate(self.client)
            return call(self.client)

    def load_batch(self, records: List[TransformedRecord]) -> List[MigrationResult]:
        outcomes: Dict[int, MigrationResult] = {}
        pending = list(range(len(records)))
        attempt = 0

        while pending:
            attempt += 1
            batch = [records[i] for i in pending]

            try:
                write_results = self._write(batch)
            except TransientApiError as e:
                if attempt >= self.retry_policy.max_attempts:
                    logger.error(
                        f"Batch of {len(batch)} {self.object_type} records failed after {attempt} attempts: {e}"
                    )
                    for i in pending:
                        outcomes[i] = MigrationResult(
                            record_id=records[i].source_id,
                            success=False,
                            error=e.message,
                            error_code=e.error_code,
                            error_kind=ErrorKind.TRANSIENT,
                            retry_count=attempt - 1,
                        )
                    break
                delay = self.retry_policy.delay_for(attempt, e.retry_after)
                logger.warning(
                    f"Transient error loading {self.object_type} (attempt {attempt}/"
                    f"{self.retry_policy.max_attempts}), retrying in {delay:.1f}s: {e}"
                )
                self.retry_policy.sleep(delay)
                continue

            if len(write_results) != len(batch):
                raise ConnectivityError(
                    f"Target returned {len(write_results)} results for {len(batch)} {self.object_type} records"
                )

            retry_next: List[int] = []
            for index, write_result in zip(pending, write_results):
                if write_result.success:
                    outcomes[index] = MigrationResult(
                        record_id=records[index].source_id,
                        success=True,
                        target_id=write_result.id,
                        retry_count=attempt - 1,
                    )
                elif is_retryable_code(write_result.error_code) and attempt < self.retry_policy.max_attempts:
                    retry_next.append(index)
                else:
                    retryable = is_retryable_code(write_result.error_code)
                    outcomes[index] = MigrationResult(
                        record_id=records[index].source_id,
                        success=False,
                        error=write_result.message,
                        error_code=write_result.error_code,
                        error_kind=ErrorKind.TRANSIENT if retryable else ErrorKind.DATA,
                        retry_count=attempt - 1,
                    )

            if retry_next:
                delay = self.retry_policy.delay_for(attempt)
                logger.info(f"Retrying {len(retry_next)} {self.object_type} records in {delay:.1f}s")
                self.retry_policy.sleep(delay)
            pending = retry_next

        return [outcomes[i] for i in range(len(records))]
