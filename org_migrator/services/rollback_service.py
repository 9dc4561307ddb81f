"""Rollback service: deletes target records created by a session."""

import logging
from typing import Dict, List, Optional

from ..clients.base import PlatformClient, WriteResult
from ..errors import AuthError, ConnectivityError, TransientApiError
from ..models.record import MigrationRecord, RecordStatus, RollbackResult
from ..retry import RetryPolicy
from ..storage.base import MigrationStore
from .token_manager import TokenManager

logger = logging.getLogger(__name__)


class RollbackService:
    """
    Best-effort deletion of previously loaded records.

    Records are grouped by object type and deleted group by group in the
    order given, so callers pass children before parents. A failed deletion
    never stops the remaining ones.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        store: Optional[MigrationStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.token_manager = token_manager
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_config(token_manager.config)

    def rollback(self, records: List[MigrationRecord], target_org_id: str) -> RollbackResult:
        """
        Delete the target records behind `records`.

        Args:
            records: Records to undo, children before parents
            target_org_id: Organisation the records were loaded into

        Returns:
            RollbackResult counting deletions and failures; each failure is
            reported with the target record id

        Raises:
            AuthError: the target organisation cannot be reached at all
        """
        result = RollbackResult()
        if not records:
            return result

        groups: Dict[str, List[MigrationRecord]] = {}
        for record in records:
            if not record.target_id:
                result.add_failure(record.source_id, "No target record id to delete")
                continue
            groups.setdefault(record.object_type, []).append(record)

        if not groups:
            return result

        client = self.token_manager.get_client(target_org_id)
        logger.info(f"Rolling back {sum(len(g) for g in groups.values())} records in {target_org_id}")

        for object_type, group in groups.items():
            ids = [record.target_id for record in group]
            try:
                client, delete_results = self._delete(client, target_org_id, object_type, ids)
            except (TransientApiError, ConnectivityError) as e:
                logger.error(f"Deleting {len(ids)} {object_type} records failed: {e}")
                for record in group:
                    result.add_failure(record.target_id, e.message)
                continue

            if len(delete_results) != len(group):
                message = f"Target returned {len(delete_results)} results for {len(group)} deletions"
                logger.error(f"Rollback of {object_type}: {message}")
                for record in group:
                    result.add_failure(record.target_id, message)
                continue

            for record, delete_result in zip(group, delete_results):
                if delete_result.success:
                    result.deleted_records += 1
                    self._mark_rolled_back(record)
                else:
                    result.add_failure(record.target_id, delete_result.message or "Delete failed")

        logger.info(
            f"Rollback in {target_org_id}: {result.deleted_records} deleted, "
            f"{result.failed_deletions} failed"
        )
        return result

    def _delete(
        self,
        client: PlatformClient,
        org_id: str,
        object_type: str,
        ids: List[str],
    ):
        def call() -> List[WriteResult]:
            return client.bulk_delete(object_type, ids)

        try:
            return client, self.retry_policy.call(call, description=f"Deleting {object_type}")
        except AuthError:
            logger.info(f"Target session rejected while deleting {object_type}; refreshing token")
            client = self.token_manager.refresh_after_auth_error(org_id, client)
            return client, self.retry_policy.call(call, description=f"Deleting {object_type}")

    def _mark_rolled_back(self, record: MigrationRecord) -> None:
        if record.status != RecordStatus.SUCCESS:
            return
        record.transition(RecordStatus.SKIPPED, "Rolled back")
        if self.store is not None:
            self.store.update_record(record)
