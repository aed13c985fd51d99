from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
import logging
from typing import Any, Callable, Protocol

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import BACKUP_GROUP, BACKUP_PLURAL, BACKUP_VERSION, format_api_exception_message
from .models import BackupCondition, BackupRecord, BackupSizeUpdate

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONFLICT_RETRIES = 5


class StatusUpdateError(RuntimeError):
    """Raised when a backup condition cannot be persisted."""


class BackupConditionUpdater(Protocol):
    def update(
        self,
        record: BackupRecord,
        condition: BackupCondition,
        size_update: BackupSizeUpdate | None = None,
    ) -> None: ...


class KubernetesBackupStatusUpdater:
    """Appends conditions to the ``status`` subresource of a ``Backup`` object.

    The latest object is re-read before every attempt and its resourceVersion is
    sent back, so a concurrent writer causes a 409 and a retry rather than a lost
    condition.
    """

    def __init__(
        self,
        *,
        custom_objects_api: client.CustomObjectsApi,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self.custom_objects_api = custom_objects_api
        self.max_conflict_retries = max_conflict_retries
        self._clock = clock or _utc_now_iso

    def update(
        self,
        record: BackupRecord,
        condition: BackupCondition,
        size_update: BackupSizeUpdate | None = None,
    ) -> None:
        stamped = condition
        if stamped.last_transition_time is None:
            stamped = replace(condition, last_transition_time=self._clock())

        attempts = max(1, self.max_conflict_retries + 1)
        for attempt in range(1, attempts + 1):
            latest = self._read_latest(record)
            body = _apply_status_update(latest, stamped, size_update)
            try:
                self.custom_objects_api.replace_namespaced_custom_object_status(
                    group=BACKUP_GROUP,
                    version=BACKUP_VERSION,
                    namespace=record.namespace,
                    plural=BACKUP_PLURAL,
                    name=record.name,
                    body=body,
                )
            except ApiException as error:
                if error.status == 409 and attempt < attempts:
                    logger.info(f"conflict updating status of backup {record}, retrying ({attempt}/{attempts})")
                    continue
                raise StatusUpdateError(
                    format_api_exception_message(
                        operation=f"update status of backup '{record}' with condition {stamped.type}",
                        hint="Verify RBAC allows update on backups/status.",
                        error=error,
                    )
                ) from error

            record.status.conditions.append(stamped)
            if size_update is not None:
                record.status.backup_size = size_update.backup_size
                record.status.backup_size_readable = size_update.backup_size_readable
            logger.debug(f"backup {record} status updated with condition {stamped.type}")
            return

        raise StatusUpdateError(f"status update of backup '{record}' exhausted {attempts} attempts")

    def _read_latest(self, record: BackupRecord) -> dict[str, Any]:
        try:
            return self.custom_objects_api.get_namespaced_custom_object(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=record.namespace,
                plural=BACKUP_PLURAL,
                name=record.name,
            )
        except ApiException as error:
            raise StatusUpdateError(
                format_api_exception_message(
                    operation=f"read backup '{record}' before status update",
                    hint="Verify the backup still exists and RBAC allows get on backups.",
                    error=error,
                )
            ) from error


def condition_to_object(condition: BackupCondition) -> dict[str, Any]:
    item: dict[str, Any] = {"type": condition.type, "status": condition.status}
    if condition.reason:
        item["reason"] = condition.reason
    if condition.message:
        item["message"] = condition.message
    if condition.last_transition_time:
        item["lastTransitionTime"] = condition.last_transition_time
    return item


def _apply_status_update(
    latest: dict[str, Any],
    condition: BackupCondition,
    size_update: BackupSizeUpdate | None,
) -> dict[str, Any]:
    status = dict(latest.get("status") or {})
    status["conditions"] = [*(status.get("conditions") or []), condition_to_object(condition)]
    if size_update is not None:
        status["backupSize"] = size_update.backup_size
        status["backupSizeReadable"] = size_update.backup_size_readable
    return {**latest, "status": status}


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
