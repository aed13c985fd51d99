from __future__ import annotations

from datetime import datetime, timezone

import pytest

from k8s_backup_cleaner.catalog import BackupNotFoundError
from k8s_backup_cleaner.models import (
    BACKUP_MODE_NORMAL,
    BACKUP_MODE_VOLUME_SNAPSHOT,
    STORAGE_KIND_S3,
    BackupCondition,
    BackupRecord,
    BackupSizeUpdate,
    BackupStatus,
    BRConfig,
    StorageProvider,
)


def make_backup(
    name: str,
    *,
    started_hour: int | None = 1,
    mode: str = BACKUP_MODE_NORMAL,
    backup_path: str | None = None,
    br: BRConfig | None = None,
    namespace: str = "tidb",
) -> BackupRecord:
    time_started = None
    if started_hour is not None:
        time_started = datetime(2026, 3, 1, started_hour, 0, tzinfo=timezone.utc)
    return BackupRecord(
        namespace=namespace,
        name=name,
        mode=mode,
        br=br,
        storage_provider=StorageProvider(kind=STORAGE_KIND_S3, bucket="backups", region="us-west-2"),
        status=BackupStatus(
            backup_path=f"s3://backups/{name}" if backup_path is None else backup_path,
            time_started=time_started,
        ),
    )


def make_volume_snapshot_backup(name: str, *, started_hour: int | None = 1, **kwargs) -> BackupRecord:
    return make_backup(name, started_hour=started_hour, mode=BACKUP_MODE_VOLUME_SNAPSHOT, **kwargs)


class FakeCatalog:
    def __init__(self, records: list[BackupRecord], *, list_error: Exception | None = None) -> None:
        self.records = records
        self.list_error = list_error
        self.list_calls: list[str] = []

    def get(self, namespace: str, name: str) -> BackupRecord:
        for record in self.records:
            if record.namespace == namespace and record.name == name:
                return record
        raise BackupNotFoundError(namespace, name)

    def list(self, namespace: str, label_selector: str = "") -> list[BackupRecord]:
        self.list_calls.append(namespace)
        if self.list_error is not None:
            raise self.list_error
        return [record for record in self.records if record.namespace == namespace]


class RecordingStatusUpdater:
    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.updates: list[tuple[str, BackupCondition, BackupSizeUpdate | None]] = []

    def update(
        self,
        record: BackupRecord,
        condition: BackupCondition,
        size_update: BackupSizeUpdate | None = None,
    ) -> None:
        self.updates.append((record.name, condition, size_update))
        error = self.errors.get(record.name)
        if error is not None:
            raise error
        record.status.conditions.append(condition)

    def updates_for(self, name: str) -> list[tuple[BackupCondition, BackupSizeUpdate | None]]:
        return [(condition, size_update) for record_name, condition, size_update in self.updates if record_name == name]


@pytest.fixture
def status_updater() -> RecordingStatusUpdater:
    return RecordingStatusUpdater()
