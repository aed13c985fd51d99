from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

BACKUP_MODE_NORMAL = "Normal"
BACKUP_MODE_VOLUME_SNAPSHOT = "VolumeSnapshot"

CONDITION_COMPLETE = "Complete"
CONDITION_CLEAN = "Clean"
CONDITION_FAILED = "Failed"

CONDITION_STATUS_TRUE = "True"
CONDITION_STATUS_FALSE = "False"
CONDITION_STATUS_UNKNOWN = "Unknown"

STORAGE_KIND_S3 = "s3"
STORAGE_KIND_GCS = "gcs"
STORAGE_KIND_AZBLOB = "azblob"
STORAGE_KIND_LOCAL = "local"


@dataclass(frozen=True)
class BackupCondition:
    type: str
    status: str = CONDITION_STATUS_TRUE
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None


@dataclass(frozen=True)
class BackupSizeUpdate:
    backup_size: int
    backup_size_readable: str


@dataclass(frozen=True)
class StorageProvider:
    kind: str
    bucket: str = ""
    prefix: str = ""
    path: str = ""
    region: str = ""
    endpoint: str = ""
    provider: str = ""
    storage_class: str = ""
    project_id: str = ""
    container: str = ""
    secret_name: str = ""
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class BRConfig:
    cluster: str
    cluster_namespace: str = ""
    options: tuple[str, ...] = ()


@dataclass
class BackupStatus:
    backup_path: str = ""
    time_started: datetime | None = None
    backup_size: int = 0
    backup_size_readable: str = ""
    conditions: list[BackupCondition] = field(default_factory=list)


@dataclass(frozen=True)
class BackupRecord:
    namespace: str
    name: str
    mode: str = BACKUP_MODE_NORMAL
    br: BRConfig | None = None
    storage_provider: StorageProvider | None = None
    status: BackupStatus = field(default_factory=BackupStatus)
    resource_version: str | None = None

    @property
    def is_volume_snapshot(self) -> bool:
        return self.mode == BACKUP_MODE_VOLUME_SNAPSHOT

    def deep_copy(self) -> BackupRecord:
        status = replace(self.status, conditions=list(self.status.conditions))
        return replace(self, status=status)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"
