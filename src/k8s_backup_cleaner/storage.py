from __future__ import annotations

from dataclasses import dataclass
import logging
import shutil
import subprocess
import threading
from urllib.parse import urlparse

from .models import (
    STORAGE_KIND_AZBLOB,
    STORAGE_KIND_GCS,
    STORAGE_KIND_LOCAL,
    STORAGE_KIND_S3,
    BackupRecord,
    StorageProvider,
)

logger = logging.getLogger(__name__)

_S3_PROVIDER_NAMES = {
    "aws": "AWS",
    "alibaba": "Alibaba",
    "ceph": "Ceph",
    "digitalocean": "DigitalOcean",
    "dreamhost": "Dreamhost",
    "ibmcos": "IBMCOS",
    "minio": "Minio",
    "netease": "Netease",
    "wasabi": "Wasabi",
}

_SCHEME_BACKENDS = {
    "s3": ":s3:",
    "gcs": ":gcs:",
    "gs": ":gcs:",
    "azure": ":azureblob:",
    "azblob": ":azureblob:",
}


class CleanupError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class RemoteCommandError(CleanupError):
    """Raised when an external storage command exits unsuccessfully."""


class CleanupCancelledError(CleanupError):
    def __init__(self, *, stage: str) -> None:
        super().__init__(stage=stage, reason="cancelled by termination signal")


@dataclass(frozen=True)
class RemoteStorageOptions:
    kind: str
    flags: tuple[str, ...] = ()


def get_remote_options(provider: StorageProvider | None) -> RemoteStorageOptions:
    if provider is None:
        raise CleanupError(stage="options", reason="backup has no storage provider configured")

    if provider.kind == STORAGE_KIND_S3:
        provider_name = _S3_PROVIDER_NAMES.get(provider.provider.lower(), "Other") if provider.provider else "AWS"
        flags = [f"--s3-provider={provider_name}", "--s3-env-auth=true"]
        if provider.region:
            flags.append(f"--s3-region={provider.region}")
        if provider.endpoint:
            flags.append(f"--s3-endpoint={provider.endpoint}")
        if provider.storage_class:
            flags.append(f"--s3-storage-class={provider.storage_class}")
        flags.extend(provider.options)
        return RemoteStorageOptions(kind=STORAGE_KIND_S3, flags=tuple(flags))

    if provider.kind == STORAGE_KIND_GCS:
        flags = ["--gcs-env-auth=true"]
        if provider.project_id:
            flags.append(f"--gcs-project-number={provider.project_id}")
        if provider.storage_class:
            flags.append(f"--gcs-storage-class={provider.storage_class}")
        return RemoteStorageOptions(kind=STORAGE_KIND_GCS, flags=tuple(flags))

    if provider.kind == STORAGE_KIND_AZBLOB:
        flags = ["--azureblob-env-auth=true"]
        if provider.storage_class:
            flags.append(f"--azureblob-access-tier={provider.storage_class}")
        return RemoteStorageOptions(kind=STORAGE_KIND_AZBLOB, flags=tuple(flags))

    if provider.kind == STORAGE_KIND_LOCAL:
        return RemoteStorageOptions(kind=STORAGE_KIND_LOCAL)

    raise CleanupError(stage="options", reason=f"unsupported storage provider: {provider.kind}")


def to_rclone_remote(backup_path: str) -> str:
    """Translate a backup path such as ``s3://bucket/key`` into an rclone remote."""
    parsed = urlparse(backup_path)
    scheme = parsed.scheme.lower()
    if scheme == "local":
        return "/" + f"{parsed.netloc}{parsed.path}".lstrip("/")
    backend = _SCHEME_BACKENDS.get(scheme)
    if backend is None:
        raise CleanupError(stage="options", reason=f"unsupported backup path scheme in {backup_path!r}")
    return f"{backend}{parsed.netloc}{parsed.path}"


def join_backup_path(backup_path: str, name: str) -> str:
    return f"{backup_path.rstrip('/')}/{name}"


class RcloneBackupDataRemover:
    def __init__(self, *, rclone_binary: str = "rclone", cancel_event: threading.Event | None = None) -> None:
        self.rclone_binary = rclone_binary
        self.cancel_event = cancel_event or threading.Event()

    def clean_remote_backup_data(self, backup_path: str, options: RemoteStorageOptions) -> None:
        logger.info(f"deleting backup object {backup_path}")
        self._run_rclone(stage="delete", arguments=["deletefile", *options.flags, to_rclone_remote(backup_path)])

    def clean_br_remote_backup_data(self, record: BackupRecord) -> None:
        options = get_remote_options(record.storage_provider)
        logger.info(f"purging BR backup directory {record.status.backup_path}")
        self.purge(record.status.backup_path, options)

    def purge(self, backup_path: str, options: RemoteStorageOptions) -> None:
        self._run_rclone(stage="delete", arguments=["purge", *options.flags, to_rclone_remote(backup_path)])

    def read_file(self, backup_path: str, options: RemoteStorageOptions) -> str:
        return self._run_rclone(stage="read", arguments=["cat", *options.flags, to_rclone_remote(backup_path)])

    def delete_file(self, backup_path: str, options: RemoteStorageOptions) -> None:
        self._run_rclone(stage="delete", arguments=["deletefile", *options.flags, to_rclone_remote(backup_path)])

    def _run_rclone(self, *, stage: str, arguments: list[str]) -> str:
        if self.cancel_event.is_set():
            raise CleanupCancelledError(stage=stage)

        rclone = shutil.which(self.rclone_binary)
        if rclone is None:
            raise CleanupError(stage=stage, reason=f"{self.rclone_binary} is required for backup cleanup but was not found in PATH")

        completed = subprocess.run([rclone, *arguments], check=False, capture_output=True, text=True)
        if completed.returncode != 0:
            raise RemoteCommandError(
                stage=stage,
                reason=completed.stderr.strip() or completed.stdout.strip() or f"rclone {arguments[0]} failed",
            )
        return completed.stdout
