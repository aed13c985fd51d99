"""Volume-snapshot backup primitives backed by the ``aws`` CLI.

A volume-snapshot backup directory holds a ``backupmeta`` JSON document that
lists the EBS snapshot taken for every TiKV volume.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import shutil
import subprocess
import threading
from typing import Any

from .models import BackupRecord
from .storage import (
    CleanupCancelledError,
    CleanupError,
    RcloneBackupDataRemover,
    RemoteCommandError,
    get_remote_options,
    join_backup_path,
)

logger = logging.getLogger(__name__)

BACKUP_META_FILE_NAME = "backupmeta"
SNAPSHOT_NOT_FOUND_CODE = "InvalidSnapshot.NotFound"
LIST_BLOCKS_PAGE_SIZE = 10000


class BackupMetaError(CleanupError):
    """Raised when the volume-snapshot backup metadata is missing or malformed."""


@dataclass(frozen=True)
class VolumeSnapshot:
    store_id: int
    volume_id: str
    snapshot_id: str


@dataclass(frozen=True)
class VolumeBackupMeta:
    region: str
    snapshots: tuple[VolumeSnapshot, ...]


def parse_backup_meta(content: str) -> VolumeBackupMeta:
    try:
        document = json.loads(content)
    except json.JSONDecodeError as error:
        raise BackupMetaError(stage="meta", reason=f"backup meta is not valid JSON: {error}") from error
    if not isinstance(document, dict):
        raise BackupMetaError(stage="meta", reason="backup meta must be a JSON object")

    tikv = document.get("tikv") or {}
    if not isinstance(tikv, dict):
        raise BackupMetaError(stage="meta", reason="backup meta field 'tikv' must be an object")
    stores = tikv.get("stores") or []
    if not isinstance(stores, list):
        raise BackupMetaError(stage="meta", reason="backup meta field 'tikv.stores' must be a list")

    snapshots: list[VolumeSnapshot] = []
    for store in stores:
        if not isinstance(store, dict):
            raise BackupMetaError(stage="meta", reason=f"backup meta store entry must be an object, got {store!r}")
        store_id = _store_id(store.get("store_id"))
        volumes = store.get("volumes") or []
        if not isinstance(volumes, list):
            raise BackupMetaError(stage="meta", reason=f"volumes of store {store_id} must be a list")
        for volume in volumes:
            if not isinstance(volume, dict):
                raise BackupMetaError(stage="meta", reason=f"volume entry of store {store_id} must be an object")
            snapshot_id = volume.get("snapshot_id") or ""
            if not snapshot_id:
                continue
            snapshots.append(
                VolumeSnapshot(
                    store_id=store_id,
                    volume_id=str(volume.get("volume_id") or volume.get("id") or ""),
                    snapshot_id=str(snapshot_id),
                )
            )

    return VolumeBackupMeta(region=str(document.get("region") or ""), snapshots=tuple(snapshots))


def _store_id(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise BackupMetaError(stage="meta", reason=f"store_id must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise BackupMetaError(stage="meta", reason=f"store_id must be an integer, got {value!r}") from error


class VolumeSnapshotBackupManager:
    def __init__(
        self,
        *,
        remover: RcloneBackupDataRemover,
        aws_binary: str = "aws",
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.remover = remover
        self.aws_binary = aws_binary
        self.cancel_event = cancel_event or remover.cancel_event

    def read_backup_meta(self, record: BackupRecord) -> VolumeBackupMeta:
        if not record.status.backup_path:
            raise BackupMetaError(stage="meta", reason=f"backup {record} has no backup path")
        options = get_remote_options(record.storage_provider)
        meta_path = join_backup_path(record.status.backup_path, BACKUP_META_FILE_NAME)
        content = self.remover.read_file(meta_path, options)
        return parse_backup_meta(content)

    def clean_backup_meta_with_volume_snapshots(self, record: BackupRecord) -> None:
        meta = self.read_backup_meta(record)
        for snapshot in meta.snapshots:
            self._delete_snapshot(snapshot=snapshot, region=meta.region)

        options = get_remote_options(record.storage_provider)
        self.remover.purge(record.status.backup_path, options)
        logger.info(f"deleted {len(meta.snapshots)} volume snapshots and backup meta of {record}")

    def calc_volume_snapshot_backup_size(self, record: BackupRecord) -> tuple[int, Exception | None]:
        """Sum the allocated block bytes of every snapshot in the backup.

        Returns the bytes counted so far together with the first error, so a
        caller can still record a best-effort size.
        """
        total = 0
        try:
            meta = self.read_backup_meta(record)
            for snapshot in meta.snapshots:
                total += self._snapshot_allocated_bytes(snapshot=snapshot, region=meta.region)
        except CleanupError as error:
            return total, error
        return total, None

    def _delete_snapshot(self, *, snapshot: VolumeSnapshot, region: str) -> None:
        arguments = ["ec2", "delete-snapshot", "--snapshot-id", snapshot.snapshot_id]
        if region:
            arguments.extend(["--region", region])
        try:
            self._run_aws(stage="snapshot", arguments=arguments)
        except RemoteCommandError as error:
            if SNAPSHOT_NOT_FOUND_CODE not in str(error):
                raise
            logger.warning(f"snapshot {snapshot.snapshot_id} of volume {snapshot.volume_id} is already deleted")

    def _snapshot_allocated_bytes(self, *, snapshot: VolumeSnapshot, region: str) -> int:
        total = 0
        next_token: str | None = None
        while True:
            arguments = [
                "ebs",
                "list-snapshot-blocks",
                "--snapshot-id",
                snapshot.snapshot_id,
                "--max-results",
                str(LIST_BLOCKS_PAGE_SIZE),
                "--no-paginate",
                "--output",
                "json",
            ]
            if region:
                arguments.extend(["--region", region])
            if next_token:
                arguments.extend(["--next-token", next_token])

            page = _parse_json_output(self._run_aws(stage="size", arguments=arguments), stage="size")
            blocks = page.get("Blocks") or []
            try:
                block_size = int(page.get("BlockSize") or 0)
            except (TypeError, ValueError) as error:
                raise CleanupError(stage="size", reason=f"unexpected BlockSize {page.get('BlockSize')!r}") from error
            total += len(blocks) * block_size
            next_token = page.get("NextToken")
            if not next_token:
                return total

    def _run_aws(self, *, stage: str, arguments: list[str]) -> str:
        if self.cancel_event.is_set():
            raise CleanupCancelledError(stage=stage)

        aws = shutil.which(self.aws_binary)
        if aws is None:
            raise CleanupError(stage=stage, reason=f"{self.aws_binary} is required for volume snapshots but was not found in PATH")

        completed = subprocess.run([aws, *arguments], check=False, capture_output=True, text=True)
        if completed.returncode != 0:
            raise RemoteCommandError(
                stage=stage,
                reason=completed.stderr.strip() or completed.stdout.strip() or f"aws {' '.join(arguments[:2])} failed",
            )
        return completed.stdout


def _parse_json_output(output: str, *, stage: str) -> dict[str, Any]:
    try:
        parsed = json.loads(output or "{}")
    except json.JSONDecodeError as error:
        raise CleanupError(stage=stage, reason=f"unexpected aws output: {error}") from error
    if not isinstance(parsed, dict):
        raise CleanupError(stage=stage, reason="unexpected aws output: expected a JSON object")
    return parsed
