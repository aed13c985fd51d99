from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import threading
from typing import Iterable, Protocol

from .catalog import CatalogError
from .chain import BackupLister, find_successor
from .models import (
    CONDITION_CLEAN,
    CONDITION_COMPLETE,
    CONDITION_FAILED,
    CONDITION_STATUS_TRUE,
    BackupCondition,
    BackupRecord,
    BackupSizeUpdate,
    BRConfig,
)
from .signals import termination_signal_scope
from .status import BackupConditionUpdater
from .storage import RemoteStorageOptions, get_remote_options

logger = logging.getLogger(__name__)

REASON_BACKUP_PATH_IS_EMPTY = "BackupPathIsEmpty"
REASON_CLEAN_BACKUP_DATA_FAILED = "CleanBackupDataFailed"

_SI_SIZE_SUFFIXES = ("B", "kB", "MB", "GB", "TB", "PB", "EB")


class BackupLookupError(RuntimeError):
    """Raised when the backup to clean cannot be fetched from the catalog."""


class CleanupAggregateError(RuntimeError):
    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = tuple(errors)
        messages = [str(error) for error in self.errors]
        super().__init__(messages[0] if len(messages) == 1 else f"[{', '.join(messages)}]")


def aggregate_errors(errors: Iterable[BaseException | None]) -> CleanupAggregateError | None:
    collected = [error for error in errors if error is not None]
    if not collected:
        return None
    return CleanupAggregateError(collected)


class BackupCatalogReader(BackupLister, Protocol):
    def get(self, namespace: str, name: str) -> BackupRecord: ...


class BackupDataRemover(Protocol):
    def clean_remote_backup_data(self, backup_path: str, options: RemoteStorageOptions) -> None: ...

    def clean_br_remote_backup_data(self, record: BackupRecord) -> None: ...


class VolumeSnapshotBackend(Protocol):
    def clean_backup_meta_with_volume_snapshots(self, record: BackupRecord) -> None: ...

    def calc_volume_snapshot_backup_size(self, record: BackupRecord) -> tuple[int, Exception | None]: ...


@dataclass(frozen=True)
class VolumeSnapshotCleanup:
    pass


@dataclass(frozen=True)
class DedicatedToolCleanup:
    br: BRConfig


@dataclass(frozen=True)
class GenericCleanup:
    backup_path: str
    options: RemoteStorageOptions


CleanupStrategy = VolumeSnapshotCleanup | DedicatedToolCleanup | GenericCleanup


def resolve_cleanup_strategy(record: BackupRecord) -> CleanupStrategy:
    if record.is_volume_snapshot:
        return VolumeSnapshotCleanup()
    if record.br is not None:
        return DedicatedToolCleanup(br=record.br)
    return GenericCleanup(
        backup_path=record.status.backup_path,
        options=get_remote_options(record.storage_provider),
    )


@dataclass(frozen=True)
class SuccessorUpdateOutcome:
    backup: str
    size_update: BackupSizeUpdate
    size_error: Exception | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class CleanupOutcome:
    """Result of one cleanup: the target's error plus the separate successor outcome.

    ``successor`` errors never feed into ``error``.
    """

    backup: str
    error: Exception | None = None
    successor: SuccessorUpdateOutcome | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class BackupCleaner:
    def __init__(
        self,
        *,
        catalog: BackupCatalogReader,
        status_updater: BackupConditionUpdater,
        remover: BackupDataRemover,
        volume_snapshots: VolumeSnapshotBackend,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.catalog = catalog
        self.status_updater = status_updater
        self.remover = remover
        self.volume_snapshots = volume_snapshots
        self.cancel_event = cancel_event or threading.Event()

    def process_clean_backup(self, namespace: str, name: str) -> CleanupOutcome:
        with termination_signal_scope(self.cancel_event, f"clean {namespace}/{name}"):
            try:
                record = self.catalog.get(namespace, name)
            except CatalogError as error:
                raise BackupLookupError(f"can't find backup {namespace}/{name}: {error}") from error

            return self.perform_clean_backup(record.deep_copy())

    def perform_clean_backup(self, record: BackupRecord) -> CleanupOutcome:
        if not record.status.backup_path:
            logger.error(f"backup {record} backup path is empty")
            error = self._write_condition(
                record,
                BackupCondition(
                    type=CONDITION_FAILED,
                    status=CONDITION_STATUS_TRUE,
                    reason=REASON_BACKUP_PATH_IS_EMPTY,
                    message=f"the cluster {record} backup path is empty",
                ),
            )
            return CleanupOutcome(backup=str(record), error=error)

        successor_outcome: SuccessorUpdateOutcome | None = None
        if record.is_volume_snapshot:
            # Snapshots are incremental per volume: removing this backup changes
            # the size of the next volume-snapshot backup in the chain.
            successor = find_successor(self.catalog, record)
            if successor is None:
                logger.info(f"no later volume-snapshot backup depends on backup {record}")

            cleanup_error = self.clean(record)

            if successor is not None:
                successor_outcome = self.update_volume_snapshot_backup_size(successor.deep_copy())
        else:
            cleanup_error = self.clean(record)

        return CleanupOutcome(
            backup=str(record),
            error=self.report(record, cleanup_error),
            successor=successor_outcome,
        )

    def clean(self, record: BackupRecord) -> Exception | None:
        try:
            strategy = resolve_cleanup_strategy(record)
            if isinstance(strategy, VolumeSnapshotCleanup):
                self.volume_snapshots.clean_backup_meta_with_volume_snapshots(record)
            elif isinstance(strategy, DedicatedToolCleanup):
                self.remover.clean_br_remote_backup_data(record)
            else:
                self.remover.clean_remote_backup_data(strategy.backup_path, strategy.options)
        except Exception as error:  # pylint: disable=broad-except
            logger.error(f"clean backup {record} data at {record.status.backup_path} failed: {error}")
            return error
        return None

    def report(self, record: BackupRecord, cleanup_error: Exception | None) -> Exception | None:
        if cleanup_error is not None:
            write_error = self._write_condition(
                record,
                BackupCondition(
                    type=CONDITION_FAILED,
                    status=CONDITION_STATUS_TRUE,
                    reason=REASON_CLEAN_BACKUP_DATA_FAILED,
                    message=str(cleanup_error),
                ),
            )
            return aggregate_errors([cleanup_error, write_error])

        logger.info(f"clean backup {record} data at {record.status.backup_path} success")
        return self._write_condition(record, BackupCondition(type=CONDITION_CLEAN, status=CONDITION_STATUS_TRUE))

    def update_volume_snapshot_backup_size(self, record: BackupRecord) -> SuccessorUpdateOutcome:
        try:
            backup_size, size_error = self.volume_snapshots.calc_volume_snapshot_backup_size(record)
        except Exception as error:  # pylint: disable=broad-except
            backup_size, size_error = 0, error
        if size_error is not None:
            logger.warning(f"failed to calculate size of backup {record}, recording {backup_size} bytes: {size_error}")

        size_update = BackupSizeUpdate(backup_size=backup_size, backup_size_readable=format_bytes(backup_size))
        error = self._write_condition(
            record,
            BackupCondition(type=CONDITION_COMPLETE, status=CONDITION_STATUS_TRUE),
            size_update,
        )
        if error is not None:
            logger.error(f"failed to update size of backup {record}: {error}")
        else:
            logger.info(f"backup {record} size updated to {size_update.backup_size_readable}")

        return SuccessorUpdateOutcome(
            backup=str(record),
            size_update=size_update,
            size_error=size_error,
            error=error,
        )

    def _write_condition(
        self,
        record: BackupRecord,
        condition: BackupCondition,
        size_update: BackupSizeUpdate | None = None,
    ) -> Exception | None:
        try:
            self.status_updater.update(record, condition, size_update)
        except Exception as error:  # pylint: disable=broad-except
            return error
        return None


def format_bytes(size: int) -> str:
    """Render ``size`` with SI suffixes, e.g. ``82854982`` as ``83 MB``."""
    size = max(size, 0)
    if size < 10:
        return f"{size} B"
    exponent = min(int(math.floor(math.log(size) / math.log(1000))), len(_SI_SIZE_SUFFIXES) - 1)
    value = math.floor(size / math.pow(1000, exponent) * 10 + 0.5) / 10
    if value < 10:
        return f"{value:.1f} {_SI_SIZE_SUFFIXES[exponent]}"
    return f"{value:.0f} {_SI_SIZE_SUFFIXES[exponent]}"
