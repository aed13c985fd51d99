"""Navigation of the chronological chain of volume-snapshot backups.

Volume snapshots are incremental per volume, so every volume-snapshot backup
depends on the one taken before it. Chain order is start time, then name, so
backups started at the same instant still have a reproducible order.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Iterable, Protocol

from .models import BackupRecord

logger = logging.getLogger(__name__)

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class BackupLister(Protocol):
    def list(self, namespace: str, label_selector: str = "") -> list[BackupRecord]: ...


def chain_sort_key(record: BackupRecord) -> tuple[datetime, str]:
    started = record.status.time_started
    if started is None:
        return _EARLIEST, record.name
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return started, record.name


def sort_backups_by_start_time(records: Iterable[BackupRecord]) -> list[BackupRecord]:
    return sorted(records, key=chain_sort_key)


def first_volume_snapshot_backup(records: Iterable[BackupRecord]) -> BackupRecord | None:
    for record in records:
        if record.is_volume_snapshot:
            return record
    return None


def find_successor(lister: BackupLister, target: BackupRecord) -> BackupRecord | None:
    """Return the next volume-snapshot backup after ``target``, or ``None``.

    Listing failures are logged and treated as "no successor": the successor
    size refresh is best-effort and must never block the target's cleanup.
    """
    try:
        records = lister.list(target.namespace)
    except Exception as error:  # pylint: disable=broad-except
        logger.error(f"failed to list backups in namespace {target.namespace} to find successor of {target}: {error}")
        return None

    ordered = sort_backups_by_start_time(records)
    for index, record in enumerate(ordered):
        if record.name == target.name:
            return first_volume_snapshot_backup(ordered[index + 1 :])

    logger.warning(f"backup {target} not found in namespace listing, skipping successor lookup")
    return None
