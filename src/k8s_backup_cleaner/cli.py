"""Command-line entry point that cleans one ``Backup`` object and exits."""

from __future__ import annotations

import argparse
from dataclasses import replace
import logging
import sys
import threading

from .catalog import BackupCatalog
from .cleanup import BackupCleaner, BackupLookupError, CleanupOutcome
from .config import CleanerConfig, validate_config
from .k8s import KubernetesAuthenticationError, load_kubernetes_clients
from .snapshot import VolumeSnapshotBackupManager
from .status import KubernetesBackupStatusUpdater
from .storage import RcloneBackupDataRemover

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CLEANUP_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="k8s-backup-cleaner",
        description="Clean the remote data of a TiDB Backup object and record the outcome on its status.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    clean = subcommands.add_parser("clean", help="clean one backup")
    clean.add_argument("--namespace", help="namespace of the Backup object")
    clean.add_argument("--backup-name", help="name of the Backup object")
    clean.add_argument("--kubeconfig", help="path to a kubeconfig file")
    clean.add_argument("--context", help="kubeconfig context to use")
    clean.add_argument("--in-cluster", action="store_true", default=None, help="use the pod service account")
    clean.add_argument("--rclone-binary", help="rclone executable name or path")
    clean.add_argument("--aws-binary", help="aws CLI executable name or path")
    clean.add_argument("--status-update-retries", type=int, help="retries on status update conflicts")
    clean.add_argument("--log-level", help="logging level (DEBUG, INFO, WARNING, ERROR)")
    return parser


def config_from_args(args: argparse.Namespace, base: CleanerConfig | None = None) -> CleanerConfig:
    config = base or CleanerConfig()
    overrides = {
        "namespace": args.namespace,
        "backup_name": args.backup_name,
        "kubeconfig_path": args.kubeconfig,
        "context": args.context,
        "in_cluster": args.in_cluster,
        "rclone_binary": args.rclone_binary,
        "aws_binary": args.aws_binary,
        "status_update_retries": args.status_update_retries,
        "log_level": args.log_level,
    }
    return replace(config, **{key: value for key, value in overrides.items() if value is not None})


def build_cleaner(config: CleanerConfig) -> BackupCleaner:
    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    cancel_event = threading.Event()
    remover = RcloneBackupDataRemover(rclone_binary=config.rclone_binary, cancel_event=cancel_event)
    return BackupCleaner(
        catalog=BackupCatalog(
            custom_objects_api=clients.custom_objects_api,
            cache_ttl_seconds=config.catalog_cache_ttl_seconds,
        ),
        status_updater=KubernetesBackupStatusUpdater(
            custom_objects_api=clients.custom_objects_api,
            max_conflict_retries=config.status_update_retries,
        ),
        remover=remover,
        volume_snapshots=VolumeSnapshotBackupManager(remover=remover, aws_binary=config.aws_binary),
        cancel_event=cancel_event,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        validate_config(config)
        cleaner = build_cleaner(config)
        outcome = cleaner.process_clean_backup(config.namespace, config.backup_name)
    except (ValueError, KubernetesAuthenticationError, BackupLookupError) as error:
        logger.error(str(error))
        return EXIT_USAGE

    return _exit_code(outcome)


def _exit_code(outcome: CleanupOutcome) -> int:
    if outcome.successor is not None and outcome.successor.error is not None:
        logger.warning(f"size of backup {outcome.successor.backup} was not refreshed: {outcome.successor.error}")
    if outcome.error is not None:
        logger.error(f"clean backup {outcome.backup} failed: {outcome.error}")
        return EXIT_CLEANUP_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
