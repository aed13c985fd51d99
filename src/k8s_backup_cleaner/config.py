from __future__ import annotations

from dataclasses import dataclass
import os

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


@dataclass(frozen=True)
class CleanerConfig:
    namespace: str = os.getenv("BACKUP_CLEANER_NAMESPACE", "")
    backup_name: str = os.getenv("BACKUP_CLEANER_BACKUP_NAME", "")
    kubeconfig_path: str | None = os.getenv("BACKUP_CLEANER_KUBECONFIG") or None
    context: str | None = os.getenv("BACKUP_CLEANER_CONTEXT") or None
    in_cluster: bool = _env_flag("BACKUP_CLEANER_IN_CLUSTER")
    rclone_binary: str = os.getenv("BACKUP_CLEANER_RCLONE_BINARY", "rclone")
    aws_binary: str = os.getenv("BACKUP_CLEANER_AWS_BINARY", "aws")
    status_update_retries: int = int(os.getenv("BACKUP_CLEANER_STATUS_UPDATE_RETRIES", "5"))
    catalog_cache_ttl_seconds: float = float(os.getenv("BACKUP_CLEANER_CATALOG_CACHE_TTL_SECONDS", "30"))
    log_level: str = os.getenv("BACKUP_CLEANER_LOG_LEVEL", "INFO")


def validate_config(config: CleanerConfig) -> None:
    if not config.namespace.strip():
        raise ValueError("namespace is required (--namespace or BACKUP_CLEANER_NAMESPACE)")
    if not config.backup_name.strip():
        raise ValueError("backup name is required (--backup-name or BACKUP_CLEANER_BACKUP_NAME)")
    if config.status_update_retries < 0:
        raise ValueError("status_update_retries must be >= 0")
    if config.catalog_cache_ttl_seconds < 0:
        raise ValueError("catalog_cache_ttl_seconds must be >= 0")
