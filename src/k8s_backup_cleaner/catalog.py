"""Read-through, namespace-scoped access to ``Backup`` custom resources.

Listings are cached for a short TTL, so callers must treat results as
possibly stale relative to the API server.
"""

from __future__ import annotations

from datetime import datetime
import logging
import time
from typing import Any, Callable

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import BACKUP_GROUP, BACKUP_PLURAL, BACKUP_VERSION, format_api_exception_message
from .models import (
    BACKUP_MODE_NORMAL,
    BACKUP_MODE_VOLUME_SNAPSHOT,
    STORAGE_KIND_AZBLOB,
    STORAGE_KIND_GCS,
    STORAGE_KIND_LOCAL,
    STORAGE_KIND_S3,
    BackupCondition,
    BackupRecord,
    BackupStatus,
    BRConfig,
    StorageProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30.0
VOLUME_SNAPSHOT_MODE_VALUE = "volume-snapshot"


class CatalogError(RuntimeError):
    """Raised when backup records cannot be read from the cluster."""


class BackupNotFoundError(CatalogError):
    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"backup {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


class BackupCatalog:
    def __init__(
        self,
        *,
        custom_objects_api: client.CustomObjectsApi,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.custom_objects_api = custom_objects_api
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._list_cache: dict[tuple[str, str], tuple[float, list[BackupRecord]]] = {}

    def get(self, namespace: str, name: str) -> BackupRecord:
        cached = self._cached_listing(namespace, "")
        if cached is not None:
            for record in cached:
                if record.name == name:
                    return record.deep_copy()

        try:
            custom_object = self.custom_objects_api.get_namespaced_custom_object(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=namespace,
                plural=BACKUP_PLURAL,
                name=name,
            )
        except ApiException as error:
            if error.status == 404:
                raise BackupNotFoundError(namespace, name) from error
            raise CatalogError(
                format_api_exception_message(
                    operation=f"get backup '{namespace}/{name}'",
                    hint="Verify RBAC allows get on backups.pingcap.com in this namespace.",
                    error=error,
                )
            ) from error
        return backup_record_from_object(custom_object)

    def list(self, namespace: str, label_selector: str = "") -> list[BackupRecord]:
        cached = self._cached_listing(namespace, label_selector)
        if cached is not None:
            return [record.deep_copy() for record in cached]

        try:
            response = self.custom_objects_api.list_namespaced_custom_object(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=namespace,
                plural=BACKUP_PLURAL,
                label_selector=label_selector,
            )
        except ApiException as error:
            raise CatalogError(
                format_api_exception_message(
                    operation=f"list backups in namespace '{namespace}'",
                    hint="Verify RBAC allows list on backups.pingcap.com in this namespace.",
                    error=error,
                )
            ) from error

        records = [backup_record_from_object(item) for item in response.get("items") or []]
        self._list_cache[(namespace, label_selector)] = (self._clock(), records)
        logger.debug(f"listed {len(records)} backups in namespace {namespace}")
        return [record.deep_copy() for record in records]

    def invalidate(self, namespace: str | None = None) -> None:
        if namespace is None:
            self._list_cache.clear()
            return
        for key in [key for key in self._list_cache if key[0] == namespace]:
            del self._list_cache[key]

    def _cached_listing(self, namespace: str, label_selector: str) -> list[BackupRecord] | None:
        entry = self._list_cache.get((namespace, label_selector))
        if entry is None:
            return None
        fetched_at, records = entry
        if self._clock() - fetched_at > self.cache_ttl_seconds:
            del self._list_cache[(namespace, label_selector)]
            return None
        return records


def backup_record_from_object(custom_object: dict[str, Any]) -> BackupRecord:
    metadata = custom_object.get("metadata") or {}
    spec = custom_object.get("spec") or {}
    status = custom_object.get("status") or {}

    mode = BACKUP_MODE_VOLUME_SNAPSHOT if spec.get("mode") == VOLUME_SNAPSHOT_MODE_VALUE else BACKUP_MODE_NORMAL

    return BackupRecord(
        namespace=metadata.get("namespace") or "",
        name=metadata.get("name") or "",
        mode=mode,
        br=_br_config_from_spec(spec.get("br")),
        storage_provider=_storage_provider_from_spec(spec),
        status=BackupStatus(
            backup_path=status.get("backupPath") or "",
            time_started=parse_timestamp(status.get("timeStarted")),
            backup_size=int(status.get("backupSize") or 0),
            backup_size_readable=status.get("backupSizeReadable") or "",
            conditions=[_condition_from_object(item) for item in status.get("conditions") or []],
        ),
        resource_version=metadata.get("resourceVersion"),
    )


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"ignoring unparseable backup timestamp {value!r}")
        return None


def _condition_from_object(item: dict[str, Any]) -> BackupCondition:
    return BackupCondition(
        type=item.get("type") or "",
        status=item.get("status") or "",
        reason=item.get("reason") or "",
        message=item.get("message") or "",
        last_transition_time=item.get("lastTransitionTime"),
    )


def _br_config_from_spec(br_spec: dict[str, Any] | None) -> BRConfig | None:
    if br_spec is None:
        return None
    return BRConfig(
        cluster=br_spec.get("cluster") or "",
        cluster_namespace=br_spec.get("clusterNamespace") or "",
        options=tuple(br_spec.get("options") or ()),
    )


def _storage_provider_from_spec(spec: dict[str, Any]) -> StorageProvider | None:
    s3 = spec.get("s3")
    if s3:
        return StorageProvider(
            kind=STORAGE_KIND_S3,
            bucket=s3.get("bucket") or "",
            prefix=s3.get("prefix") or "",
            path=s3.get("path") or "",
            region=s3.get("region") or "",
            endpoint=s3.get("endpoint") or "",
            provider=s3.get("provider") or "",
            storage_class=s3.get("storageClass") or "",
            secret_name=s3.get("secretName") or "",
            options=tuple(s3.get("options") or ()),
        )

    gcs = spec.get("gcs")
    if gcs:
        return StorageProvider(
            kind=STORAGE_KIND_GCS,
            bucket=gcs.get("bucket") or "",
            prefix=gcs.get("prefix") or "",
            path=gcs.get("path") or "",
            project_id=gcs.get("projectId") or "",
            storage_class=gcs.get("storageClass") or "",
            secret_name=gcs.get("secretName") or "",
        )

    azblob = spec.get("azblob")
    if azblob:
        return StorageProvider(
            kind=STORAGE_KIND_AZBLOB,
            container=azblob.get("container") or "",
            prefix=azblob.get("prefix") or "",
            path=azblob.get("path") or "",
            storage_class=azblob.get("accessTier") or "",
            secret_name=azblob.get("secretName") or "",
        )

    local = spec.get("local")
    if local:
        volume_mount = local.get("volumeMount") or {}
        return StorageProvider(
            kind=STORAGE_KIND_LOCAL,
            prefix=local.get("prefix") or "",
            path=volume_mount.get("mountPath") or "",
        )

    return None
