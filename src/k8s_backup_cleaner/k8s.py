from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from kubernetes import client, config
from kubernetes.client import ApiException

BACKUP_GROUP = "pingcap.com"
BACKUP_VERSION = "v1alpha1"
BACKUP_PLURAL = "backups"


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    custom_objects_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    kubeconfig = str(Path(kubeconfig_path.strip()).expanduser()) if kubeconfig_path and kubeconfig_path.strip() else None
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=kubeconfig, context=context)
    except Exception as error:  # pylint: disable=broad-except
        source = "in-cluster service account" if in_cluster else f"kubeconfig {kubeconfig or '(default)'}"
        if context and not in_cluster:
            source = f"{source}, context {context}"
        raise KubernetesAuthenticationError(
            f"backup cleaner could not authenticate to Kubernetes using {source}: "
            f"{str(error).strip() or error.__class__.__name__}. {_authentication_hint(in_cluster)}"
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


def format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _authentication_hint(in_cluster: bool) -> str:
    if in_cluster:
        return (
            "The cleaner job's service account must be mounted and bound to a role that can get, list "
            f"and update {BACKUP_PLURAL}.{BACKUP_GROUP} status."
        )
    return "Pass --kubeconfig/--context or set BACKUP_CLEANER_KUBECONFIG to a cluster that serves Backup resources."
