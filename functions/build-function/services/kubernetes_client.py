"""Thin wrapper around the Kubernetes API used by the build services."""

import asyncio
import logging
import tempfile
import time
from pathlib import Path
from typing import Any

from azure.identity import DefaultAzureCredential
from azure.mgmt.containerservice import ContainerServiceClient
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from config import Settings
from services.job_factory import MANAGED_BY

logger = logging.getLogger(__name__)

# Constants for error codes
HTTP_NOT_FOUND = 404


def load_cluster_config(settings: Settings) -> None:
    """Load Kubernetes configuration.

    Tries the in-cluster service account first, then the local kubeconfig,
    then AKS user credentials when an AKS cluster is configured.

    Raises:
        config.ConfigException: If no configuration source is available
    """
    try:
        config.load_incluster_config()
    except config.ConfigException:
        try:
            config.load_kube_config()
        except config.ConfigException:
            if not (settings.aks_cluster_name and settings.azure_subscription_id):
                logger.exception("Failed to load Kubernetes configuration")
                raise
            _load_aks_kubeconfig(settings)
            return
    logger.debug("Kubernetes configuration loaded")


def _load_aks_kubeconfig(settings: Settings) -> None:
    aks_client = ContainerServiceClient(
        credential=DefaultAzureCredential(),
        subscription_id=settings.azure_subscription_id,
    )
    aks_credential = aks_client.managed_clusters.list_cluster_user_credentials(
        resource_group_name=settings.aks_resource_group,
        resource_name=settings.aks_cluster_name,
    )

    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write(aks_credential.kubeconfigs[0].value.decode("utf-8"))
        kubeconfig_path = f.name

    try:
        config.load_kube_config(config_file=kubeconfig_path)
        logger.info(f"Loaded kubeconfig for AKS cluster {settings.aks_cluster_name}")
    finally:
        Path(kubeconfig_path).unlink()


class ClusterClient:
    """Namespace, Job, Pod and Event access for one cluster."""

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        batch_api: client.BatchV1Api | None = None,
    ) -> None:
        self.core_api = core_api or client.CoreV1Api()
        self.batch_api = batch_api or client.BatchV1Api()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClusterClient":
        load_cluster_config(settings)
        return cls()

    def read_namespace(self, name: str) -> Any:
        return self.core_api.read_namespace(name=name)

    def create_namespace(self, name: str, labels: dict[str, str] | None = None) -> Any:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels or {}))
        return self.core_api.create_namespace(body=body)

    def create_job(self, namespace: str, manifest: dict[str, Any]) -> Any:
        return self.batch_api.create_namespaced_job(namespace=namespace, body=manifest)

    def read_job(self, name: str, namespace: str) -> Any:
        return self.batch_api.read_namespaced_job(name=name, namespace=namespace)

    def list_jobs(self, namespace: str, label_selector: str) -> list[Any]:
        return self.batch_api.list_namespaced_job(
            namespace=namespace, label_selector=label_selector
        ).items

    def list_pods(self, namespace: str, label_selector: str) -> list[Any]:
        return self.core_api.list_namespaced_pod(
            namespace=namespace, label_selector=label_selector
        ).items

    def read_pod_log(
        self,
        name: str,
        namespace: str,
        container: str,
        tail_lines: int | None = None,
        timestamps: bool = False,
    ) -> str:
        kwargs: dict[str, Any] = {"timestamps": timestamps}
        if tail_lines is not None:
            kwargs["tail_lines"] = tail_lines
        return self.core_api.read_namespaced_pod_log(
            name=name, namespace=namespace, container=container, **kwargs
        )

    def create_config_map(self, namespace: str, name: str, data: dict[str, str]) -> Any:
        body = client.V1ConfigMap(metadata=client.V1ObjectMeta(name=name), data=data)
        return self.core_api.create_namespaced_config_map(namespace=namespace, body=body)

    def list_events(self, namespace: str) -> list[Any]:
        return self.core_api.list_namespaced_event(namespace=namespace).items

    def job_completed(self, name: str, namespace: str) -> bool:
        """Whether the job carries a true ``Complete`` condition."""
        job = self.read_job(name, namespace)
        conditions = (job.status.conditions if job.status else None) or []
        return any(c.type == "Complete" and c.status == "True" for c in conditions)

    async def ensure_namespace_exists(
        self,
        namespace: str,
        timeout: float = 30.0,
        interval: float = 1.0,
    ) -> bool:
        """Create ``namespace`` if needed and wait until it is Active.

        Returns:
            True if the namespace was created

        Raises:
            ApiException: For API errors other than 404 on read
            TimeoutError: If the namespace does not become Active in time
        """
        try:
            await asyncio.to_thread(self.read_namespace, namespace)
        except ApiException as e:
            if e.status != HTTP_NOT_FOUND:
                raise
        else:
            logger.info(f"Namespace {namespace} already exists")
            return False

        logger.info(f"Creating namespace {namespace}")
        await asyncio.to_thread(
            self.create_namespace,
            namespace,
            labels={
                "app.kubernetes.io/managed-by": MANAGED_BY,
                "lifecycle.io/type": "ephemeral",
            },
        )

        deadline = time.monotonic() + timeout
        while True:
            try:
                current = await asyncio.to_thread(self.read_namespace, namespace)
                phase = current.status.phase
            except ApiException:
                phase = None
            if phase == "Active":
                logger.info(f"✓ Namespace {namespace} is active")
                return True
            if time.monotonic() >= deadline:
                msg = f"Namespace {namespace} did not become ready within {timeout}s"
                raise TimeoutError(msg)
            await asyncio.sleep(interval)
