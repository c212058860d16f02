"""Polling of submitted Jobs and collection of their container logs."""

import asyncio
import logging
import time
from typing import Any, Literal

from pydantic import BaseModel

from services.kubernetes_client import ClusterClient

logger = logging.getLogger(__name__)

CLONE_CONTAINER = "git-clone"
MAIN_SUFFIX = "-main"
INIT_SUFFIX = "-init"


class JobResult(BaseModel):
    """Terminal outcome of a monitored Job."""

    success: bool
    status: Literal["succeeded", "failed", "timeout"]
    logs: str = ""


def section_header(container_name: str) -> str:
    """Delimiter placed before a container's log output."""
    if container_name.endswith(MAIN_SUFFIX):
        return "--- MAIN CONTAINER ---"
    if container_name.endswith(INIT_SUFFIX):
        return "--- INIT CONTAINER ---"
    if container_name == CLONE_CONTAINER:
        return "--- CLONE CONTAINER ---"
    return f"--- CONTAINER ({container_name}) ---"


def _latest_pod(pods: list[Any]) -> Any | None:
    if not pods:
        return None

    def created(pod: Any) -> float:
        timestamp = pod.metadata.creation_timestamp
        return timestamp.timestamp() if timestamp else 0.0

    return max(pods, key=created)


class JobMonitor:
    """Waits for a Job to finish and gathers per-container logs."""

    def __init__(self, cluster: ClusterClient, poll_interval: float = 2.0) -> None:
        self.cluster = cluster
        self.poll_interval = poll_interval

    async def wait_for_job_and_get_logs(
        self,
        job_name: str,
        namespace: str,
        timeout: float = 1800,
    ) -> JobResult:
        """Poll ``job_name`` until it succeeds, fails or ``timeout`` elapses.

        Args:
            job_name: Name of the submitted Job
            namespace: Namespace the Job runs in
            timeout: Seconds to wait before giving up with status ``timeout``

        Returns:
            Success flag, terminal status and the concatenated container logs
        """
        start_time = time.monotonic()
        status = "timeout"

        while True:
            job = await asyncio.to_thread(self.cluster.read_job, job_name, namespace)
            job_status = job.status
            succeeded = (job_status.succeeded if job_status else None) or 0
            failed = (job_status.failed if job_status else None) or 0
            backoff_limit = (job.spec.backoff_limit if job.spec else None) or 0

            if succeeded > 0:
                status = "succeeded"
                break
            if failed > 0 and failed >= backoff_limit:
                status = "failed"
                break
            if time.monotonic() - start_time >= timeout:
                logger.warning(
                    f"Job {job_name} did not finish within {timeout}s",
                    extra={"job_name": job_name, "namespace": namespace},
                )
                break
            await asyncio.sleep(self.poll_interval)

        logs = await asyncio.to_thread(self.collect_logs, job_name, namespace)
        logger.info(
            f"Job {job_name} finished with status {status}",
            extra={
                "job_name": job_name,
                "namespace": namespace,
                "status": status,
                "duration_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return JobResult(success=status == "succeeded", status=status, logs=logs)

    def collect_logs(self, job_name: str, namespace: str) -> str:
        """Concatenate logs of every container in the Job's latest pod."""
        pod = _latest_pod(self.cluster.list_pods(namespace, f"job-name={job_name}"))
        if pod is None:
            logger.warning(f"No pod found for job {job_name}")
            return ""

        pod_name = pod.metadata.name
        init_names = [c.name for c in (pod.spec.init_containers or [])]
        main_names = [c.name for c in (pod.spec.containers or [])]
        ordered = (
            init_names
            + [name for name in main_names if name.endswith(MAIN_SUFFIX)]
            + [name for name in main_names if not name.endswith(MAIN_SUFFIX)]
        )

        sections = []
        for container in ordered:
            try:
                output = self.cluster.read_pod_log(pod_name, namespace, container)
            except Exception as e:
                logger.warning(
                    f"Could not get logs for container {container} of {pod_name}: {e}",
                    extra={"job_name": job_name, "container": container},
                )
                continue
            sections.append(f"{section_header(container)}\n{output or ''}")

        return "\n".join(sections)
