"""Log-streaming descriptors and event listings for build Jobs."""

import logging
from datetime import datetime
from typing import Any

from kubernetes.client.rest import ApiException

from models.streaming import (
    ContainerInfo,
    EventSource,
    JobEvent,
    LogSourceStatus,
    StreamingInfo,
    StreamParameters,
    WebsocketInfo,
)
from services.kubernetes_client import HTTP_NOT_FOUND, ClusterClient

logger = logging.getLogger(__name__)


def _failed_condition_message(job: Any) -> str | None:
    conditions = (job.status.conditions if job.status else None) or []
    for condition in conditions:
        if condition.type == "Failed" and condition.status == "True":
            return condition.message or "Job failed"
    return None


def _container_state(status: Any) -> str:
    state = status.state
    if state is None:
        return "waiting"
    if state.running:
        return "running"
    if state.terminated:
        return (state.terminated.reason or "terminated").lower()
    if state.waiting:
        return (state.waiting.reason or "waiting").lower()
    return "waiting"


def pod_containers(pod: Any) -> list[ContainerInfo]:
    """Containers of a pod with their current state; init containers are prefixed."""
    containers: list[ContainerInfo] = []
    seen: set[str] = set()
    statuses = [(s, True) for s in (pod.status.init_container_statuses or [])] + [
        (s, False) for s in (pod.status.container_statuses or [])
    ]
    for status, is_init in statuses:
        if not status.name or status.name in seen:
            continue
        seen.add(status.name)
        name = f"[init] {status.name}" if is_init else status.name
        containers.append(ContainerInfo(name=name, state=_container_state(status)))

    if not containers and pod.spec:
        for container in pod.spec.init_containers or []:
            containers.append(ContainerInfo(name=f"[init] {container.name}", state="pending"))
        for container in pod.spec.containers or []:
            containers.append(ContainerInfo(name=container.name, state="pending"))
    return containers


def get_log_streaming_info_for_job(
    cluster: ClusterClient, job_name: str | None, namespace: str
) -> StreamingInfo | LogSourceStatus:
    """Describe how a client can follow the logs of ``job_name``.

    Returns a streaming descriptor while the Job's latest pod is Pending or
    Running, otherwise a status explaining why there is nothing to stream.
    """
    if not job_name:
        logger.warning("Job name not provided. Cannot get logs.")
        return LogSourceStatus(status="Unavailable", message="Job name not found.")

    try:
        job = cluster.read_job(job_name, namespace)
    except ApiException as e:
        if e.status == HTTP_NOT_FOUND:
            return LogSourceStatus(
                status="NotFound",
                message=f"Job {job_name} not found. It might be completed and cleaned up.",
            )
        logger.exception(f"Error reading job {job_name} in {namespace}")
        return LogSourceStatus(status="Unknown", message="Failed to communicate with Kubernetes.")

    selector = job.spec.selector.match_labels if job.spec and job.spec.selector else None
    label_selector = (
        ",".join(f"{key}={value}" for key, value in selector.items())
        if selector
        else f"job-name={job_name}"
    )
    try:
        pods = cluster.list_pods(namespace, label_selector)
    except ApiException:
        logger.exception(f"Error listing pods for job {job_name}")
        return LogSourceStatus(status="Unknown", message="Failed to communicate with Kubernetes.")

    if not pods:
        succeeded = (job.status.succeeded if job.status else None) or 0
        failed = (job.status.failed if job.status else None) or 0
        if succeeded > 0:
            return LogSourceStatus(status="Completed", message=f"Job {job_name} has completed.")
        if failed > 0:
            return LogSourceStatus(status="Failed", message=_failed_condition_message(job) or "Job failed")
        return LogSourceStatus(
            status="NotFound",
            message=f"Job pod for {job_name} not found. It might be completed and cleaned up.",
        )

    def created(pod: Any) -> float:
        timestamp = pod.metadata.creation_timestamp
        return timestamp.timestamp() if timestamp else 0.0

    pod = max(pods, key=created)
    pod_name = pod.metadata.name
    phase = pod.status.phase if pod.status else None
    containers = pod_containers(pod) if pod.status else []

    if phase in ("Running", "Pending"):
        return StreamingInfo(
            status=phase,
            pod_name=pod_name,
            websocket=WebsocketInfo(
                parameters=StreamParameters(pod_name=pod_name, namespace=namespace)
            ),
            containers=containers,
        )

    if phase == "Succeeded":
        status, message = "Completed", f"Job pod {pod_name} has status: Completed. Streaming not active."
    elif phase == "Failed":
        status = "Failed"
        message = _failed_condition_message(job) or f"Job pod {pod_name} has status: Failed. Streaming not active."
    else:
        status, message = "Unknown", f"Job pod {pod_name} is in an unexpected state: {phase or 'Unknown'}."
    return LogSourceStatus(status=status, pod_name=pod_name, containers=containers, message=message)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def get_job_events(cluster: ClusterClient, job_name: str, namespace: str) -> list[JobEvent]:
    """Events about the Job or its pods, most recent first."""
    events = []
    for event in cluster.list_events(namespace):
        involved = event.involved_object
        if involved is None:
            continue
        if not (
            (involved.kind == "Job" and involved.name == job_name)
            or (involved.kind == "Pod" and (involved.name or "").startswith(job_name))
        ):
            continue

        source = None
        if event.source:
            source = EventSource(component=event.source.component, host=event.source.host)
        events.append(
            (
                event.last_timestamp or event.event_time,
                JobEvent(
                    name=(event.metadata.name or "") if event.metadata else "",
                    namespace=(event.metadata.namespace or "") if event.metadata else "",
                    reason=event.reason or "",
                    message=event.message or "",
                    type=event.type or "Normal",
                    count=event.count or 1,
                    first_timestamp=_isoformat(event.first_timestamp),
                    last_timestamp=_isoformat(event.last_timestamp),
                    event_time=_isoformat(event.event_time),
                    source=source,
                ),
            )
        )

    events.sort(key=lambda item: item[0].timestamp() if item[0] else 0.0, reverse=True)
    return [event for _, event in events]
