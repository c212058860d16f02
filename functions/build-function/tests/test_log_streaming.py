"""Tests for log-streaming descriptors and job events."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from conftest import make_job, make_pod
from kubernetes.client.rest import ApiException

from models.streaming import LogSourceStatus, StreamingInfo
from services.log_streaming import get_job_events, get_log_streaming_info_for_job, pod_containers


def container_status(name, running=False, terminated_reason=None, waiting_reason=None):
    return SimpleNamespace(
        name=name,
        state=SimpleNamespace(
            running=SimpleNamespace() if running else None,
            terminated=SimpleNamespace(reason=terminated_reason) if terminated_reason else None,
            waiting=SimpleNamespace(reason=waiting_reason) if waiting_reason else None,
        ),
    )


@pytest.fixture
def cluster():
    fake = Mock()
    fake.read_job.return_value = make_job()
    return fake


class TestPodContainers:
    def test_statuses_with_init_prefix(self):
        pod = make_pod(
            "p",
            statuses={
                "init": [container_status("git-clone", terminated_reason="Completed")],
                "main": [container_status("kaniko-main", running=True)],
            },
        )

        containers = pod_containers(pod)

        assert [(c.name, c.state) for c in containers] == [
            ("[init] git-clone", "completed"),
            ("kaniko-main", "running"),
        ]

    def test_falls_back_to_spec(self):
        pod = make_pod("p", init_containers=["git-clone"], containers=["kaniko-main"], phase="Pending")

        assert [(c.name, c.state) for c in pod_containers(pod)] == [
            ("[init] git-clone", "pending"),
            ("kaniko-main", "pending"),
        ]


class TestLogStreamingInfo:
    """Tests for get_log_streaming_info_for_job."""

    def test_no_job_name(self, cluster):
        info = get_log_streaming_info_for_job(cluster, None, "env-1")

        assert isinstance(info, LogSourceStatus)
        assert info.status == "Unavailable"
        cluster.read_job.assert_not_called()

    def test_job_not_found(self, cluster):
        cluster.read_job.side_effect = ApiException(status=404)

        assert get_log_streaming_info_for_job(cluster, "job-1", "env-1").status == "NotFound"

    def test_api_failure(self, cluster):
        cluster.read_job.side_effect = ApiException(status=500)

        info = get_log_streaming_info_for_job(cluster, "job-1", "env-1")

        assert info.status == "Unknown"
        assert info.message == "Failed to communicate with Kubernetes."

    def test_running_pod_needs_streaming(self, cluster):
        cluster.list_pods.return_value = [
            make_pod("job-1-abcde", containers=["kaniko-main"], statuses={"main": [container_status("kaniko-main", running=True)]})
        ]

        info = get_log_streaming_info_for_job(cluster, "job-1", "env-1")

        assert isinstance(info, StreamingInfo)
        assert info.status == "Running"
        assert info.pod_name == "job-1-abcde"
        assert info.websocket.parameters.namespace == "env-1"
        cluster.list_pods.assert_called_once_with("env-1", "job-name=job-1")

    def test_uses_job_selector(self, cluster):
        job = make_job()
        job.spec.selector = SimpleNamespace(match_labels={"controller-uid": "123"})
        cluster.read_job.return_value = job
        cluster.list_pods.return_value = []

        get_log_streaming_info_for_job(cluster, "job-1", "env-1")

        cluster.list_pods.assert_called_once_with("env-1", "controller-uid=123")

    def test_latest_pod_wins(self, cluster):
        cluster.list_pods.return_value = [
            make_pod("old", phase="Failed", created=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            make_pod("new", phase="Succeeded", created=datetime(2024, 1, 2, tzinfo=timezone.utc)),
        ]

        info = get_log_streaming_info_for_job(cluster, "job-1", "env-1")

        assert info.status == "Completed"
        assert info.pod_name == "new"

    def test_failed_pod_uses_job_condition(self, cluster):
        condition = SimpleNamespace(type="Failed", status="True", message="BackoffLimitExceeded")
        cluster.read_job.return_value = make_job(failed=1, conditions=[condition])
        cluster.list_pods.return_value = [make_pod("p", phase="Failed")]

        info = get_log_streaming_info_for_job(cluster, "job-1", "env-1")

        assert info.status == "Failed"
        assert info.message == "BackoffLimitExceeded"

    def test_pods_cleaned_up(self, cluster):
        cluster.list_pods.return_value = []

        cluster.read_job.return_value = make_job(succeeded=1)
        assert get_log_streaming_info_for_job(cluster, "job-1", "env-1").status == "Completed"

        cluster.read_job.return_value = make_job(failed=1)
        assert get_log_streaming_info_for_job(cluster, "job-1", "env-1").status == "Failed"

        cluster.read_job.return_value = make_job()
        assert get_log_streaming_info_for_job(cluster, "job-1", "env-1").status == "NotFound"


def event(kind, name, last_timestamp, reason="Created"):
    return SimpleNamespace(
        involved_object=SimpleNamespace(kind=kind, name=name),
        metadata=SimpleNamespace(name=f"{name}.{reason}", namespace="env-1"),
        reason=reason,
        message=f"{reason} {name}",
        type="Normal",
        count=None,
        first_timestamp=last_timestamp,
        last_timestamp=last_timestamp,
        event_time=None,
        source=SimpleNamespace(component="job-controller", host=None),
    )


class TestJobEvents:
    def test_filters_and_sorts(self, cluster):
        cluster.list_events.return_value = [
            event("Job", "job-1", datetime(2024, 1, 1, 10, tzinfo=timezone.utc), "SuccessfulCreate"),
            event("Pod", "job-1-abcde", datetime(2024, 1, 1, 11, tzinfo=timezone.utc), "Pulled"),
            event("Pod", "other-xyz", datetime(2024, 1, 1, 12, tzinfo=timezone.utc)),
            event("Job", "job-2", datetime(2024, 1, 1, 12, tzinfo=timezone.utc)),
        ]

        events = get_job_events(cluster, "job-1", "env-1")

        assert [e.reason for e in events] == ["Pulled", "SuccessfulCreate"]
        assert events[0].count == 1
        assert events[0].last_timestamp == "2024-01-01T11:00:00+00:00"
        assert events[0].source.component == "job-controller"
