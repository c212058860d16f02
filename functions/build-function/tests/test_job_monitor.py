"""Tests for Job monitoring and log collection."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from conftest import make_job, make_pod

from services.job_monitor import JobMonitor, section_header


@pytest.fixture
def cluster():
    return Mock()


class TestSectionHeader:
    def test_headers(self):
        assert section_header("git-clone") == "--- CLONE CONTAINER ---"
        assert section_header("kaniko-main") == "--- MAIN CONTAINER ---"
        assert section_header("buildkit-init") == "--- INIT CONTAINER ---"
        assert section_header("sidecar") == "--- CONTAINER (sidecar) ---"


class TestWaitForJob:
    """Tests for JobMonitor.wait_for_job_and_get_logs."""

    @pytest.mark.asyncio
    async def test_timeout(self, cluster):
        cluster.read_job.return_value = make_job()
        cluster.list_pods.return_value = []

        result = await JobMonitor(cluster, poll_interval=0).wait_for_job_and_get_logs("job-1", "env-1", timeout=0)

        assert result.success is False
        assert result.status == "timeout"
        assert result.logs == ""

    @pytest.mark.asyncio
    async def test_polls_until_failed(self, cluster):
        cluster.read_job.side_effect = [make_job(), make_job(failed=1)]
        cluster.list_pods.return_value = []

        result = await JobMonitor(cluster, poll_interval=0).wait_for_job_and_get_logs("job-1", "env-1")

        assert result.status == "failed"
        assert result.success is False
        assert cluster.read_job.call_count == 2

    @pytest.mark.asyncio
    async def test_succeeded_with_unreadable_container(self, cluster):
        """A container whose log cannot be read is left out without failing the job."""
        cluster.read_job.return_value = make_job(succeeded=1)
        cluster.list_pods.return_value = [
            make_pod("job-1-pod", init_containers=["git-clone"], containers=["kaniko-init", "kaniko-main"])
        ]

        def read_pod_log(pod_name, namespace, container, **kwargs):
            if container == "kaniko-init":
                raise RuntimeError("container not found")
            return f"{container} output"

        cluster.read_pod_log.side_effect = read_pod_log

        result = await JobMonitor(cluster, poll_interval=0).wait_for_job_and_get_logs("job-1", "env-1")

        assert result.success is True
        assert result.status == "succeeded"
        assert "--- CLONE CONTAINER ---" in result.logs
        assert "--- MAIN CONTAINER ---" in result.logs
        assert "--- INIT CONTAINER ---" not in result.logs
        assert result.logs.index("git-clone output") < result.logs.index("kaniko-main output")
        cluster.list_pods.assert_called_once_with("env-1", "job-name=job-1")


class TestCollectLogs:
    def test_uses_latest_pod(self, cluster):
        older = make_pod("old", containers=["kaniko-main"], created=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = make_pod("new", containers=["kaniko-main"], created=datetime(2024, 1, 2, tzinfo=timezone.utc))
        cluster.list_pods.return_value = [newer, older]
        cluster.read_pod_log.return_value = "ok"

        JobMonitor(cluster).collect_logs("job-1", "env-1")

        cluster.read_pod_log.assert_called_once_with("new", "env-1", "kaniko-main")

    def test_main_container_before_others(self, cluster):
        cluster.list_pods.return_value = [make_pod("p", containers=["sidecar", "buildkit-main"])]
        cluster.read_pod_log.side_effect = lambda pod, ns, container: container

        logs = JobMonitor(cluster).collect_logs("job-1", "env-1")

        assert logs == "--- MAIN CONTAINER ---\nbuildkit-main\n--- CONTAINER (sidecar) ---\nsidecar"

    def test_no_pods(self, cluster):
        cluster.list_pods.return_value = []
        assert JobMonitor(cluster).collect_logs("job-1", "env-1") == ""
