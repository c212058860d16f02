"""Shared fixtures for the build function tests."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from config import BuildDefaults, LifecycleDefaults
from models.entities import Build, Deploy, Deployable, DeployType
from services.repository import InMemoryRepository

BUILD_UUID = "abc123"
NAMESPACE = "env-abc123"


@pytest.fixture
def defaults():
    """Lifecycle defaults with a configured registry."""
    return LifecycleDefaults(
        default_uuid="dev-0",
        default_public_url="preview.kubemooc.dev",
        registry_domain="registry.example.com",
        registry_repository="preview",
    )


@pytest.fixture
def build_defaults():
    return BuildDefaults()


@pytest.fixture
def build():
    return Build(id=1, uuid=BUILD_UUID, namespace=NAMESPACE, sha="feedbeef", pull_request_number=42)


@pytest.fixture
def repository(build):
    """In-memory repository holding the default build."""
    repo = InMemoryRepository()
    repo.add_build(build)
    return repo


@pytest.fixture
def make_deploy():
    """Factory for deploys of the default build."""
    counter = {"id": 0}

    def _make(name: str, deploy_type: DeployType = DeployType.GITHUB, **kwargs) -> Deploy:
        counter["id"] += 1
        deployable_fields = kwargs.pop("deployable", {})
        deployable = Deployable(name=name, type=deploy_type, **deployable_fields)
        return Deploy(
            id=kwargs.pop("id", counter["id"]),
            uuid=kwargs.pop("uuid", f"{name}-{BUILD_UUID}"),
            build_id=kwargs.pop("build_id", 1),
            deployable=deployable,
            **kwargs,
        )

    return _make


@pytest.fixture
def cluster():
    """Cluster client double; namespace bootstrap succeeds immediately."""
    fake = Mock()
    fake.ensure_namespace_exists = AsyncMock(return_value=False)
    fake.job_completed.return_value = False
    return fake


def make_job(succeeded=None, failed=None, backoff_limit=0, conditions=None):
    """Minimal stand-in for a V1Job."""
    return SimpleNamespace(
        status=SimpleNamespace(succeeded=succeeded, failed=failed, conditions=conditions),
        spec=SimpleNamespace(backoff_limit=backoff_limit, selector=None),
    )


def make_pod(name, init_containers=(), containers=(), phase="Running", created=None, statuses=None):
    """Minimal stand-in for a V1Pod."""
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, creation_timestamp=created),
        spec=SimpleNamespace(
            init_containers=[SimpleNamespace(name=c) for c in init_containers],
            containers=[SimpleNamespace(name=c) for c in containers],
        ),
        status=SimpleNamespace(
            phase=phase,
            init_container_statuses=(statuses or {}).get("init", []),
            container_statuses=(statuses or {}).get("main", []),
        ),
    )
