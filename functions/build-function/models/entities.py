"""Domain entities for builds, deploys and their service definitions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Stand-in for "-" while a template is rendered; mustache treats hyphens in names poorly
HYPHEN_REPLACEMENT = "______"
NO_DEFAULT_ENV_UUID = "lc-service-disabled"


class FeatureFlag(str, Enum):
    """Per-build feature flags."""

    NO_DEFAULT_ENV_RESOLVE = "no-default-env-resolve"


class DeployType(str, Enum):
    """How a service is sourced."""

    DOCKER = "docker"
    GITHUB = "github"
    EXTERNAL_HTTP = "externalHTTP"
    AURORA_RESTORE = "aurora-restore"
    RDS_RESTORE = "rds-restore"
    CODEFRESH = "codefresh"
    CONFIGURATION = "configuration"
    HELM = "helm"


class DeployStatus(str, Enum):
    """Lifecycle states of a single deploy."""

    CLONING = "cloning"
    BUILDING = "building"
    BUILT = "built"
    READY = "ready"
    ERROR = "error"
    QUEUED = "queued"
    PENDING = "pending"
    TORN_DOWN = "torn_down"
    DEPLOYING = "deploying"
    WAITING = "waiting"
    BUILD_FAILED = "build_failed"
    DEPLOY_FAILED = "deploy_failed"


class BuildEngine(str, Enum):
    """In-cluster image builders."""

    BUILDKIT = "buildkit"
    KANIKO = "kaniko"


class Deployable(BaseModel):
    """Static definition of a service inside a build."""

    name: str
    type: DeployType = DeployType.GITHUB
    repository: str | None = Field(default=None, description="owner/name of the source repository")
    branch_name: str | None = None
    docker_image: str | None = None
    default_tag: str | None = None
    dockerfile_path: str | None = None
    init_dockerfile_path: str | None = None
    env: dict[str, Any] = Field(default_factory=dict)
    init_env: dict[str, Any] = Field(default_factory=dict)
    builder_engine: str | None = None
    registry_repository: str | None = None
    default_uuid: str | None = None
    default_public_url: str | None = None
    default_internal_hostname: str | None = None
    host_port_mapping: dict[str, Any] = Field(default_factory=dict)
    build_uuid: str | None = None
    service_id: int | None = None
    public_helm_chart: bool = False
    pipeline_id: str | None = None
    restore_image: str | None = None
    restore_command: list[str] = Field(default_factory=list)
    restore_args: list[str] = Field(default_factory=list)


class Deploy(BaseModel):
    """One service instance within a build."""

    id: int
    uuid: str
    build_id: int
    deployable: Deployable
    active: bool = True
    branch_name: str | None = None
    sha: str | None = None
    tag: str | None = None
    docker_image: str | None = None
    init_docker_image: str | None = None
    env: dict[str, Any] = Field(default_factory=dict)
    init_env: dict[str, Any] = Field(default_factory=dict)
    status: DeployStatus | None = None
    status_message: str | None = None
    build_logs: str | None = None
    build_pipeline_id: str | None = None
    build_job_name: str | None = None
    build_output: str | None = None
    run_uuid: str | None = None
    public_url: str | None = None
    internal_hostname: str | None = None
    ip_address: str | None = None
    namespace: str | None = None
    service_id: int | None = None

    def property_value(self, prop: str) -> Any:
        """Return the live value for a token property name."""
        attribute = {
            "branchName": "branch_name",
            "ipAddress": "ip_address",
            "publicUrl": "public_url",
            "internalHostname": "internal_hostname",
            "dockerImage": "docker_image",
            "initDockerImage": "init_docker_image",
            "sha": "sha",
            "namespace": "namespace",
        }.get(prop)
        return getattr(self, attribute) if attribute else None


class Build(BaseModel):
    """A pull-request environment and the context shared by its deploys."""

    id: int
    uuid: str
    namespace: str
    sha: str | None = None
    pull_request_number: int | None = None
    enabled_features: list[str] = Field(default_factory=list)
    enable_full_yaml: bool = True
    is_static: bool = False
    comment_runtime_env: dict[str, Any] = Field(default_factory=dict)

    @property
    def use_default_uuid(self) -> bool:
        """Whether unresolved tokens fall back to the shared baseline environment."""
        return FeatureFlag.NO_DEFAULT_ENV_RESOLVE.value not in self.enabled_features


class ActivityEvent(BaseModel):
    """A persisted status transition."""

    build_uuid: str
    deploy_uuid: str
    run_uuid: str
    status: DeployStatus | None = None
    status_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
