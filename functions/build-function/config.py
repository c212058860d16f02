"""Configuration settings for the build function."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_BUILD_RESOURCES: dict[str, dict[str, dict[str, str]]] = {
    "buildkit": {
        "requests": {"cpu": "500m", "memory": "1Gi"},
        "limits": {"cpu": "2", "memory": "4Gi"},
    },
    "kaniko": {
        "requests": {"cpu": "300m", "memory": "750Mi"},
        "limits": {"cpu": "1", "memory": "2Gi"},
    },
}


class LifecycleDefaults(BaseModel):
    """Cluster-wide defaults used while resolving templates and image references."""

    model_config = ConfigDict(frozen=True)

    default_uuid: str
    default_public_url: str
    registry_domain: str = ""
    registry_repository: str = ""
    namespace_prefix: str = "env-"


class BuildDefaults(BaseModel):
    """Defaults applied to every native build job."""

    model_config = ConfigDict(frozen=True)

    service_account: str = "native-build-sa"
    job_timeout: int = 2100
    buildkit_endpoint: str = "tcp://buildkit.build-system.svc.cluster.local:1234"
    resources: dict[str, dict[str, dict[str, str]]] = Field(
        default_factory=lambda: DEFAULT_BUILD_RESOURCES
    )

    def resources_for(self, engine: str) -> dict[str, Any]:
        """Resource requests/limits for a build engine."""
        return self.resources.get(engine) or DEFAULT_BUILD_RESOURCES[engine]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False,
    )

    # Container registry
    registry_domain: str = "kubemooc.azurecr.io"
    registry_repository: str = "preview"

    # Shared baseline environment
    default_uuid: str = "dev-0"
    default_public_url: str = "preview.kubemooc.dev"
    default_namespace_prefix: str = "env-"

    # Native builds
    build_service_account: str = "native-build-sa"
    build_job_timeout: int = 2100
    buildkit_endpoint: str = "tcp://buildkit.build-system.svc.cluster.local:1234"
    build_resources: dict[str, dict[str, dict[str, str]]] = Field(
        default_factory=lambda: DEFAULT_BUILD_RESOURCES
    )

    # Source control
    github_api_url: str = "https://api.github.com"
    github_token: str = ""

    # External CI
    codefresh_api_url: str = "https://g.codefresh.io/api"
    codefresh_api_key: str = ""

    # Persistence
    database_url: str = ""

    # Optional AKS access when no in-cluster or local kubeconfig is available
    azure_subscription_id: str | None = None
    aks_resource_group: str | None = None
    aks_cluster_name: str | None = None

    # Polling
    dependency_poll_interval_seconds: float = 5.0
    dependency_dispatch_max_attempts: int = 250
    dependency_output_max_attempts: int = 240
    job_poll_interval_seconds: float = 2.0
    namespace_ready_timeout_seconds: float = 30.0
    ci_poll_interval_seconds: float = 10.0
    ci_timeout_seconds: float = 3600.0

    def lifecycle_defaults(self) -> LifecycleDefaults:
        """Snapshot of the defaults needed for one orchestration run."""
        return LifecycleDefaults(
            default_uuid=self.default_uuid,
            default_public_url=self.default_public_url,
            registry_domain=self.registry_domain,
            registry_repository=self.registry_repository,
            namespace_prefix=self.default_namespace_prefix,
        )

    def build_defaults(self) -> BuildDefaults:
        """Snapshot of the native build defaults."""
        return BuildDefaults(
            service_account=self.build_service_account,
            job_timeout=self.build_job_timeout,
            buildkit_endpoint=self.buildkit_endpoint,
            resources=self.build_resources,
        )
