"""In-cluster image builds with buildkit or kaniko."""

import asyncio
import logging
import secrets
import string
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from config import BuildDefaults
from services.job_factory import (
    MAX_JOB_NAME_LENGTH,
    BuildJobSpec,
    create_build_container,
    create_build_job,
    create_git_clone_container,
    get_engine,
    short_repo_name,
)
from services.job_monitor import JobMonitor
from services.kubernetes_client import ClusterClient

logger = logging.getLogger(__name__)

JOB_ID_ALPHABET = string.ascii_lowercase + string.digits


class NativeBuildOptions(BaseModel):
    """Parameters of one native build."""

    registry_domain: str
    registry_repository: str
    env_vars: dict[str, Any] = Field(default_factory=dict)
    dockerfile_path: str | None = None
    tag: str
    revision: str
    repo: str
    branch: str
    init_dockerfile_path: str | None = None
    init_tag: str | None = None
    namespace: str
    build_id: str
    deploy_uuid: str
    service_name: str
    is_static: bool = False
    service_account: str | None = None
    job_timeout: int | None = None
    resources: dict[str, Any] | None = None


class NativeBuildResult(BaseModel):
    success: bool
    logs: str
    job_name: str


def generate_job_name(deploy_uuid: str, revision: str) -> str:
    """``{deployUuid}-build-{random5}-{shortSha}`` truncated to a valid Job name."""
    job_id = "".join(secrets.choice(JOB_ID_ALPHABET) for _ in range(5))
    return f"{deploy_uuid}-build-{job_id}-{revision[:7]}"[:MAX_JOB_NAME_LENGTH].rstrip("-")


class NativeBuildRunner:
    """Submits a build Job and waits for its outcome."""

    def __init__(
        self,
        cluster: ClusterClient,
        monitor: JobMonitor,
        defaults: BuildDefaults,
        git_token_provider: Callable[[], str],
        namespace_ready_timeout: float = 30.0,
    ) -> None:
        self.cluster = cluster
        self.monitor = monitor
        self.defaults = defaults
        self.git_token_provider = git_token_provider
        self.namespace_ready_timeout = namespace_ready_timeout

    def build_manifest(self, options: NativeBuildOptions, engine_name: str, job_name: str) -> dict[str, Any]:
        """Job manifest for ``options`` built with ``engine_name``."""
        engine = get_engine(engine_name)
        service_account = options.service_account or self.defaults.service_account
        job_timeout = options.job_timeout or self.defaults.job_timeout
        resources = options.resources or self.defaults.resources_for(engine_name)

        repo_name = short_repo_name(options.repo)
        context_path = f"/workspace/repo-{repo_name}"
        dockerfile_path = options.dockerfile_path or "Dockerfile"
        build_args = {key: str(value) for key, value in options.env_vars.items()}
        env_vars = {**build_args, **engine.extra_env(self.defaults.buildkit_endpoint)}
        cache_ref = engine.cache_ref(options.registry_domain, repo_name)

        containers = [
            create_build_container(
                f"{engine.name}-main",
                engine,
                dockerfile_path,
                f"{options.registry_domain}/{options.registry_repository}:{options.tag}",
                cache_ref,
                context_path,
                env_vars,
                resources,
                build_args,
            )
        ]
        if options.init_dockerfile_path and options.init_tag:
            containers.append(
                create_build_container(
                    f"{engine.name}-init",
                    engine,
                    options.init_dockerfile_path,
                    f"{options.registry_domain}/{options.registry_repository}:{options.init_tag}",
                    cache_ref,
                    context_path,
                    env_vars,
                    resources,
                    build_args,
                )
            )
            logger.info(f"[{engine.name}] Job {job_name} will build both main and init images")

        return create_build_job(
            BuildJobSpec(
                job_name=job_name,
                namespace=options.namespace,
                service_account=service_account,
                service_name=options.service_name,
                deploy_uuid=options.deploy_uuid,
                build_id=options.build_id,
                short_sha=options.revision[:7],
                branch=options.branch,
                engine=engine.name,
                dockerfile_path=dockerfile_path,
                registry_repository=options.registry_repository,
                job_timeout=job_timeout,
                is_static=options.is_static,
                git_clone_container=create_git_clone_container(
                    options.repo, options.revision, context_path, self.git_token_provider()
                ),
                containers=containers,
            )
        )

    async def build(
        self,
        options: NativeBuildOptions,
        engine_name: str,
        on_submitted: Callable[[str], Any] | None = None,
    ) -> NativeBuildResult:
        """Run a native build to completion.

        Args:
            options: Build parameters
            engine_name: ``buildkit`` or ``kaniko``
            on_submitted: Called with the job name once the Job exists

        Returns:
            Success flag, captured logs and the job name
        """
        job_name = generate_job_name(options.deploy_uuid, options.revision)
        logger.info(
            f"[{engine_name}] Building image(s) for {options.deploy_uuid}",
            extra={
                "deploy_uuid": options.deploy_uuid,
                "job_name": job_name,
                "dockerfile_path": options.dockerfile_path,
                "init_dockerfile_path": options.init_dockerfile_path,
                "repo": options.repo,
            },
        )

        await self.cluster.ensure_namespace_exists(
            options.namespace, timeout=self.namespace_ready_timeout
        )
        manifest = self.build_manifest(options, engine_name, job_name)
        await asyncio.to_thread(self.cluster.create_job, options.namespace, manifest)
        logger.info(f"Created {engine_name} job {job_name} in namespace {options.namespace}")

        if on_submitted is not None:
            on_submitted(job_name)

        job_timeout = options.job_timeout or self.defaults.job_timeout
        try:
            result = await self.monitor.wait_for_job_and_get_logs(
                job_name, options.namespace, job_timeout
            )
        except Exception as e:
            logger.exception(f"Error getting logs for {engine_name} job {job_name}")
            try:
                if await asyncio.to_thread(self.cluster.job_completed, job_name, options.namespace):
                    logger.info(f"Job {job_name} completed successfully despite log retrieval error")
                    return NativeBuildResult(
                        success=True,
                        logs="Log retrieval failed but job completed successfully",
                        job_name=job_name,
                    )
            except Exception:
                logger.exception(f"Failed to check job status for {job_name}")
            return NativeBuildResult(success=False, logs=f"Build failed: {e}", job_name=job_name)

        return NativeBuildResult(success=result.success, logs=result.logs, job_name=job_name)
