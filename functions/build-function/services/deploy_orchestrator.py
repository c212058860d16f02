"""Per-deploy build strategy selection and status state machine."""

import asyncio
import logging
import time
import uuid
from typing import Any

import requests

from config import BuildDefaults, LifecycleDefaults, Settings
from models.entities import Build, BuildEngine, Deploy, DeployStatus, DeployType
from models.requests import DeployBuildResponse, DeployOutcome
from services.activity_feed import ActivityFeed
from services.clients import CodefreshClient, GitHubClient, RegistryClient
from services.dependency_resolver import BuildDependencyResolver
from services.errors import ConfigurationError, MissingBuildError, UpstreamLookupError
from services.job_factory import (
    MAX_JOB_NAME_LENGTH,
    create_restore_job,
    generate_deploy_tag,
    hash_env,
    image_reference,
    registry_repository_for,
)
from services.job_monitor import JobMonitor
from services.kubernetes_client import ClusterClient
from services.native_build import NativeBuildOptions, NativeBuildRunner
from services.repository import EntityRepository, PostgresRepository
from services.template_engine import TemplateEngine
from services.token_dictionary import BuildEnvironmentResolver

logger = logging.getLogger(__name__)

NATIVE_ENGINES = {engine.value for engine in BuildEngine}
RESTORE_TYPES = (DeployType.AURORA_RESTORE, DeployType.RDS_RESTORE)
SOURCE_TYPES = (DeployType.GITHUB, DeployType.HELM)


def split_repository(full_name: str) -> tuple[str, str]:
    """Split ``owner/name`` into its parts."""
    owner, _, name = full_name.partition("/")
    if not owner or not name:
        msg = f"Repository {full_name!r} is not in owner/name form"
        raise UpstreamLookupError(msg)
    return owner, name


class DeployOrchestrator:
    """Drives every active deploy of a build to a terminal status."""

    def __init__(
        self,
        repository: EntityRepository,
        defaults: LifecycleDefaults,
        build_defaults: BuildDefaults,
        github: GitHubClient,
        registry: RegistryClient,
        ci: CodefreshClient,
        cluster: ClusterClient,
        monitor: JobMonitor,
        native_builder: NativeBuildRunner,
        dependency_resolver: BuildDependencyResolver | None = None,
        environment_resolver: BuildEnvironmentResolver | None = None,
        feed: ActivityFeed | None = None,
        namespace_ready_timeout: float = 30.0,
    ) -> None:
        self.repository = repository
        self.defaults = defaults
        self.build_defaults = build_defaults
        self.github = github
        self.registry = registry
        self.ci = ci
        self.cluster = cluster
        self.monitor = monitor
        self.native_builder = native_builder
        self.feed = feed or ActivityFeed(repository)
        self.dependency_resolver = dependency_resolver or BuildDependencyResolver(repository, self.feed)
        self.environment_resolver = environment_resolver or BuildEnvironmentResolver(
            repository, TemplateEngine(defaults, repository.get_namespace_for_build)
        )
        self.namespace_ready_timeout = namespace_ready_timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, repository: EntityRepository | None = None
    ) -> "DeployOrchestrator":
        """Wire the orchestrator and its collaborators from application settings."""
        repository = repository or PostgresRepository(settings.database_url)
        defaults = settings.lifecycle_defaults()
        build_defaults = settings.build_defaults()
        github = GitHubClient(settings.github_api_url, settings.github_token)
        cluster = ClusterClient.from_settings(settings)
        monitor = JobMonitor(cluster, poll_interval=settings.job_poll_interval_seconds)
        feed = ActivityFeed(repository)

        return cls(
            repository=repository,
            defaults=defaults,
            build_defaults=build_defaults,
            github=github,
            registry=RegistryClient(settings.registry_domain),
            ci=CodefreshClient(
                settings.codefresh_api_url,
                settings.codefresh_api_key,
                poll_interval=settings.ci_poll_interval_seconds,
                timeout=settings.ci_timeout_seconds,
            ),
            cluster=cluster,
            monitor=monitor,
            native_builder=NativeBuildRunner(
                cluster,
                monitor,
                build_defaults,
                github.get_auth_token,
                namespace_ready_timeout=settings.namespace_ready_timeout_seconds,
            ),
            dependency_resolver=BuildDependencyResolver(
                repository,
                feed,
                poll_interval=settings.dependency_poll_interval_seconds,
                dispatch_max_attempts=settings.dependency_dispatch_max_attempts,
                output_max_attempts=settings.dependency_output_max_attempts,
            ),
            feed=feed,
            namespace_ready_timeout=settings.namespace_ready_timeout_seconds,
        )

    async def deploy_build(self, build_uuid: str, run_uuid: str | None = None) -> DeployBuildResponse:
        """Resolve environments and build every active deploy of a build.

        Args:
            build_uuid: UUID of the build to process
            run_uuid: Run id to stamp on every deploy; a fresh one is minted when omitted.
                Either way the new run supersedes any earlier one

        Returns:
            Per-deploy outcomes and an overall success flag

        Raises:
            MissingBuildError: If the build does not exist
        """
        start_time = time.monotonic()
        build = self.repository.get_build(build_uuid)
        if build is None:
            msg = f"Build {build_uuid} not found"
            raise MissingBuildError(msg)
        run_uuid = run_uuid or uuid.uuid4().hex

        logger.info(
            f"[BUILD {build.uuid}] Starting deploy run",
            extra={"correlation_id": build.uuid, "namespace": build.namespace, "run_uuid": run_uuid},
        )
        self.environment_resolver.resolve(build)

        deploys = self.repository.list_deploys(build.id)
        self.mark_configurations_as_built(build, deploys)

        targets = [
            deploy
            for deploy in deploys
            if deploy.active and deploy.deployable.type != DeployType.CONFIGURATION
        ]
        outcomes = await asyncio.gather(
            *(self._supervise(deploy, build, deploys, run_uuid) for deploy in targets)
        )

        success = all(outcome.success for outcome in outcomes)
        logger.info(
            f"[BUILD {build.uuid}] {'✓' if success else '✗'} Deploy run finished",
            extra={
                "correlation_id": build.uuid,
                "deploy_count": len(outcomes),
                "failed": [o.deploy_uuid for o in outcomes if not o.success],
                "duration_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return DeployBuildResponse(
            build_uuid=build.uuid, run_uuid=run_uuid, success=success, deploys=list(outcomes)
        )

    def mark_configurations_as_built(self, build: Build, deploys: list[Deploy]) -> None:
        configuration_deploys = [d for d in deploys if d.deployable.type == DeployType.CONFIGURATION]
        for deploy in configuration_deploys:
            self.repository.patch_deploy(deploy.id, {"status": DeployStatus.BUILT})
        if configuration_deploys:
            logger.info(
                f"[BUILD {build.uuid}] Marked configuration deploys as built: "
                f"{', '.join(d.uuid for d in configuration_deploys)}"
            )

    def start_run(self, deploy: Deploy, run_uuid: str) -> str:
        """Claim ``deploy`` for a run, superseding whichever run held it."""
        self.repository.patch_deploy(deploy.id, {"run_uuid": run_uuid})
        deploy.run_uuid = run_uuid
        return run_uuid

    async def _supervise(
        self, deploy: Deploy, build: Build, deploys: list[Deploy], run_uuid: str
    ) -> DeployOutcome:
        run = self.start_run(deploy, run_uuid)
        try:
            success = await self.deploy(deploy, build, deploys, run)
        except Exception as e:
            logger.exception(
                f"[DEPLOY {deploy.uuid}] ✗ Uncaught error while building",
                extra={
                    "correlation_id": build.uuid,
                    "deploy_uuid": deploy.uuid,
                    "run_uuid": run,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
            )
            self.feed.patch(
                deploy, {"status": DeployStatus.ERROR, "status_message": str(e)}, run, build
            )
            success = False
        return DeployOutcome(
            deploy_uuid=deploy.uuid,
            success=success,
            status=deploy.status,
            status_message=deploy.status_message,
        )

    async def deploy(self, deploy: Deploy, build: Build, deploys: list[Deploy], run_uuid: str) -> bool:
        """Pick the build strategy for one deploy and run it."""
        deployable = deploy.deployable

        if deployable.type == DeployType.DOCKER:
            tag = deploy.tag or deployable.default_tag or "latest"
            self.feed.patch(
                deploy,
                {"status": DeployStatus.BUILT, "docker_image": f"{deployable.docker_image}:{tag}"},
                run_uuid,
                build,
            )
            logger.info(f"[DEPLOY {deploy.uuid}] Marked as BUILT since it is a public docker image")
            return True

        if deployable.type in RESTORE_TYPES:
            return await self.run_restore(deploy, build, run_uuid)

        if deployable.type == DeployType.CODEFRESH:
            return await self.deploy_codefresh(deploy, build, run_uuid)

        if deployable.type in SOURCE_TYPES:
            if deploy.branch_name is None:
                self.feed.patch(deploy, {"status": DeployStatus.READY}, run_uuid, build)
                logger.info(f"[BUILD {deploy.uuid}] Deploy is marked ready for external host")
                return True
            if deployable.type == DeployType.HELM and deployable.public_helm_chart:
                return await self.mark_public_helm_built(deploy, build, run_uuid)
            return await self.build_from_source(deploy, build, deploys, run_uuid)

        logger.debug(f"[DEPLOY {deploy.uuid}] Build type not recognized: {deployable.type}")
        return False

    async def mark_public_helm_built(self, deploy: Deploy, build: Build, run_uuid: str) -> bool:
        attrs: dict[str, Any] = {
            "status": DeployStatus.BUILT,
            "status_message": "Helm chart does not need to be built",
        }
        repository = deploy.deployable.repository
        if repository:
            try:
                owner, name = split_repository(repository)
                sha = await asyncio.to_thread(self.github.get_sha_for_branch, deploy.branch_name, owner, name)
            except (requests.RequestException, UpstreamLookupError) as e:
                logger.debug(
                    f"[DEPLOY {deploy.uuid}] Could not get SHA for public helm chart, continuing without it: {e}"
                )
            else:
                if sha:
                    attrs["sha"] = sha
        self.feed.patch(deploy, attrs, run_uuid, build)
        return True

    def _fail(self, deploy: Deploy, build: Build, run_uuid: str, message: str) -> bool:
        logger.error(
            f"[BUILD {deploy.uuid}] {message}",
            extra={"correlation_id": build.uuid, "deploy_uuid": deploy.uuid},
        )
        self.feed.patch(
            deploy, {"status": DeployStatus.ERROR, "status_message": message}, run_uuid, build
        )
        return False

    async def _resolve_sha(self, deploy: Deploy) -> str | None:
        owner, name = split_repository(deploy.deployable.repository)
        return await asyncio.to_thread(self.github.get_sha_for_branch, deploy.branch_name, owner, name)

    def patch_deploy_with_tag(
        self,
        deploy: Deploy,
        build: Build,
        run_uuid: str,
        registry_repository: str,
        tag: str,
        init_tag: str | None = None,
    ) -> bool:
        """Point the deploy at its built image(s) and mark it BUILT."""
        domain = self.defaults.registry_domain
        attrs: dict[str, Any] = {
            "status": DeployStatus.BUILT,
            "tag": tag,
            "docker_image": image_reference(domain, registry_repository, tag),
            "status_message": "Successfully built image",
        }
        if init_tag and deploy.deployable.init_dockerfile_path:
            attrs["init_docker_image"] = image_reference(domain, registry_repository, init_tag)
        return self.feed.patch(deploy, attrs, run_uuid, build)

    async def build_from_source(
        self, deploy: Deploy, build: Build, deploys: list[Deploy], run_uuid: str
    ) -> bool:
        """Build the deploy's image(s) unless tags for this SHA and env already exist.

        Returns:
            True if the deploy ended up BUILT
        """
        deployable = deploy.deployable
        self.feed.patch(deploy, {"status": DeployStatus.CLONING}, run_uuid, build)

        if not deployable.repository:
            return self._fail(deploy, build, run_uuid, "No repository configured for this service")

        full_sha = await self._resolve_sha(deploy)
        if not full_sha:
            return self._fail(
                deploy,
                build,
                run_uuid,
                f"Failed to retrieve SHA for {deployable.repository}/{deploy.branch_name}",
            )

        domain = self.defaults.registry_domain
        base_repository = deployable.registry_repository or self.defaults.registry_repository
        if not domain or not base_repository:
            return self._fail(deploy, build, run_uuid, "Missing registry config to build image")

        short_sha = full_sha[:7]
        env_variables = {**deploy.env, **build.comment_runtime_env}
        env_hash = hash_env(env_variables)
        tag = generate_deploy_tag(short_sha, env_hash)
        init_tag = generate_deploy_tag(short_sha, env_hash, prefix="lfc-init")
        registry_repository = registry_repository_for(base_repository, deployable.name)

        tags_exist = await asyncio.to_thread(self.registry.tag_exists, tag, registry_repository)
        if tags_exist and deployable.init_dockerfile_path:
            tags_exist = await asyncio.to_thread(self.registry.tag_exists, init_tag, registry_repository)
        logger.debug(f"[BUILD {deploy.uuid}] Tags exist check: {tags_exist}")

        if tags_exist:
            logger.info(f"[BUILD {deploy.uuid}] Image already exists")
            self.patch_deploy_with_tag(deploy, build, run_uuid, registry_repository, tag, init_tag)
            return True

        env = await self.dependency_resolver.wait_and_resolve(
            deploy, build, deploys, env_variables, run_uuid
        )
        self.feed.patch(
            deploy,
            {
                "status": DeployStatus.BUILDING,
                "sha": full_sha,
                "status_message": f"Building {deploy.uuid}...",
            },
            run_uuid,
            build,
        )

        engine = (deployable.builder_engine or "").lower()
        if engine in NATIVE_ENGINES:
            success = await self._build_native(
                deploy, build, engine, env, full_sha, tag, init_tag, registry_repository
            )
        else:
            success = await self._build_with_ci(
                deploy, build, run_uuid, env, full_sha, tag, init_tag, registry_repository
            )

        if not success:
            self.feed.patch(deploy, {"status": DeployStatus.BUILD_FAILED}, run_uuid, build)
            return False

        self.patch_deploy_with_tag(deploy, build, run_uuid, registry_repository, tag, init_tag)
        logger.info(f"[BUILD {deploy.uuid}] ✓ Image built successfully")
        return True

    async def _build_native(
        self,
        deploy: Deploy,
        build: Build,
        engine: str,
        env: dict[str, Any],
        full_sha: str,
        tag: str,
        init_tag: str,
        registry_repository: str,
    ) -> bool:
        deployable = deploy.deployable
        logger.info(f"[BUILD {deploy.uuid}] Building image with native build ({engine})")

        def on_submitted(job_name: str) -> None:
            self.repository.patch_deploy(
                deploy.id, {"build_pipeline_id": job_name, "build_job_name": job_name}
            )
            deploy.build_pipeline_id = job_name
            deploy.build_job_name = job_name

        result = await self.native_builder.build(
            NativeBuildOptions(
                registry_domain=self.defaults.registry_domain,
                registry_repository=registry_repository,
                env_vars=env,
                dockerfile_path=deployable.dockerfile_path,
                tag=tag,
                revision=full_sha,
                repo=deployable.repository,
                branch=deploy.branch_name,
                init_dockerfile_path=deployable.init_dockerfile_path,
                init_tag=init_tag if deployable.init_dockerfile_path else None,
                namespace=build.namespace,
                build_id=str(build.id),
                deploy_uuid=deploy.uuid,
                service_name=deployable.name,
                is_static=build.is_static,
            ),
            engine,
            on_submitted=on_submitted,
        )
        self.repository.patch_deploy(deploy.id, {"build_output": result.logs})
        deploy.build_output = result.logs
        return result.success

    async def _build_with_ci(
        self,
        deploy: Deploy,
        build: Build,
        run_uuid: str,
        env: dict[str, Any],
        full_sha: str,
        tag: str,
        init_tag: str,
        registry_repository: str,
    ) -> bool:
        deployable = deploy.deployable
        if not deployable.pipeline_id:
            msg = f"No build engine or CI pipeline configured for {deployable.name}"
            raise ConfigurationError(msg)

        logger.info(f"[BUILD {deploy.uuid}] Building image with Codefresh")
        variables = {
            **env,
            "TAG": tag,
            "SHA": full_sha,
            "REPOSITORY": registry_repository,
            "DOCKERFILE_PATH": deployable.dockerfile_path or "Dockerfile",
        }
        if deployable.init_dockerfile_path:
            variables["INIT_TAG"] = init_tag
            variables["INIT_DOCKERFILE_PATH"] = deployable.init_dockerfile_path

        run_id = await asyncio.to_thread(
            self.ci.trigger, deployable.pipeline_id, deploy.branch_name, variables
        )
        build_logs = self.ci.build_url(run_id)
        self.feed.patch(deploy, {"build_logs": build_logs}, run_uuid, build)
        self.repository.patch_deploy(deploy.id, {"build_pipeline_id": run_id})
        deploy.build_pipeline_id = run_id

        success = await self.ci.wait_for_completion(run_id)
        output = await asyncio.to_thread(self.ci.get_logs, run_id)
        self.repository.patch_deploy(deploy.id, {"build_output": output})
        deploy.build_output = output

        if not success:
            logger.warning(
                f"[BUILD {deploy.uuid}] Error building image",
                extra={"deploy_uuid": deploy.uuid, "url": build_logs},
            )
        return success

    async def deploy_codefresh(self, deploy: Deploy, build: Build, run_uuid: str) -> bool:
        """Run the service's own CI pipeline unless this SHA and env already ran."""
        deployable = deploy.deployable
        if not deployable.pipeline_id:
            msg = f"No CI pipeline configured for {deployable.name}"
            raise ConfigurationError(msg)
        if not deployable.repository:
            return self._fail(deploy, build, run_uuid, "No repository configured for this service")

        try:
            full_sha = await self._resolve_sha(deploy)
        except requests.RequestException as e:
            logger.warning(
                f"[BUILD {build.uuid}] Could not retrieve commit SHA for {deploy.uuid}: {e}"
            )
            full_sha = None
        if not full_sha:
            return self._fail(
                deploy,
                build,
                run_uuid,
                f"Failed to retrieve SHA for {deployable.repository}/{deploy.branch_name}",
            )

        env_hash = hash_env({**deploy.env, **build.comment_runtime_env})
        build_sha = f"{full_sha[:7]}-{env_hash}"

        if deploy.sha == build_sha:
            self.feed.patch(deploy, {"status": DeployStatus.BUILT, "sha": build_sha}, run_uuid, build)
            logger.info(f"[BUILD {deploy.uuid}] Marked CI deploy as built since there are no changes")
            return True

        self.repository.patch_deploy(
            deploy.id, {"build_logs": None, "build_pipeline_id": None, "build_output": None}
        )
        build_logs = None
        try:
            run_id = await asyncio.to_thread(
                self.ci.trigger, deployable.pipeline_id, deploy.branch_name, deploy.env
            )
            build_logs = self.ci.build_url(run_id)
            self.feed.patch(
                deploy,
                {
                    "build_logs": build_logs,
                    "status": DeployStatus.BUILDING,
                    "build_pipeline_id": run_id,
                    "status_message": "CI build triggered...",
                },
                run_uuid,
                build,
            )
            completed = await self.ci.wait_for_completion(run_id)
            output = await asyncio.to_thread(self.ci.get_logs, run_id)
        except requests.RequestException:
            logger.exception(
                f"[BUILD {build.uuid}] CI build failed for {deploy.uuid}", extra={"url": build_logs}
            )
            completed = False
            output = None

        if not completed:
            self.feed.patch(
                deploy,
                {"status": DeployStatus.ERROR, "sha": build_sha, "status_message": "CI build failed"},
                run_uuid,
                build,
            )
            return False

        self.feed.patch(
            deploy,
            {
                "status": DeployStatus.BUILT,
                "sha": build_sha,
                "build_output": output,
                "status_message": "CI build completed",
            },
            run_uuid,
            build,
        )
        logger.info(f"[DEPLOY {deploy.uuid}] CI build completed", extra={"url": build_logs})
        return True

    async def run_restore(self, deploy: Deploy, build: Build, run_uuid: str) -> bool:
        """Restore a database snapshot once per deploy with a cluster Job."""
        if deploy.status == DeployStatus.BUILT:
            logger.info(f"[DEPLOY {deploy.uuid}] Database restore already built")
            return True

        deployable = deploy.deployable
        if not deployable.restore_image:
            msg = f"No restore image configured for {deployable.name}"
            raise ConfigurationError(msg)

        self.feed.patch(
            deploy,
            {"status": DeployStatus.BUILDING, "status_message": "Restoring database..."},
            run_uuid,
            build,
        )
        job_name = f"{deploy.uuid}-restore-{uuid.uuid4().hex[:5]}"[:MAX_JOB_NAME_LENGTH].rstrip("-")
        logger.info(f"[DEPLOY {deploy.uuid}] Restoring database with job {job_name}")

        await self.cluster.ensure_namespace_exists(build.namespace, timeout=self.namespace_ready_timeout)
        manifest = create_restore_job(
            job_name=job_name,
            namespace=build.namespace,
            service_account=self.build_defaults.service_account,
            service_name=deployable.name,
            deploy_uuid=deploy.uuid,
            image=deployable.restore_image,
            command=deployable.restore_command,
            args=deployable.restore_args,
            env=deploy.env,
            timeout=self.build_defaults.job_timeout,
        )
        await asyncio.to_thread(self.cluster.create_job, build.namespace, manifest)
        self.repository.patch_deploy(
            deploy.id, {"build_pipeline_id": job_name, "build_job_name": job_name}
        )

        result = await self.monitor.wait_for_job_and_get_logs(
            job_name, build.namespace, self.build_defaults.job_timeout
        )
        self.repository.patch_deploy(deploy.id, {"build_output": result.logs})

        if not result.success:
            self.feed.patch(
                deploy,
                {"status": DeployStatus.ERROR, "status_message": f"Database restore {result.status}"},
                run_uuid,
                build,
            )
            return False

        self.feed.patch(
            deploy,
            {"status": DeployStatus.BUILT, "status_message": "Database restore completed"},
            run_uuid,
            build,
        )
        logger.info(f"[DEPLOY {deploy.uuid}] ✓ Restored database")
        return True
