"""Token dictionary construction and per-build environment resolution."""

import logging
from typing import Any

from models.entities import (
    HYPHEN_REPLACEMENT,
    NO_DEFAULT_ENV_UUID,
    Build,
    Deploy,
    DeployType,
    FeatureFlag,
)
from services.errors import MissingBuildError
from services.repository import EntityRepository
from services.template_engine import TemplateEngine

logger = logging.getLogger(__name__)

ALLOWED_PROPERTIES = (
    "branchName",
    "ipAddress",
    "publicUrl",
    "UUID",
    "internalHostname",
    "dockerImage",
    "initDockerImage",
    "sha",
    "namespace",
)


def token_prefix(service_name: str) -> str:
    """Template-safe form of a service name."""
    return service_name.replace("-", HYPHEN_REPLACEMENT)


class TokenDictionaryBuilder:
    """Builds the flat token pool shared by every deploy of a build."""

    def __init__(self, repository: EntityRepository) -> None:
        self.repository = repository

    def build_tokens(
        self,
        deploys: list[Deploy],
        build_uuid: str,
        full_yaml_mode: bool,
        build: Build,
        extras: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Token pool for a set of deploys.

        Args:
            deploys: Every deploy of the build
            build_uuid: UUID of the build being resolved
            full_yaml_mode: Whether service definitions come from full YAML config
            build: The build itself, for feature flags
            extras: Values merged last with the highest priority

        Returns:
            Mapping of ``{service}_{property}`` keys to values
        """
        no_default_env = FeatureFlag.NO_DEFAULT_ENV_RESOLVE.value in build.enabled_features
        tokens: dict[str, Any] = {}

        for deploy in deploys:
            deployable = deploy.deployable
            if deployable.type == DeployType.CONFIGURATION:
                continue

            prefix = token_prefix(deployable.name)
            for prop in ALLOWED_PROPERTIES:
                if deploy.active:
                    if prop == "UUID":
                        value = (deployable.build_uuid or build_uuid) if full_yaml_mode else build_uuid
                    else:
                        value = deploy.property_value(prop)
                elif prop == "UUID":
                    value = deployable.default_uuid
                elif prop == "publicUrl":
                    value = deployable.default_public_url
                elif prop == "internalHostname":
                    if full_yaml_mode and no_default_env:
                        value = NO_DEFAULT_ENV_UUID
                    else:
                        value = deployable.default_internal_hostname
                else:
                    value = ""
                tokens[f"{prefix}_{prop}"] = value

            for port in deployable.host_port_mapping:
                if deploy.active:
                    value = f"{port}-{deploy.public_url}"
                else:
                    value = deployable.default_public_url
                tokens[f"{port}-{prefix}_publicUrl"] = value

        for block in self.configuration_blocks(deploys):
            tokens.update(block)

        if extras:
            tokens.update(extras)

        return tokens

    def configuration_blocks(self, deploys: list[Deploy]) -> list[dict[str, Any]]:
        """Data blocks of configuration-type deploys, in deploy order."""
        blocks = []
        for deploy in deploys:
            if deploy.deployable.type != DeployType.CONFIGURATION:
                continue
            service_id = deploy.service_id or deploy.deployable.service_id
            if service_id is None or deploy.branch_name is None:
                continue
            data = self.repository.get_configuration(service_id, deploy.branch_name)
            if data:
                blocks.append(data)
        return blocks

    def tokens_for_build(self, build: Build | None) -> dict[str, Any]:
        """Token pool for every deploy of a build, including build-level extras.

        Raises:
            MissingBuildError: If no build is given
        """
        if build is None:
            msg = "Cannot resolve environment variables without a build"
            raise MissingBuildError(msg)

        deploys = self.repository.list_deploys(build.id)
        return self.build_tokens(
            deploys,
            build.uuid,
            build.enable_full_yaml,
            build,
            extras={
                "buildUUID": build.uuid,
                "buildSHA": build.sha,
                "pullRequestNumber": build.pull_request_number,
                "namespace": build.namespace,
            },
        )


class BuildEnvironmentResolver:
    """Compiles and stores the env of every deploy in a build."""

    def __init__(
        self,
        repository: EntityRepository,
        engine: TemplateEngine,
        builder: TokenDictionaryBuilder | None = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.builder = builder or TokenDictionaryBuilder(repository)

    def resolve(self, build: Build | None) -> dict[str, dict[str, Any]]:
        """Resolve env (and init env) for each deploy of ``build``.

        Returns:
            Resolved env keyed by deploy UUID, for deploys that compiled
        """
        tokens = self.builder.tokens_for_build(build)
        resolved: dict[str, dict[str, Any]] = {}

        for deploy in self.repository.list_deploys(build.id):
            deployable = deploy.deployable
            try:
                attrs: dict[str, Any] = {
                    "env": self.engine.compile_env(
                        deployable.env, tokens, build.use_default_uuid, build.namespace
                    )
                }
                if deployable.init_dockerfile_path:
                    attrs["init_env"] = self.engine.compile_env(
                        deployable.init_env, tokens, build.use_default_uuid, build.namespace
                    )
                self.repository.patch_deploy(deploy.id, attrs)
                resolved[deploy.uuid] = attrs["env"]
            except Exception as e:
                logger.exception(
                    f"[BUILD {build.uuid}] ✗ Failed to resolve env for {deploy.uuid}",
                    extra={
                        "correlation_id": build.uuid,
                        "deploy_uuid": deploy.uuid,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    },
                )

        logger.info(
            f"[BUILD {build.uuid}] Resolved environment for {len(resolved)} deploys",
            extra={"correlation_id": build.uuid, "namespace": build.namespace},
        )
        return resolved
