"""Cross-service build dependencies declared through ``buildOutput`` markers.

A service can take a value from another service's build log, for example::

    DB_HOST: "{{{db.buildOutput(\\bhost=\\S+\\b)}}}"

The awaiting deploy waits until ``db`` has been dispatched and its build log
is captured, then stores the first regex match under ``DB_HOST``. An empty
pattern only orders the builds and yields an empty string.
"""

import asyncio
import logging
import re
from typing import Any

from pydantic import BaseModel

from models.entities import Build, Deploy, DeployStatus
from services.activity_feed import ActivityFeed
from services.errors import DependencyTimeoutError
from services.repository import EntityRepository

logger = logging.getLogger(__name__)

BUILD_OUTPUT_MARKER = re.compile(r"{{{?([^{}]+)\.buildOutput\((.*?)\)}}}?")


class PatternInfo(BaseModel):
    """A regex to apply to a dependency's build log and the env key to fill."""

    pattern: str
    env_key: str


def extract_build_dependencies(env: dict[str, Any] | None) -> dict[str, list[PatternInfo]]:
    """Dependency declarations found in an unresolved env mapping, keyed by service name."""
    dependencies: dict[str, list[PatternInfo]] = {}
    for key, value in (env or {}).items():
        if not isinstance(value, str) or not value.strip():
            continue
        for match in BUILD_OUTPUT_MARKER.finditer(value):
            dependencies.setdefault(match.group(1), []).append(
                PatternInfo(pattern=match.group(2), env_key=key)
            )
    return dependencies


async def wait_for_column_value(
    repository: EntityRepository,
    deploy_id: int,
    field: str,
    max_attempts: int = 250,
    interval: float = 5.0,
) -> Deploy | None:
    """Re-read a deploy until ``field`` is truthy.

    Returns:
        The refreshed deploy, or None if the value never appeared
    """
    deploy = await asyncio.to_thread(repository.get_deploy, deploy_id)
    attempts = 0
    while (deploy is None or not getattr(deploy, field)) and attempts < max_attempts:
        await asyncio.sleep(interval)
        deploy = await asyncio.to_thread(repository.get_deploy, deploy_id)
        attempts += 1
    return deploy if deploy is not None and getattr(deploy, field) else None


class BuildDependencyResolver:
    """Blocks a deploy on its declared dependencies and merges extracted values."""

    def __init__(
        self,
        repository: EntityRepository,
        feed: ActivityFeed,
        poll_interval: float = 5.0,
        dispatch_max_attempts: int = 250,
        output_max_attempts: int = 240,
    ) -> None:
        self.repository = repository
        self.feed = feed
        self.poll_interval = poll_interval
        self.dispatch_max_attempts = dispatch_max_attempts
        self.output_max_attempts = output_max_attempts

    async def wait_and_resolve(
        self,
        deploy: Deploy,
        build: Build,
        deploys: list[Deploy],
        env_variables: dict[str, Any],
        run_uuid: str,
    ) -> dict[str, Any]:
        """Wait for every dependency of ``deploy`` and persist the merged env.

        Args:
            deploy: The awaiting deploy
            build: Parent build
            deploys: Sibling deploys of the build
            env_variables: Env to merge extracted values into
            run_uuid: Run issuing the status writes

        Returns:
            The env that was stored on the deploy

        Raises:
            DependencyTimeoutError: If a dependency never dispatched or never produced output
        """
        dependencies = extract_build_dependencies(deploy.deployable.env)
        pending: list[tuple[Deploy, str, list[PatternInfo]]] = []

        for service_name, patterns in dependencies.items():
            dependency_uuid = f"{service_name}-{build.uuid}"
            dependency = next((d for d in deploys if d.uuid == dependency_uuid), None)
            if dependency is None:
                logger.warning(
                    f"[BUILD {deploy.uuid}] Dependency {dependency_uuid} is not part of this build",
                    extra={"correlation_id": build.uuid, "deploy_uuid": deploy.uuid},
                )
                continue

            logger.info(f"[BUILD {deploy.uuid}] {deploy.uuid} is waiting for {dependency_uuid} to complete")
            self.feed.patch(
                deploy,
                {
                    "status": DeployStatus.WAITING,
                    "status_message": f"Waiting for {dependency_uuid} to finish building.",
                },
                run_uuid,
                build,
            )

            dispatched = await wait_for_column_value(
                self.repository,
                dependency.id,
                "build_pipeline_id",
                self.dispatch_max_attempts,
                self.poll_interval,
            )
            if dispatched is None:
                msg = f"Timed out waiting for {dependency_uuid} to start building"
                raise DependencyTimeoutError(msg)
            pending.append((dispatched, service_name, patterns))

        results = await asyncio.gather(
            *(self._extract_values(deploy, dependency, service_name, patterns)
              for dependency, service_name, patterns in pending)
        )

        extracted: dict[str, Any] = {}
        for values in results:
            extracted.update(values)

        env = {**env_variables, **extracted}
        self.repository.patch_deploy(deploy.id, {"env": env})
        deploy.env = env
        return env

    async def _extract_values(
        self,
        awaiting: Deploy,
        dependency: Deploy,
        service_name: str,
        patterns: list[PatternInfo],
    ) -> dict[str, Any]:
        if all(not item.pattern.strip() for item in patterns):
            logger.info(f"[BUILD {awaiting.uuid}] Ordering-only dependency on {dependency.uuid}")
            return {item.env_key: "" for item in patterns}

        updated = await wait_for_column_value(
            self.repository,
            dependency.id,
            "build_output",
            self.output_max_attempts,
            self.poll_interval,
        )
        if updated is None:
            msg = f"Timed out waiting for build output from {dependency.uuid}"
            raise DependencyTimeoutError(msg)

        logs = updated.build_output
        values: dict[str, Any] = {}
        for item in patterns:
            if not item.pattern.strip():
                values[item.env_key] = ""
                continue

            match = re.search(item.pattern, logs)
            if match and match.group(0):
                values[item.env_key] = match.group(0)
                logger.debug(
                    f"[BUILD {awaiting.uuid}] Extracted {item.env_key} using pattern {item.pattern!r}"
                )
            else:
                logger.warning(
                    f"[BUILD {awaiting.uuid}] No match for pattern {item.pattern!r} in {service_name} "
                    f"build {updated.build_pipeline_id}; {item.env_key} left unset"
                )
        return values
