"""Run-guarded deploy status writes and the derived activity feed."""

import logging
from typing import Any

from models.entities import ActivityEvent, Build, Deploy
from services.repository import EntityRepository

logger = logging.getLogger(__name__)


class ActivityFeed:
    """Persists deploy transitions for the run that owns them."""

    def __init__(self, repository: EntityRepository) -> None:
        self.repository = repository

    def patch(self, deploy: Deploy, attrs: dict[str, Any], run_uuid: str, build: Build | None = None) -> bool:
        """Patch ``deploy`` only while ``run_uuid`` is still its current run.

        A write from a superseded run matches no rows and is dropped without error.

        Args:
            deploy: The deploy to update
            attrs: Field values to write
            run_uuid: Run that issued the write
            build: Parent build, used to key the activity event

        Returns:
            True if the write was applied
        """
        applied = self.repository.patch_deploy(deploy.id, attrs, run_uuid=run_uuid)
        if not applied:
            logger.debug(
                f"[DEPLOY {deploy.uuid}] Dropped write from superseded run {run_uuid}",
                extra={"deploy_uuid": deploy.uuid, "run_uuid": run_uuid},
            )
            return False

        for key, value in attrs.items():
            if key in Deploy.model_fields:
                setattr(deploy, key, value)

        if "status" in attrs or "status_message" in attrs:
            build_uuid = build.uuid if build else str(deploy.build_id)
            try:
                self.repository.add_activity_event(
                    ActivityEvent(
                        build_uuid=build_uuid,
                        deploy_uuid=deploy.uuid,
                        run_uuid=run_uuid,
                        status=deploy.status,
                        status_message=deploy.status_message,
                    )
                )
            except Exception as e:
                logger.warning(
                    f"[BUILD {build_uuid}] Failed to update the activity feed: {e}",
                    extra={"deploy_uuid": deploy.uuid, "error_type": type(e).__name__},
                )
        return True
