"""Entity repository used as the single source of truth for build state."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from pydantic import TypeAdapter

from models.entities import ActivityEvent, Build, Deploy

logger = logging.getLogger(__name__)

_attrs_adapter = TypeAdapter(dict[str, Any])

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS builds (
        id SERIAL PRIMARY KEY,
        uuid TEXT UNIQUE NOT NULL,
        namespace TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deploys (
        id SERIAL PRIMARY KEY,
        build_id INTEGER NOT NULL REFERENCES builds (id),
        uuid TEXT NOT NULL,
        run_uuid TEXT,
        data JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS configurations (
        service_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        PRIMARY KEY (service_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_events (
        id SERIAL PRIMARY KEY,
        build_uuid TEXT NOT NULL,
        deploy_uuid TEXT NOT NULL,
        run_uuid TEXT NOT NULL,
        status TEXT,
        status_message TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class EntityRepository(ABC):
    """Read/patch access to builds, deploys, configurations and the activity feed."""

    @abstractmethod
    def get_build(self, uuid: str) -> Build | None:
        """Fetch a build by its UUID."""

    @abstractmethod
    def get_build_by_id(self, build_id: int) -> Build | None:
        """Fetch a build by its primary key."""

    @abstractmethod
    def list_deploys(self, build_id: int) -> list[Deploy]:
        """All deploys belonging to a build."""

    @abstractmethod
    def get_deploy(self, deploy_id: int) -> Deploy | None:
        """Re-read a deploy row."""

    @abstractmethod
    def patch_deploy(
        self, deploy_id: int, attrs: dict[str, Any], run_uuid: str | None = None
    ) -> bool:
        """Patch a deploy row.

        Args:
            deploy_id: Primary key of the deploy
            attrs: Field values to overwrite
            run_uuid: When given, only patch if the row still carries this run id

        Returns:
            True if a row was updated
        """

    @abstractmethod
    def get_configuration(self, service_id: int, key: str) -> dict[str, Any] | None:
        """Configuration data block for a service and key."""

    @abstractmethod
    def add_activity_event(self, event: ActivityEvent) -> None:
        """Append to the activity feed."""

    @abstractmethod
    def list_activity_events(self, build_uuid: str) -> list[ActivityEvent]:
        """Activity feed for a build, oldest first."""

    def get_namespace_for_build(self, uuid: str) -> str | None:
        """Namespace of the build with the given UUID."""
        build = self.get_build(uuid)
        return build.namespace if build else None


class InMemoryRepository(EntityRepository):
    """Process-local repository for local runs and tests."""

    def __init__(self) -> None:
        self._builds: dict[int, Build] = {}
        self._deploys: dict[int, Deploy] = {}
        self._configurations: dict[tuple[int, str], dict[str, Any]] = {}
        self._events: list[ActivityEvent] = []

    def add_build(self, build: Build) -> Build:
        self._builds[build.id] = build.model_copy(deep=True)
        return build

    def add_deploy(self, deploy: Deploy) -> Deploy:
        self._deploys[deploy.id] = deploy.model_copy(deep=True)
        return deploy

    def add_configuration(self, service_id: int, key: str, data: dict[str, Any]) -> None:
        self._configurations[(service_id, key)] = dict(data)

    def get_build(self, uuid: str) -> Build | None:
        for build in self._builds.values():
            if build.uuid == uuid:
                return build.model_copy(deep=True)
        return None

    def get_build_by_id(self, build_id: int) -> Build | None:
        build = self._builds.get(build_id)
        return build.model_copy(deep=True) if build else None

    def list_deploys(self, build_id: int) -> list[Deploy]:
        return [
            deploy.model_copy(deep=True)
            for deploy in sorted(self._deploys.values(), key=lambda d: d.id)
            if deploy.build_id == build_id
        ]

    def get_deploy(self, deploy_id: int) -> Deploy | None:
        deploy = self._deploys.get(deploy_id)
        return deploy.model_copy(deep=True) if deploy else None

    def patch_deploy(
        self, deploy_id: int, attrs: dict[str, Any], run_uuid: str | None = None
    ) -> bool:
        current = self._deploys.get(deploy_id)
        if current is None:
            return False
        if run_uuid is not None and current.run_uuid != run_uuid:
            return False
        merged = {**current.model_dump(), **attrs}
        self._deploys[deploy_id] = Deploy.model_validate(merged)
        return True

    def get_configuration(self, service_id: int, key: str) -> dict[str, Any] | None:
        data = self._configurations.get((service_id, key))
        return dict(data) if data is not None else None

    def add_activity_event(self, event: ActivityEvent) -> None:
        self._events.append(event)

    def list_activity_events(self, build_uuid: str) -> list[ActivityEvent]:
        return [event for event in self._events if event.build_uuid == build_uuid]


class PostgresRepository(EntityRepository):
    """Repository backed by PostgreSQL rows with JSONB payloads."""

    def __init__(self, dsn: str) -> None:
        if not dsn:
            msg = "DATABASE_URL environment variable is required"
            raise ValueError(msg)
        self.dsn = dsn

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        conn = psycopg2.connect(self.dsn)
        try:
            with conn, conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        """Create the tables if they do not exist yet."""
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
        logger.info("Repository schema verified")

    @staticmethod
    def _build_from_row(row: dict[str, Any]) -> Build:
        return Build.model_validate(
            {**row["data"], "id": row["id"], "uuid": row["uuid"], "namespace": row["namespace"]}
        )

    @staticmethod
    def _deploy_from_row(row: dict[str, Any]) -> Deploy:
        return Deploy.model_validate(
            {
                **row["data"],
                "id": row["id"],
                "build_id": row["build_id"],
                "uuid": row["uuid"],
                "run_uuid": row["run_uuid"],
            }
        )

    def get_build(self, uuid: str) -> Build | None:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, uuid, namespace, data FROM builds WHERE uuid = %s",
                (uuid,),
            )
            row = cursor.fetchone()
        return self._build_from_row(row) if row else None

    def get_build_by_id(self, build_id: int) -> Build | None:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, uuid, namespace, data FROM builds WHERE id = %s",
                (build_id,),
            )
            row = cursor.fetchone()
        return self._build_from_row(row) if row else None

    def list_deploys(self, build_id: int) -> list[Deploy]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, build_id, uuid, run_uuid, data FROM deploys "
                "WHERE build_id = %s ORDER BY id",
                (build_id,),
            )
            rows = cursor.fetchall()
        return [self._deploy_from_row(row) for row in rows]

    def get_deploy(self, deploy_id: int) -> Deploy | None:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, build_id, uuid, run_uuid, data FROM deploys WHERE id = %s",
                (deploy_id,),
            )
            row = cursor.fetchone()
        return self._deploy_from_row(row) if row else None

    def patch_deploy(
        self, deploy_id: int, attrs: dict[str, Any], run_uuid: str | None = None
    ) -> bool:
        payload = _attrs_adapter.dump_python(attrs, mode="json")
        new_run_uuid = payload.pop("run_uuid", None)
        query = (
            "UPDATE deploys SET data = data || %s::jsonb, "
            "run_uuid = COALESCE(%s, run_uuid) WHERE id = %s"
        )
        params: list[Any] = [Json(payload), new_run_uuid, deploy_id]
        if run_uuid is not None:
            query += " AND run_uuid = %s"
            params.append(run_uuid)

        with self._cursor() as cursor:
            cursor.execute(query, params)
            updated = cursor.rowcount > 0

        if not updated:
            logger.debug(
                "Deploy patch matched no rows",
                extra={"deploy_id": deploy_id, "run_uuid": run_uuid},
            )
        return updated

    def get_configuration(self, service_id: int, key: str) -> dict[str, Any] | None:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT data FROM configurations WHERE service_id = %s AND key = %s",
                (service_id, key),
            )
            row = cursor.fetchone()
        return dict(row["data"]) if row else None

    def add_activity_event(self, event: ActivityEvent) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO activity_events "
                "(build_uuid, deploy_uuid, run_uuid, status, status_message, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    event.build_uuid,
                    event.deploy_uuid,
                    event.run_uuid,
                    event.status.value if event.status else None,
                    event.status_message,
                    event.created_at,
                ),
            )

    def list_activity_events(self, build_uuid: str) -> list[ActivityEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT build_uuid, deploy_uuid, run_uuid, status, status_message, created_at "
                "FROM activity_events WHERE build_uuid = %s ORDER BY id",
                (build_uuid,),
            )
            rows = cursor.fetchall()
        return [ActivityEvent.model_validate(dict(row)) for row in rows]
