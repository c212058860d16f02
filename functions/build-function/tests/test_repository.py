"""Tests for the entity repositories."""

from unittest.mock import MagicMock, patch

import pytest

from models.entities import DeployStatus
from services.repository import PostgresRepository


class TestInMemoryRepository:
    """Tests for run-guarded patches on the in-memory repository."""

    def test_patch_applies_for_current_run(self, repository, make_deploy):
        deploy = repository.add_deploy(make_deploy("api", run_uuid="run-1"))

        assert repository.patch_deploy(deploy.id, {"status": DeployStatus.BUILT}, run_uuid="run-1") is True
        assert repository.get_deploy(deploy.id).status == DeployStatus.BUILT

    def test_patch_dropped_for_stale_run(self, repository, make_deploy):
        deploy = repository.add_deploy(make_deploy("api", run_uuid="run-2"))

        assert repository.patch_deploy(deploy.id, {"status": DeployStatus.BUILT}, run_uuid="run-1") is False
        assert repository.get_deploy(deploy.id).status is None

    def test_unguarded_patch(self, repository, make_deploy):
        deploy = repository.add_deploy(make_deploy("api", run_uuid="run-2"))

        assert repository.patch_deploy(deploy.id, {"build_output": "logs"}) is True
        assert repository.get_deploy(deploy.id).build_output == "logs"

    def test_missing_deploy(self, repository):
        assert repository.patch_deploy(999, {"status": DeployStatus.BUILT}) is False

    def test_reads_are_copies(self, repository, make_deploy):
        deploy = repository.add_deploy(make_deploy("api"))

        repository.get_deploy(deploy.id).env["X"] = "1"

        assert repository.get_deploy(deploy.id).env == {}

    def test_namespace_lookup(self, repository):
        assert repository.get_namespace_for_build("abc123") == "env-abc123"
        assert repository.get_namespace_for_build("missing") is None


class TestPostgresRepository:
    """Tests for PostgresRepository against a mocked connection."""

    @pytest.fixture
    def cursor(self):
        with patch("services.repository.psycopg2.connect") as mock_connect:
            conn = MagicMock()
            cursor = MagicMock()
            conn.cursor.return_value.__enter__.return_value = cursor
            mock_connect.return_value = conn
            yield cursor

    def test_requires_dsn(self):
        with pytest.raises(ValueError, match="DATABASE_URL"):
            PostgresRepository("")

    def test_guarded_patch(self, cursor):
        cursor.rowcount = 1

        applied = PostgresRepository("postgresql://db").patch_deploy(
            7, {"status": DeployStatus.BUILT}, run_uuid="run-1"
        )

        query, params = cursor.execute.call_args.args
        assert applied is True
        assert query.endswith("AND run_uuid = %s")
        assert params[0].adapted == {"status": "built"}
        assert params[1:] == [None, 7, "run-1"]

    def test_stale_run_matches_no_rows(self, cursor):
        cursor.rowcount = 0

        assert PostgresRepository("postgresql://db").patch_deploy(7, {"status": "error"}, run_uuid="old") is False

    def test_run_uuid_moves_to_its_column(self, cursor):
        cursor.rowcount = 1

        PostgresRepository("postgresql://db").patch_deploy(7, {"run_uuid": "run-2"})

        query, params = cursor.execute.call_args.args
        assert "AND run_uuid" not in query
        assert params[0].adapted == {}
        assert params[1] == "run-2"

    def test_get_deploy(self, cursor):
        cursor.fetchone.return_value = {
            "id": 7,
            "build_id": 1,
            "uuid": "api-abc123",
            "run_uuid": "run-1",
            "data": {"deployable": {"name": "api"}, "status": "built"},
        }

        deploy = PostgresRepository("postgresql://db").get_deploy(7)

        assert deploy.uuid == "api-abc123"
        assert deploy.status == DeployStatus.BUILT
        assert deploy.run_uuid == "run-1"
