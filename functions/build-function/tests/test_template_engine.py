"""Tests for template rendering."""

import pytest

from models.entities import NO_DEFAULT_ENV_UUID
from services.template_engine import TemplateEngine, build_hostname, with_hyphen_aliases


@pytest.fixture
def engine(defaults):
    return TemplateEngine(defaults)


class TestHelpers:
    """Tests for hostname and alias helpers."""

    def test_build_hostname(self):
        assert build_hostname("api", "env-1") == "api.env-1.svc.cluster.local"
        assert build_hostname("api", "env-1", "-v2", ":80/x") == "api-v2.env-1.svc.cluster.local:80/x"

    def test_hyphen_aliases_keep_original_keys(self):
        aliased = with_hyphen_aliases({"8080-web_publicUrl": "x", "api_UUID": "y"})
        assert aliased["8080-web_publicUrl"] == "x"
        assert aliased["8080______web_publicUrl"] == "x"
        assert aliased["api_UUID"] == "y"


class TestRender:
    """Tests for TemplateEngine.render."""

    def test_active_internal_hostname_uses_build_namespace(self, engine):
        """A hostname that belongs to this build resolves in the active namespace."""
        tokens = {"backend_internalHostname": "backend-abc123", "buildUUID": "abc123"}

        result = engine.render("{{{backend_internalHostname}}}:8080", tokens, True, "env-abc123")

        assert result == "backend-abc123.env-abc123.svc.cluster.local:8080"

    def test_inactive_internal_hostname_uses_baseline_namespace(self, defaults):
        engine = TemplateEngine(defaults, namespace_lookup=lambda uuid: f"static-{uuid}")
        tokens = {"db_internalHostname": "db-dev-0", "buildUUID": "abc123"}

        result = engine.render("{{{db_internalHostname}}}", tokens, True, "env-abc123")

        assert result == "db-dev-0.static-dev-0.svc.cluster.local"

    def test_baseline_namespace_falls_back_to_env_prefix(self, engine):
        assert engine.static_namespace("dev-0") == "env-dev-0"

    def test_baseline_namespace_prefix_is_configurable(self, defaults):
        engine = TemplateEngine(defaults.model_copy(update={"namespace_prefix": "static-"}))
        assert engine.static_namespace("dev-0") == "static-dev-0"

    def test_static_namespace_is_looked_up_once(self, defaults):
        calls = []

        def lookup(uuid):
            calls.append(uuid)
            return "static-env"

        engine = TemplateEngine(defaults, namespace_lookup=lookup)
        engine.static_namespace("dev-0")
        engine.static_namespace("dev-0")

        assert calls == ["dev-0"]

    def test_unresolved_uuid_defaults(self, engine):
        assert engine.render("{{{db_UUID}}}", {}, True) == "dev-0"

    def test_unresolved_uuid_with_default_env_disabled(self, engine):
        assert engine.render("{{{db_UUID}}}", {}, False) == NO_DEFAULT_ENV_UUID

    def test_unresolved_internal_hostname_is_synthesized(self, engine):
        result = engine.render("{{{db_internalHostname}}}:5432", {}, True, "env-abc123")
        assert result == "db-dev-0.env-dev-0.svc.cluster.local:5432"

    def test_unresolved_internal_hostname_without_default_env(self, engine):
        result = engine.render("{{{db_internalHostname}}}", {}, False, "env-abc123")
        assert result == f"db-{NO_DEFAULT_ENV_UUID}.no-namespace.svc.cluster.local"

    def test_unresolved_public_url(self, engine):
        assert engine.render("https://{{{web_publicUrl}}}", {}) == "https://web-preview.kubemooc.dev"

    def test_defaulted_values_keep_trailing_path(self, engine):
        assert engine.render("https://{{{web_publicUrl}}}/health", {}) == "https://web-preview.kubemooc.dev/health"
        assert engine.render("{{{db_UUID}}}:5432", {}) == "dev-0:5432"

    def test_present_but_empty_values_are_not_defaulted(self, engine):
        """A token that exists without a value renders blank instead of the baseline default."""
        tokens = {"api_internalHostname": None, "api_UUID": None, "buildUUID": "abc123"}

        assert engine.render("{{{api_internalHostname}}}:8080", tokens, True, "env-abc123") == ":8080"
        assert engine.render("id-{{{api_UUID}}}", tokens) == "id-"

    def test_double_braces_are_unescaped(self, engine):
        """Values with structural characters are not HTML-escaped."""
        result = engine.render("{{token}}", {"token": "a&b<c>"})
        assert result == "a&b<c>"

    def test_plain_tokens_rendered_by_mustache(self, engine):
        result = engine.render("pr-{{{pullRequestNumber}}}-{{{buildUUID}}}", {"pullRequestNumber": 42, "buildUUID": "abc123"})
        assert result == "pr-42-abc123"

    def test_render_is_idempotent_for_resolved_text(self, engine):
        tokens = {"backend_internalHostname": "backend-abc123", "buildUUID": "abc123"}
        once = engine.render("{{{backend_internalHostname}}}:8080", tokens, True, "env-abc123")

        assert engine.render(once, tokens, True, "env-abc123") == once


class TestCompileEnv:
    """Tests for TemplateEngine.compile_env."""

    def test_quoted_values_keep_their_paths(self, engine):
        tokens = {"backend_internalHostname": "backend-abc123", "buildUUID": "abc123"}
        env = {"API_URL": "http://{{{backend_internalHostname}}}:8080/api", "PLAIN": "value"}

        result = engine.compile_env(env, tokens, True, "env-abc123")

        assert result == {
            "API_URL": "http://backend-abc123.env-abc123.svc.cluster.local:8080/api",
            "PLAIN": "value",
        }

    def test_hyphenated_service_names(self, engine):
        tokens = {"my______api_publicUrl": "my-api-abc123.preview.kubemooc.dev"}
        env = {"URL": "https://{{{my-api_publicUrl}}}", "NAME": "keep-hyphens"}

        result = engine.compile_env(env, tokens)

        assert result == {"URL": "https://my-api-abc123.preview.kubemooc.dev", "NAME": "keep-hyphens"}

    def test_unresolved_hyphenated_public_url(self, engine):
        result = engine.compile_env({"URL": "{{{my-web_publicUrl}}}"}, {})
        assert result == {"URL": "my-web-preview.kubemooc.dev"}

    def test_empty_env(self, engine):
        assert engine.compile_env(None, {}) == {}
