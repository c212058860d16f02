"""Template rendering for service environment variables.

Environment blobs reference values of other services through mustache
placeholders such as ``{{{backend_internalHostname}}}:8080``. Rendering runs
in two passes: a scan that rewrites hostnames and fills defaults for services
that are not part of the current build, then a plain mustache pass for
everything else.
"""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

import chevron

from config import LifecycleDefaults
from models.entities import HYPHEN_REPLACEMENT, NO_DEFAULT_ENV_UUID

logger = logging.getLogger(__name__)

NO_NAMESPACE = "no-namespace"

_PLACEHOLDER = re.compile(r"{{{?([^{}]*?)}}}?")

# token, text up to the first ":" or "/", then the delimited remainder up to the closing quote
_TOKEN = re.compile(r'{{{([^{}]+)}}}([^:/]*?)((?::|/)[^"\\]*(?:\\.[^"\\]*)*)?(?="|$)')


def build_hostname(host: str, namespace: str, suffix: str = "", rest: str = "") -> str:
    """Fully-qualified cluster-local name for a service host."""
    return f"{host}{suffix}.{namespace}.svc.cluster.local{rest}"


def with_hyphen_aliases(tokens: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``tokens`` where every hyphenated key is also available in escaped form."""
    aliased = dict(tokens)
    for key, value in tokens.items():
        if "-" in key:
            aliased[key.replace("-", HYPHEN_REPLACEMENT)] = value
    return aliased


class TemplateEngine:
    """Renders environment templates against a token dictionary."""

    def __init__(
        self,
        defaults: LifecycleDefaults,
        namespace_lookup: Callable[[str], str | None] | None = None,
    ) -> None:
        """Initialize the template engine.

        Args:
            defaults: Cluster-wide defaults for this run
            namespace_lookup: Returns the namespace of a build given its UUID
        """
        self.defaults = defaults
        self.namespace_lookup = namespace_lookup
        self._static_namespaces: dict[str, str] = {}

    def static_namespace(self, default_uuid: str) -> str:
        """Namespace of the shared baseline environment."""
        if default_uuid not in self._static_namespaces:
            namespace = self.namespace_lookup(default_uuid) if self.namespace_lookup else None
            fallback = f"{self.defaults.namespace_prefix}{default_uuid}"
            self._static_namespaces[default_uuid] = namespace or fallback
        return self._static_namespaces[default_uuid]

    def render(
        self,
        template: str,
        tokens: dict[str, Any],
        use_default_uuid: bool = True,
        namespace: str = "",
    ) -> str:
        """Render a template.

        Args:
            template: Template text, usually a JSON-encoded env blob
            tokens: Flat token dictionary
            use_default_uuid: Fall back to the baseline environment for unresolved tokens
            namespace: Namespace of the build being rendered

        Returns:
            The rendered text
        """
        template = _PLACEHOLDER.sub(r"{{{\1}}}", template)
        default_uuid = self.defaults.default_uuid if use_default_uuid else NO_DEFAULT_ENV_UUID

        def baseline_namespace() -> str:
            return self.static_namespace(default_uuid) if use_default_uuid else NO_NAMESPACE

        build_uuid = tokens.get("buildUUID")
        substitutions: list[tuple[int, int, str]] = []
        for match in _TOKEN.finditer(template):
            name = match.group(1)
            suffix = match.group(2) or ""
            rest = match.group(3) or ""
            value = tokens.get(name)

            replacement: str | None = None
            if name in tokens:
                # a present but empty value is left for mustache to render blank
                if value and "_internalHostname" in name:
                    active = bool(build_uuid) and str(build_uuid) in str(value)
                    replacement = build_hostname(
                        str(value),
                        namespace if active else baseline_namespace(),
                        suffix,
                        rest,
                    )
            elif name.endswith("_UUID"):
                replacement = f"{default_uuid}{suffix}{rest}"
            elif "_internalHostname" in name:
                service = name.replace(HYPHEN_REPLACEMENT, "-")
                host = re.sub(r"_internalHostname$", f"-{default_uuid}", service)
                replacement = build_hostname(host, baseline_namespace(), suffix, rest)
            elif "_publicUrl" in name:
                service = name.replace(HYPHEN_REPLACEMENT, "-")
                public_url = re.sub(r"_publicUrl$", f"-{self.defaults.default_public_url}", service)
                logger.debug(f"[BUILD {build_uuid}] publicUrl for {service} defaulted to {public_url}")
                replacement = f"{public_url}{suffix}{rest}"

            if replacement is not None:
                substitutions.append((match.start(), match.end(), replacement))

        for start, end, replacement in reversed(substitutions):
            template = template[:start] + replacement + template[end:]

        return chevron.render(template, tokens)

    def compile_env(
        self,
        env: dict[str, Any] | None,
        tokens: dict[str, Any],
        use_default_uuid: bool = True,
        namespace: str = "",
    ) -> dict[str, Any]:
        """Render every value of an env mapping and parse the result back."""
        serialized = json.dumps(env or {}, ensure_ascii=False).replace("-", HYPHEN_REPLACEMENT)
        rendered = self.render(
            serialized, with_hyphen_aliases(tokens), use_default_uuid, namespace
        )
        return json.loads(rendered.replace(HYPHEN_REPLACEMENT, "-"))
