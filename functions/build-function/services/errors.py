"""Exceptions raised by the build services."""


class LifecycleError(Exception):
    """Base class for orchestration failures."""


class ConfigurationError(LifecycleError, ValueError):
    """Required configuration such as the registry domain is missing."""


class UpstreamLookupError(LifecycleError, LookupError):
    """A source-control or registry lookup returned nothing usable."""


class DependencyTimeoutError(LifecycleError, TimeoutError):
    """A sibling deploy never reached the awaited milestone."""


class MissingBuildError(LifecycleError):
    """Token resolution was attempted without a build."""
