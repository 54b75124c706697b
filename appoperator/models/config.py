"""Configuration data structures populated by :func:`appoperator.config.load_config`."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ResourceConfig:
    """Where the AppDeployment custom resource lives in the API.

    Passed explicitly to the cluster client instead of registering types in a
    process-wide scheme.
    """

    group: str = "platform.deskree.com"
    version: str = "v1"
    plural: str = "appdeployments"

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


@dataclass(frozen=True)
class ControllerConfig:
    enabled: bool = True
    workers: int = 2
    resync_period_seconds: int = 300
    status_max_attempts: int = 5
    status_backoff_seconds: float = 1.0


@dataclass(frozen=True)
class APIConfig:
    enabled: bool = True
    port: int = 8080


@dataclass(frozen=True)
class LogConfig:
    level: str = "info"


@dataclass(frozen=True)
class OperatorConfig:
    # Namespace the front door creates, reads and deletes records in
    namespace: str = "default"
    # Namespace the controller and cache watch; empty means all namespaces
    watch_namespace: str = ""
    resource: ResourceConfig = field(default_factory=ResourceConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
