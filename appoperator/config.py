"""Environment-variable configuration loading.

Every setting is read from an ``APPOP_*`` variable.  Numeric settings are
clamped into their allowed range; malformed values raise ``ValueError``.
"""

from __future__ import annotations

import os

from appoperator.models.config import (
    APIConfig,
    ControllerConfig,
    LogConfig,
    OperatorConfig,
    ResourceConfig,
)

_PREFIX = "APPOP_"
_LOG_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})
_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSY: frozenset[str] = frozenset({"0", "false", "no", "off", ""})


def load_config() -> OperatorConfig:
    """Build an :class:`OperatorConfig` from the current environment."""
    defaults = OperatorConfig()
    resource_defaults = defaults.resource
    controller_defaults = defaults.controller

    level = _env_str("LOG_LEVEL", defaults.log.level).lower()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Invalid log level {level!r}; expected one of {sorted(_LOG_LEVELS)}")

    return OperatorConfig(
        namespace=_env_str("NAMESPACE", defaults.namespace) or defaults.namespace,
        watch_namespace=_env_str("WATCH_NAMESPACE", defaults.watch_namespace),
        resource=ResourceConfig(
            group=_env_str("CRD_GROUP", resource_defaults.group),
            version=_env_str("CRD_VERSION", resource_defaults.version),
            plural=_env_str("CRD_PLURAL", resource_defaults.plural),
        ),
        controller=ControllerConfig(
            enabled=_env_bool("CONTROLLER_ENABLED", controller_defaults.enabled),
            workers=_env_int("CONTROLLER_WORKERS", controller_defaults.workers, 1, 32),
            resync_period_seconds=_env_int(
                "RESYNC_PERIOD_SECONDS", controller_defaults.resync_period_seconds, 10, 3600
            ),
            status_max_attempts=_env_int("STATUS_MAX_ATTEMPTS", controller_defaults.status_max_attempts, 1, 10),
            status_backoff_seconds=_env_float(
                "STATUS_BACKOFF_SECONDS", controller_defaults.status_backoff_seconds, 0.01, 10.0
            ),
        ),
        api=APIConfig(
            enabled=_env_bool("API_ENABLED", defaults.api.enabled),
            port=_env_int("API_PORT", defaults.api.port, 1024, 65535),
        ),
        log=LogConfig(level=level),
    )


def _env_bool(name: str, default: bool) -> bool:
    """Parse a boolean ``APPOP_*`` variable (``1/true/yes/on`` or ``0/false/no/off``)."""
    raw = os.environ.get(_PREFIX + name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"Invalid boolean for {_PREFIX}{name}: {raw!r}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: str) -> str:
    return os.environ.get(_PREFIX + name, default).strip()


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {_PREFIX}{name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))


def _env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.environ.get(_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid number for {_PREFIX}{name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))
