from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_NAMESPACE = "default"
DEFAULT_DELAY_SECONDS = 5
DEFAULT_ANNOTATION_KEY = "configmaster/last.update"
DEFAULT_HEALTH_PORT = 8080


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        namespace:      Namespace whose ConfigMaps, Secrets and Deployments are watched.
        delay_seconds:  Debounce window applied to both bundle changes and deployment updates.
        in_cluster:     True when the service-account configuration of the pod is used.
        host:           Explicit API endpoint used outside a cluster (``CONFIGMASTER_HOST``).
        annotation_key: Annotation stamped on the deployment and its pod template.
        health_port:    Port serving ``/healthz``, ``/readyz`` and ``/metrics``.
    """

    namespace: str
    delay_seconds: int
    in_cluster: bool
    host: str | None
    annotation_key: str = DEFAULT_ANNOTATION_KEY
    health_port: int = DEFAULT_HEALTH_PORT


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Connection target resolution:
    1. In-cluster configuration when both ``KUBERNETES_SERVICE_HOST`` and
       ``KUBERNETES_SERVICE_PORT`` are set (i.e. running in a pod).
    2. ``CONFIGMASTER_HOST`` for development against an explicit endpoint.
    3. Raises :class:`ConfigError`, the controller cannot run without a cluster.
    """
    values = env if env is not None else os.environ

    namespace = values.get("CONFIGMASTER_NAMESPACE") or DEFAULT_NAMESPACE
    if not namespace.strip():
        raise ConfigError("CONFIGMASTER_NAMESPACE must be a non-empty string")

    delay_seconds = env_int(values, "CONFIGMASTER_DELAY", DEFAULT_DELAY_SECONDS, minimum=0)

    in_cluster = bool(values.get("KUBERNETES_SERVICE_HOST")) and bool(
        values.get("KUBERNETES_SERVICE_PORT")
    )
    host = values.get("CONFIGMASTER_HOST") or None
    if not in_cluster and host is None:
        raise ConfigError("Must export CONFIGMASTER_HOST when running outside a cluster")

    annotation_key = values.get("CONFIGMASTER_ANNOTATION_KEY") or DEFAULT_ANNOTATION_KEY

    return ControllerConfig(
        namespace=namespace.strip(),
        delay_seconds=delay_seconds,
        in_cluster=in_cluster,
        host=None if in_cluster else host,
        annotation_key=annotation_key,
        health_port=env_int(values, "HEALTH_PORT", DEFAULT_HEALTH_PORT, minimum=1, maximum=65535),
    )
