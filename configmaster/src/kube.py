from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from configmaster.src.config import ConfigError, ControllerConfig

LOGGER = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


def load_kube_configuration(settings: ControllerConfig) -> str:
    """Load Kubernetes client configuration and return the API host in use.

    Uses the pod's service account when running in a cluster, otherwise an
    unauthenticated client pointed at ``CONFIGMASTER_HOST`` (for example a
    ``kubectl proxy`` during development).
    """
    if settings.in_cluster:
        try:
            config.load_incluster_config()
        except ConfigException as exc:
            raise ConfigError(f"Failed to load in-cluster configuration: {exc}") from exc
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return client.Configuration.get_default_copy().host

    if not settings.host:
        raise ConfigError("Must export CONFIGMASTER_HOST when running outside a cluster")

    configuration = client.Configuration()
    configuration.host = settings.host
    client.Configuration.set_default(configuration)
    LOGGER.info("Using explicit Kubernetes API endpoint %s", settings.host)
    return settings.host


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def create_two_way_merge_patch(original: Any, modified: Any) -> dict[str, Any]:
    """Return the JSON merge patch (RFC 7386) turning *original* into *modified*.

    Keys removed in *modified* map to ``None`` (``null`` on the wire), changed
    objects recurse, and every other changed value (lists included) is
    replaced wholesale.  Identical documents yield an empty patch.
    """
    if not isinstance(original, dict) or not isinstance(modified, dict):
        raise TypeError("merge patches can only be computed between two objects")

    patch: dict[str, Any] = {}
    for key in original.keys() - modified.keys():
        patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue
        previous = original[key]
        if isinstance(previous, dict) and isinstance(value, dict):
            nested = create_two_way_merge_patch(previous, value)
            if nested:
                patch[key] = nested
        elif previous != value:
            patch[key] = value
    return patch


def submit_merge_patch(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    body: dict[str, Any],
) -> None:
    """Send a merge patch to a Deployment.

    Changing a pod template annotation is the same mechanism ``kubectl rollout
    restart`` relies on: the Deployment controller rolls new pods.
    """
    apps_api.patch_namespaced_deployment(
        name=deployment_name,
        namespace=namespace,
        body=body,
        _content_type=MERGE_PATCH_CONTENT_TYPE,
    )
