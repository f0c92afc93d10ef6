from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Any

from kubernetes.client import ApiException, AppsV1Api

from configmaster.src.metrics import METRICS
from configmaster.src.models import ChangeDescriptor, ChangeKind


def _containers(deployment: Any) -> list[Any]:
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)
    return getattr(pod_spec, "containers", None) or []


def _referenced_bundles(container: Any) -> Iterator[tuple[ChangeKind, str | None]]:
    """Yield ``(kind, name)`` for each bundle a container's environment reads.

    Whole-bundle ``envFrom`` imports come first, then single-key
    ``env[].valueFrom`` references, in declaration order.
    """
    for source in getattr(container, "env_from", None) or []:
        config_map_ref = getattr(source, "config_map_ref", None)
        if config_map_ref is not None:
            yield ChangeKind.CONFIG_MAP, getattr(config_map_ref, "name", None)
        secret_ref = getattr(source, "secret_ref", None)
        if secret_ref is not None:
            yield ChangeKind.SECRET, getattr(secret_ref, "name", None)

    for var in getattr(container, "env", None) or []:
        value_from = getattr(var, "value_from", None)
        if value_from is None:
            continue
        config_map_key_ref = getattr(value_from, "config_map_key_ref", None)
        if config_map_key_ref is not None:
            yield ChangeKind.CONFIG_MAP, getattr(config_map_key_ref, "name", None)
        secret_key_ref = getattr(value_from, "secret_key_ref", None)
        if secret_key_ref is not None:
            yield ChangeKind.SECRET, getattr(secret_key_ref, "name", None)


def references_change(deployment: Any, desc: ChangeDescriptor) -> bool:
    """Return True if any container of *deployment* reads the changed bundle.

    Kind and name must both match exactly.  Scanning stops at the first hit.
    """
    for container in _containers(deployment):
        for kind, name in _referenced_bundles(container):
            if kind is desc.kind and name == desc.name:
                return True
    return False


class DependencyResolver:
    """Finds the deployments that consume a settled bundle change and queues them.

    Every deployment in the namespace is checked; a deployment is queued at
    most once per settled change no matter how many of its containers or
    variables reference the bundle.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        queue_update: Callable[[Any], Any],
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace
        self.queue_update = queue_update
        self.logger = logger or logging.getLogger(__name__)

    def on_settled_change(self, desc: ChangeDescriptor) -> list[str]:
        """Queue an update for every deployment depending on *desc*; return their names.

        A failed listing abandons this occurrence; the next change to any
        bundle triggers a fresh scan.
        """
        METRICS.settled_changes_total.labels(kind=desc.kind.value).inc()
        try:
            deployments = self.apps_api.list_namespaced_deployment(namespace=self.namespace)
        except ApiException:
            METRICS.list_errors_total.inc()
            self.logger.exception(
                "Failed to list deployments in namespace %s after change to %s",
                self.namespace,
                desc,
            )
            return []

        queued: list[str] = []
        for deployment in getattr(deployments, "items", None) or []:
            if not references_change(deployment, desc):
                continue
            self.queue_update(deployment)
            METRICS.deployments_queued_total.inc()
            queued.append(deployment.metadata.name)

        if not queued:
            self.logger.debug("No deployments in namespace %s depend on %s", self.namespace, desc)
        return queued
