from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, AppsV1Api

from configmaster.src.kube import create_two_way_merge_patch, submit_merge_patch
from configmaster.src.metrics import METRICS
from configmaster.src.models import WorkloadRef


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Used as the annotation value so Kubernetes sees a template change and
    triggers a rolling update.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _set_annotation(metadata: dict[str, Any], key: str, value: str) -> None:
    annotations = metadata.get("annotations")
    if not isinstance(annotations, dict):
        annotations = {}
        metadata["annotations"] = annotations
    annotations[key] = value


def stamp_annotations(manifest: dict[str, Any], annotation_key: str, timestamp: str) -> None:
    """Set *annotation_key* on the deployment metadata and its pod template metadata."""
    _set_annotation(manifest.setdefault("metadata", {}), annotation_key, timestamp)
    template = manifest.setdefault("spec", {}).setdefault("template", {})
    _set_annotation(template.setdefault("metadata", {}), annotation_key, timestamp)


class PatchApplier:
    """Stamps a timestamp annotation on a deployment to make it roll its pods.

    The patch is the merge-patch diff between the deployment as fetched and
    the same object with the annotation set, so it never touches any other
    field.  Every failure is logged and abandons the occurrence; nothing is
    retried.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        annotation_key: str,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        serialize: Callable[[Any], Any] | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace
        self.annotation_key = annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self.serialize = serialize or apps_api.api_client.sanitize_for_serialization

    def _abandon(self, message: str, *args: Any) -> bool:
        METRICS.patch_errors_total.inc()
        self.logger.exception(message, *args)
        return False

    def apply_patch(self, ref: WorkloadRef) -> bool:
        """Patch the deployment named by *ref*.  Returns True when a patch was submitted."""
        try:
            deployment = self.apps_api.read_namespaced_deployment(
                name=ref.name, namespace=self.namespace
            )
        except ApiException:
            return self._abandon("error retrieving deployment %s", ref.name)

        current_version = getattr(getattr(deployment, "metadata", None), "resource_version", None)
        if ref.observed_version and current_version != ref.observed_version:
            self.logger.debug(
                "deployment %s moved from resourceVersion %s to %s since it was queued",
                ref.name,
                ref.observed_version,
                current_version,
            )

        try:
            baseline = self.serialize(deployment)
            target = copy.deepcopy(baseline)
            stamp_annotations(target, self.annotation_key, self.now_fn())
        except (TypeError, ValueError, AttributeError):
            return self._abandon("error serializing deployment %s", ref.name)

        try:
            body = create_two_way_merge_patch(baseline, target)
        except TypeError:
            return self._abandon("error generating patch for deployment %s", ref.name)

        if not body:
            self.logger.info("deployment %s already carries the current annotation", ref.name)
            return False

        try:
            submit_merge_patch(
                apps_api=self.apps_api,
                namespace=self.namespace,
                deployment_name=ref.name,
                body=body,
            )
        except ApiException:
            return self._abandon("error patching deployment %s", ref.name)

        METRICS.patches_total.inc()
        self.logger.info("patched deployment %s", ref.name)
        return True
