from __future__ import annotations

from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import (
    ApiClient,
    ApiException,
    V1ConfigMapEnvSource,
    V1ConfigMapKeySelector,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvFromSource,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1SecretEnvSource,
    V1SecretKeySelector,
)


def make_container(
    name: str = "app",
    config_map_imports: tuple[str, ...] = (),
    secret_imports: tuple[str, ...] = (),
    config_map_keys: tuple[str, ...] = (),
    secret_keys: tuple[str, ...] = (),
) -> V1Container:
    env_from = [
        V1EnvFromSource(config_map_ref=V1ConfigMapEnvSource(name=bundle))
        for bundle in config_map_imports
    ] + [V1EnvFromSource(secret_ref=V1SecretEnvSource(name=bundle)) for bundle in secret_imports]
    env = [V1EnvVar(name="PLAIN", value="literal")]
    env += [
        V1EnvVar(
            name=f"CM_{index}",
            value_from=V1EnvVarSource(
                config_map_key_ref=V1ConfigMapKeySelector(name=bundle, key="value")
            ),
        )
        for index, bundle in enumerate(config_map_keys)
    ]
    env += [
        V1EnvVar(
            name=f"SECRET_{index}",
            value_from=V1EnvVarSource(
                secret_key_ref=V1SecretKeySelector(name=bundle, key="value")
            ),
        )
        for index, bundle in enumerate(secret_keys)
    ]
    return V1Container(name=name, image="nginx:1.27", env_from=env_from or None, env=env)


def make_deployment(
    name: str,
    containers: list[V1Container] | None = None,
    resource_version: str = "100",
    annotations: dict[str, str] | None = None,
    template_annotations: dict[str, str] | None = None,
) -> V1Deployment:
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=name,
            namespace="default",
            resource_version=resource_version,
            annotations=annotations,
        ),
        spec=V1DeploymentSpec(
            replicas=2,
            selector=V1LabelSelector(match_labels={"app": name}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={"app": name}, annotations=template_annotations),
                spec=V1PodSpec(containers=containers or [make_container()]),
            ),
        ),
    )


class FakeAppsApi:
    """In-memory stand-in for ``AppsV1Api`` holding a fixed set of deployments."""

    def __init__(
        self,
        deployments: list[V1Deployment] | None = None,
        list_error: ApiException | None = None,
        read_errors: dict[str, ApiException] | None = None,
        patch_errors: dict[str, ApiException] | None = None,
    ) -> None:
        self.deployments = {d.metadata.name: d for d in deployments or []}
        self.list_error = list_error
        self.read_errors = read_errors or {}
        self.patch_errors = patch_errors or {}
        self.api_client = ApiClient()
        self.list_calls = 0
        self.patches: list[tuple[str, dict[str, Any], str | None]] = []

    def list_namespaced_deployment(self, namespace: str) -> SimpleNamespace:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return SimpleNamespace(items=list(self.deployments.values()))

    def read_namespaced_deployment(self, name: str, namespace: str) -> V1Deployment:
        if name in self.read_errors:
            raise self.read_errors[name]
        if name not in self.deployments:
            raise ApiException(status=404, reason="Not Found")
        return self.deployments[name]

    def patch_namespaced_deployment(
        self,
        name: str,
        namespace: str,
        body: dict[str, Any],
        _content_type: str | None = None,
    ) -> None:
        if name in self.patch_errors:
            raise self.patch_errors[name]
        self.patches.append((name, body, _content_type))


@pytest.fixture
def container_factory() -> Callable[..., V1Container]:
    return make_container


@pytest.fixture
def deployment_factory() -> Callable[..., V1Deployment]:
    return make_deployment


@pytest.fixture
def apps_api_factory() -> Callable[..., FakeAppsApi]:
    return FakeAppsApi
