from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

from configmaster.src.config import ControllerConfig
from configmaster.src.controller import ConfigMaster, build_controller
from configmaster.src.models import ChangeDescriptor, ChangeKind
from configmaster.src.patcher import PatchApplier

ANNOTATION = "configmaster/last.update"


def _make_controller(apps_api: Any, delay_seconds: float) -> ConfigMaster:
    return ConfigMaster(
        core_api=MagicMock(),
        apps_api=apps_api,
        namespace="default",
        delay_seconds=delay_seconds,  # type: ignore[arg-type]
        annotation_key=ANNOTATION,
        patcher=PatchApplier(
            apps_api=apps_api,
            namespace="default",
            annotation_key=ANNOTATION,
            now_fn=lambda: "2026-01-01T00:00:00Z",
        ),
    )


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_settled_change_queues_then_patches_dependent_deployment(
    deployment_factory: Callable[..., Any],
    container_factory: Callable[..., Any],
    apps_api_factory: Callable[..., Any],
) -> None:
    web = deployment_factory("web", [container_factory(config_map_imports=("cfg-a",))])
    other = deployment_factory("other", [container_factory(config_map_imports=("cfg-b",))])
    apps_api = apps_api_factory([web, other])
    controller = _make_controller(apps_api, delay_seconds=0.2)
    controller.updates.start()
    controller.changes.start()
    try:
        started = time.monotonic()
        controller.changes.on_change(ChangeDescriptor(ChangeKind.CONFIG_MAP, "cfg-a"))

        assert _wait_for(lambda: apps_api.list_calls == 1)
        settled = time.monotonic()
        assert apps_api.patches == []

        assert _wait_for(lambda: len(apps_api.patches) == 1)
        patched = time.monotonic()
    finally:
        controller.changes.stop()
        controller.updates.stop()

    assert settled - started >= 0.15
    assert patched - settled >= 0.15
    assert [name for name, _, _ in apps_api.patches] == ["web"]


def test_deployment_hit_by_two_bundles_is_patched_once(
    deployment_factory: Callable[..., Any],
    container_factory: Callable[..., Any],
    apps_api_factory: Callable[..., Any],
) -> None:
    web = deployment_factory(
        "web",
        [container_factory(config_map_imports=("cfg-a",), secret_keys=("db-creds",))],
    )
    apps_api = apps_api_factory([web])
    controller = _make_controller(apps_api, delay_seconds=0.3)
    controller.updates.start()
    controller.changes.start()
    try:
        controller.changes.on_change(ChangeDescriptor(ChangeKind.CONFIG_MAP, "cfg-a"))
        time.sleep(0.1)
        controller.changes.on_change(ChangeDescriptor(ChangeKind.SECRET, "db-creds"))

        assert _wait_for(lambda: len(apps_api.patches) >= 1)
        time.sleep(0.6)
    finally:
        controller.changes.stop()
        controller.updates.stop()

    assert apps_api.list_calls == 2
    assert [name for name, _, _ in apps_api.patches] == ["web"]


def test_missing_deployment_does_not_stop_later_updates(
    deployment_factory: Callable[..., Any],
    container_factory: Callable[..., Any],
    apps_api_factory: Callable[..., Any],
) -> None:
    web = deployment_factory("web", [container_factory(config_map_imports=("cfg-a",))])
    apps_api = apps_api_factory([web])
    controller = _make_controller(apps_api, delay_seconds=0.05)
    controller.updates.start()
    controller.changes.start()
    try:
        controller.updates.queue_update(deployment_factory("deleted-meanwhile"))
        time.sleep(0.2)

        controller.changes.on_change(ChangeDescriptor(ChangeKind.CONFIG_MAP, "cfg-a"))
        assert _wait_for(lambda: len(apps_api.patches) == 1)
    finally:
        controller.changes.stop()
        controller.updates.stop()

    assert [name for name, _, _ in apps_api.patches] == ["web"]


def test_run_forever_stops_on_watch_failure(apps_api_factory: Callable[..., Any]) -> None:
    controller = _make_controller(apps_api_factory([]), delay_seconds=5)
    controller.watches = MagicMock()
    controller.watches.failure = "ConfigMap watch ended"
    controller.watches.start.side_effect = controller.request_stop

    controller.run_forever(shutdown_event=threading.Event())

    controller.watches.request_stop.assert_called_once()
    controller.watches.join.assert_called_once()
    assert controller.failure == "ConfigMap watch ended"
    assert controller.changes._worker is None
    assert controller.updates._worker is None


def test_run_forever_returns_on_shutdown_event(apps_api_factory: Callable[..., Any]) -> None:
    controller = _make_controller(apps_api_factory([]), delay_seconds=5)
    controller.watches = MagicMock()
    controller.watches.failure = None
    shutdown_event = threading.Event()
    controller.watches.start.side_effect = shutdown_event.set

    controller.run_forever(shutdown_event=shutdown_event)

    controller.watches.request_stop.assert_called_once()
    assert controller.failure is None


def test_watch_failure_wires_to_request_stop(apps_api_factory: Callable[..., Any]) -> None:
    controller = _make_controller(apps_api_factory([]), delay_seconds=5)

    controller.watches._fail(ChangeKind.SECRET, "failed")

    assert controller._stop.is_set()
    assert controller.failure == "Secret watch failed"


def test_build_controller_uses_settings() -> None:
    settings = ControllerConfig(
        namespace="payments",
        delay_seconds=9,
        in_cluster=True,
        host=None,
        annotation_key="example.com/reloaded-at",
    )
    apps_api = MagicMock()

    controller = build_controller(settings, core_api=MagicMock(), apps_api=apps_api)

    assert controller.namespace == "payments"
    assert controller.changes.delay_seconds == 9.0
    assert controller.updates.delay_seconds == 9.0
    assert controller.patcher.annotation_key == "example.com/reloaded-at"
    assert controller.resolver.namespace == "payments"
    assert controller.watches.namespace == "payments"
