from __future__ import annotations

import logging
import threading

from kubernetes.client import AppsV1Api, CoreV1Api

from configmaster.src.config import ControllerConfig
from configmaster.src.debounce import ChangeDebouncer, UpdateDebouncer
from configmaster.src.patcher import PatchApplier
from configmaster.src.resolver import DependencyResolver
from configmaster.src.watch import WatchMultiplexer


class ConfigMaster:
    """Rolls deployments whose ConfigMaps or Secrets were modified.

    Data flows one way through the pipeline::

        watch events -> ChangeDebouncer -> DependencyResolver
                     -> UpdateDebouncer -> PatchApplier

    Both debouncers share the same delay.  A burst of edits to one bundle
    settles once, and a deployment hit by several settled bundles within one
    delay window is patched once.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        namespace: str,
        delay_seconds: int,
        annotation_key: str,
        logger: logging.Logger | None = None,
        patcher: PatchApplier | None = None,
    ) -> None:
        self.namespace = namespace
        self.delay_seconds = delay_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.patcher = patcher or PatchApplier(
            apps_api=apps_api,
            namespace=namespace,
            annotation_key=annotation_key,
        )
        self.updates = UpdateDebouncer(delay_seconds, self.patcher.apply_patch)
        self.resolver = DependencyResolver(
            apps_api=apps_api,
            namespace=namespace,
            queue_update=self.updates.queue_update,
        )
        self.changes = ChangeDebouncer(delay_seconds, self.resolver.on_settled_change)
        self.watches = WatchMultiplexer(
            core_api=core_api,
            namespace=namespace,
            on_change=self.changes.on_change,
            on_failure=self.request_stop,
        )
        self._stop = threading.Event()

    @property
    def ready(self) -> threading.Event:
        return self.watches.ready

    @property
    def failure(self) -> str | None:
        return self.watches.failure

    def request_stop(self) -> None:
        self._stop.set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the pipeline and block until shutdown or a watch failure.

        Debouncers start before the watches so no event is lost.  On exit the
        watches are interrupted first, then the debouncers stop and drop any
        countdowns still running.
        """
        stop = shutdown_event or threading.Event()
        self._stop.clear()

        self.updates.start()
        self.changes.start()
        self.watches.start()
        try:
            while not stop.is_set() and not self._stop.is_set():
                stop.wait(timeout=1.0)
        finally:
            self.watches.request_stop()
            self.watches.join(timeout=5.0)
            self.changes.stop()
            self.updates.stop()

        if self.failure is not None:
            self.logger.error("Controller stopped after fatal watch error: %s", self.failure)


def build_controller(
    settings: ControllerConfig, core_api: CoreV1Api, apps_api: AppsV1Api
) -> ConfigMaster:
    """Construct a :class:`ConfigMaster` from loaded configuration."""
    return ConfigMaster(
        core_api=core_api,
        apps_api=apps_api,
        namespace=settings.namespace,
        delay_seconds=settings.delay_seconds,
        annotation_key=settings.annotation_key,
    )
