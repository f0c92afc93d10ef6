from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import CoreV1Api

from configmaster.src.metrics import METRICS
from configmaster.src.models import ChangeDescriptor, ChangeKind


def change_from_event(kind: ChangeKind, event: dict[str, Any]) -> ChangeDescriptor | None:
    """Turn a watch event into a change descriptor.

    Only ``MODIFIED`` events count; ADDED, DELETED, BOOKMARK and ERROR events
    and objects without a name yield ``None``.
    """
    if str(event.get("type", "")) != "MODIFIED":
        return None
    obj = event.get("object")
    name = getattr(getattr(obj, "metadata", None), "name", None)
    if not name:
        return None
    return ChangeDescriptor(kind=kind, name=name)


class WatchMultiplexer:
    """Runs one watch thread per bundle kind and forwards modifications downstream.

    Each feed lists its collection first, which fails fast on connection or
    RBAC problems and yields the ``resourceVersion`` the watch starts from, so
    existing objects are not replayed.  A feed ending for any reason other
    than :meth:`request_stop` is fatal: the failure is recorded in
    ``failure`` and ``on_failure`` is invoked so the process can exit and be
    restarted by its supervisor.  There is no resubscription.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        on_change: Callable[[ChangeDescriptor], Any],
        on_failure: Callable[[], Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.on_change = on_change
        self.on_failure = on_failure
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self.failure: str | None = None
        self._stopping = threading.Event()
        self._listed: set[ChangeKind] = set()
        self._lock = threading.Lock()
        self._watchers: dict[ChangeKind, watch.Watch] = {}
        self._threads: list[threading.Thread] = []

    def _list_function(self, kind: ChangeKind) -> Callable[..., Any]:
        if kind is ChangeKind.CONFIG_MAP:
            return self.core_api.list_namespaced_config_map
        return self.core_api.list_namespaced_secret

    def start(self) -> None:
        self._stopping.clear()
        for kind in ChangeKind:
            thread = threading.Thread(
                target=self._run_feed, args=(kind,), name=f"watch-{kind.value}", daemon=True
            )
            self._threads.append(thread)
            thread.start()

    def request_stop(self) -> None:
        """Interrupt both watch streams."""
        self._stopping.set()
        with self._lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)

    def _mark_listed(self, kind: ChangeKind) -> None:
        with self._lock:
            self._listed.add(kind)
            if len(self._listed) == len(ChangeKind):
                self.ready.set()

    def _fail(self, kind: ChangeKind, reason: str) -> None:
        METRICS.watch_failures_total.labels(kind=kind.value).inc()
        self.ready.clear()
        with self._lock:
            if self.failure is None:
                self.failure = f"{kind.value} watch {reason}"
        if self.on_failure is not None:
            self.on_failure()

    def _run_feed(self, kind: ChangeKind) -> None:
        list_fn = self._list_function(kind)
        watcher = watch.Watch()
        with self._lock:
            self._watchers[kind] = watcher
        try:
            initial = list_fn(namespace=self.namespace)
            resource_version = getattr(
                getattr(initial, "metadata", None), "resource_version", None
            )
            self._mark_listed(kind)
            self.logger.info(
                "Watching %ss in namespace %s from resourceVersion %s",
                kind.value,
                self.namespace,
                resource_version,
            )

            for event in watcher.stream(
                list_fn, namespace=self.namespace, resource_version=resource_version
            ):
                if self._stopping.is_set():
                    break
                desc = change_from_event(kind, event)
                if desc is None:
                    self.logger.debug(
                        "Ignoring %s event for %s", event.get("type"), kind.value
                    )
                    continue
                METRICS.change_events_total.labels(kind=kind.value).inc()
                self.on_change(desc)
        except Exception:
            if self._stopping.is_set():
                return
            self.logger.exception(
                "%s watch in namespace %s failed; terminating", kind.value, self.namespace
            )
            self._fail(kind, "failed")
            return
        finally:
            watcher.stop()
            with self._lock:
                self._watchers.pop(kind, None)

        if not self._stopping.is_set():
            self.logger.error(
                "%s watch in namespace %s ended unexpectedly; terminating",
                kind.value,
                self.namespace,
            )
            self._fail(kind, "ended")
