from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from configmaster.src.metrics import METRICS
from configmaster.src.models import ChangeDescriptor, WorkloadRef

K = TypeVar("K")

_STOP = object()


class Debouncer(Generic[K]):
    """Per-key countdowns that coalesce bursts of notifications into one callback.

    Every key has at most one live countdown.  A notification for a key that
    is already counting down pushes its deadline to ``now + delay``; once a
    deadline passes without further notifications the key is removed and
    ``on_settle(key)`` runs exactly once.

    The pending map is owned by a single worker thread.  :meth:`notify` only
    puts the key on a thread-safe inbox, so concurrent producers (the two
    watch threads, settle callbacks of an upstream debouncer) can never both
    observe a key as absent and start two countdowns.  Settle callbacks run on
    their own daemon thread so a slow API call does not hold back the expiry
    of other keys.

    Key internal state:
        ``_pending``
            Maps each key to the ``time.monotonic()`` timestamp at which its
            countdown expires.  Only touched by the worker thread.
    """

    def __init__(
        self,
        name: str,
        delay_seconds: float,
        on_settle: Callable[[K], Any],
        logger: logging.Logger | None = None,
    ) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self.name = name
        self.delay_seconds = float(delay_seconds)
        self.on_settle = on_settle
        self.logger = logger or logging.getLogger(__name__)

        self._pending: dict[K, float] = {}
        self._inbox: queue.Queue[Any] = queue.Queue()
        self._worker: threading.Thread | None = None
        METRICS.pending_timers.labels(stage=self.name).set(0)

    def notify(self, key: K) -> None:
        """Start or reset the countdown for *key*.  Safe to call from any thread."""
        self._inbox.put(key)

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name=f"{self.name}-debouncer", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the worker; countdowns still running are dropped."""
        worker = self._worker
        if worker is None:
            return
        self._inbox.put(_STOP)
        worker.join(timeout=timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            timeout = self._next_wait_seconds(time.monotonic())
            try:
                item = self._inbox.get(timeout=timeout)
            except queue.Empty:
                item = None

            if item is _STOP:
                self._drop_pending()
                return
            if item is not None:
                self._record(item, time.monotonic())

            for key in self._pop_due(time.monotonic()):
                self._dispatch(key)

    def _record(self, key: K, now_monotonic: float) -> bool:
        """Start or reset the countdown for *key*.  Returns True for a new countdown."""
        due_at = now_monotonic + self.delay_seconds
        if key in self._pending:
            self._pending[key] = max(due_at, self._pending[key])
            METRICS.debounce_resets_total.labels(stage=self.name).inc()
            self._log_reset(key)
            return False

        self._pending[key] = due_at
        METRICS.pending_timers.labels(stage=self.name).set(len(self._pending))
        self._log_started(key)
        return True

    def _pop_due(self, now_monotonic: float) -> list[K]:
        """Remove and return every key whose countdown has expired, earliest first."""
        due = sorted(
            (due_at, index, key)
            for index, (key, due_at) in enumerate(self._pending.items())
            if due_at <= now_monotonic
        )
        for _, _, key in due:
            del self._pending[key]
        if due:
            METRICS.pending_timers.labels(stage=self.name).set(len(self._pending))
        return [key for _, _, key in due]

    def _next_wait_seconds(self, now_monotonic: float) -> float | None:
        """Return how long the worker may block on its inbox.

        ``None`` (block until the next notification) when nothing is pending,
        otherwise the time left until the nearest deadline.
        """
        if not self._pending:
            return None
        nearest_due = min(self._pending.values())
        return max(0.0, nearest_due - now_monotonic)

    def _drop_pending(self) -> None:
        if not self._pending:
            return
        self.logger.warning(
            "Dropping %d pending %s countdown(s) on shutdown", len(self._pending), self.name
        )
        METRICS.dropped_timers_total.labels(stage=self.name).inc(len(self._pending))
        self._pending.clear()
        METRICS.pending_timers.labels(stage=self.name).set(0)

    def _dispatch(self, key: K) -> None:
        threading.Thread(
            target=self._fire, args=(key,), name=f"{self.name}-settle", daemon=True
        ).start()

    def _fire(self, key: K) -> None:
        try:
            self.on_settle(key)
        except Exception:
            self.logger.exception("Unhandled error while processing settled %s %s", self.name, key)

    def _log_started(self, key: K) -> None:
        self.logger.info("Started %s countdown for %s", self.name, key)

    def _log_reset(self, key: K) -> None:
        self.logger.info("Reset %s countdown for %s", self.name, key)


class ChangeDebouncer(Debouncer[ChangeDescriptor]):
    """Coalesces modification events per ``(kind, name)`` into settled changes."""

    def __init__(
        self,
        delay_seconds: float,
        on_settled_change: Callable[[ChangeDescriptor], Any],
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__("change", delay_seconds, on_settled_change, logger=logger)

    def on_change(self, desc: ChangeDescriptor) -> None:
        self.notify(desc)

    def _log_started(self, key: ChangeDescriptor) -> None:
        self.logger.info("saw change to %s, starting countdown", key)

    def _log_reset(self, key: ChangeDescriptor) -> None:
        self.logger.info("saw change to %s, resetting delay", key)


def workload_ref(deployment: Any) -> WorkloadRef:
    """Build the update key for a deployment from its name and resource version."""
    metadata = getattr(deployment, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise ValueError("deployment has no metadata.name")
    return WorkloadRef(name=name, observed_version=getattr(metadata, "resource_version", None) or "")


class UpdateDebouncer(Debouncer[WorkloadRef]):
    """Coalesces dependency hits per ``(deployment, resourceVersion)`` into one patch.

    Keys include the resource version seen when the deployment was queued.  If
    another actor changes the deployment before the countdown expires, the
    stale key still fires on its own and a later hit on the new version starts
    a separate countdown.  That window is accepted: re-reading the latest
    version here would merge updates meant for distinct intermediate states.
    """

    def __init__(
        self,
        delay_seconds: float,
        apply_patch: Callable[[WorkloadRef], Any],
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__("update", delay_seconds, apply_patch, logger=logger)

    def queue_update(self, deployment: Any) -> WorkloadRef:
        ref = workload_ref(deployment)
        self.notify(ref)
        return ref

    def _log_started(self, key: WorkloadRef) -> None:
        self.logger.info("queuing update to deployment %s", key.name)

    def _log_reset(self, key: WorkloadRef) -> None:
        self.logger.info("resetting timer on queued update to deployment %s", key.name)
