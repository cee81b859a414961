"""Watch-driven controller loop around ``ReconcileScheduler``."""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from prometheus_client import CollectorRegistry, start_http_server
from urllib3.exceptions import HTTPError

from .config import Config
from .metrics import MetricSet
from .scheduler import ReconcileScheduler
from .store import (
    SCALE_LOAD_CONFIG,
    ObjectKind,
    ObjectStore,
    StoreError,
    build_object_store,
    load_api_client,
)
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

WatchSource = Callable[[ObjectKind, Optional[int]], Iterable[Tuple[str, Dict[str, Any]]]]

WATCH_RETRY_SECONDS = 5.0
WORKER_POLL_SECONDS = 1.0
ONCE_MAX_PASSES = 3


def _object_name(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


class Controller:
    """Feed ``ScaleLoadConfig`` names from watch events and resyncs to workers."""

    def __init__(
        self,
        store: ObjectStore,
        scheduler: ReconcileScheduler,
        config: Config,
        watch_source: Optional[WatchSource] = None,
        queue: Optional[WorkQueue] = None,
        metrics: Optional[MetricSet] = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.config = config
        self.watch_source = watch_source
        self.queue = queue or WorkQueue()
        self.metrics = metrics
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Queue feeding
    # ------------------------------------------------------------------
    def list_names(self) -> List[str]:
        return [name for name in map(_object_name, self.store.list(SCALE_LOAD_CONFIG)) if name]

    def enqueue_all(self) -> List[str]:
        names = self.list_names()
        for name in names:
            self.queue.add(name)
        logger.debug("Enqueued %s ScaleLoadConfig objects", len(names))
        return names

    def handle_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        name = _object_name(obj)
        if not name:
            return
        if event_type in ("ADDED", "MODIFIED", "DELETED"):
            logger.debug("%s event for %s", event_type, name)
            self.queue.add(name)

    # ------------------------------------------------------------------
    # Work processing
    # ------------------------------------------------------------------
    def _record_error(self, name: str, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.errors_total.labels(config=name, type=kind).inc()

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one queued name; ``False`` when nothing was ready."""

        name = self.queue.get(timeout)
        if name is None:
            return False
        try:
            result = self.scheduler.reconcile(name)
        except StoreError as exc:
            self._record_error(name, "store")
            logger.error(
                "Reconcile of %s failed: %s; retrying in %ss",
                name,
                exc,
                self.config.error_requeue_seconds,
            )
            self.queue.add_after(name, self.config.error_requeue_seconds)
        except Exception:
            self._record_error(name, "unexpected")
            logger.exception("Unexpected error reconciling %s", name)
            self.queue.add_after(name, self.config.error_requeue_seconds)
        else:
            if result.requeue_after is not None:
                self.queue.add_after(name, result.requeue_after)
        finally:
            self.queue.done(name)
        return True

    def run_once(self) -> int:
        """Reconcile every existing object once; returns the number of failures."""

        failures = 0
        for name in self.list_names():
            for _ in range(ONCE_MAX_PASSES):
                try:
                    result = self.scheduler.reconcile(name)
                except StoreError as exc:
                    failures += 1
                    self._record_error(name, "store")
                    logger.error("Reconcile of %s failed: %s", name, exc)
                    break
                except Exception:
                    failures += 1
                    self._record_error(name, "unexpected")
                    logger.exception("Unexpected error reconciling %s", name)
                    break
                # A zero delay only follows bookkeeping such as adding the finalizer.
                if result.requeue_after != 0:
                    break
        return failures

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------
    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=WORKER_POLL_SECONDS)

    def _watch_loop(self) -> None:
        source = self.watch_source
        if source is None:
            return
        while not self._stop.is_set():
            try:
                for event_type, obj in source(SCALE_LOAD_CONFIG, self.config.watch_timeout_seconds):
                    if self._stop.is_set():
                        return
                    self.handle_event(event_type, obj)
            except (StoreError, HTTPError) as exc:
                logger.warning("Watch on ScaleLoadConfig ended: %s", exc)
                self._stop.wait(WATCH_RETRY_SECONDS)
                continue
            logger.debug("Watch on ScaleLoadConfig timed out, restarting")

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.config.resync_seconds):
            try:
                self.enqueue_all()
            except StoreError as exc:
                logger.warning("Resync of ScaleLoadConfig objects failed: %s", exc)

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        self.enqueue_all()
        for index in range(max(self.config.workers, 1)):
            self._spawn(f"worker-{index}", self._worker_loop)
        if self.watch_source is not None:
            self._spawn("watch", self._watch_loop)
        self._spawn("resync", self._resync_loop)
        logger.info(
            "Controller started with %s workers (resync every %ss)",
            max(self.config.workers, 1),
            self.config.resync_seconds,
        )

    def run(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()


def build_controller(config: Config, registry: Optional[CollectorRegistry] = None) -> Controller:
    """Wire the Kubernetes store, metrics and scheduler into a controller."""

    metrics = MetricSet(registry)
    store = build_object_store(load_api_client(config))
    scheduler = ReconcileScheduler(store, metrics=metrics, rng=random.Random(config.random_seed))
    return Controller(store, scheduler, config, watch_source=store.watch, metrics=metrics)


def run_from_config(config: Config, once: bool = False) -> int:
    """Run the controller; returns a process exit code."""

    registry = CollectorRegistry()
    controller = build_controller(config, registry)
    if once:
        failures = controller.run_once()
        logger.info("Single pass finished with %s failures", failures)
        return 1 if failures else 0
    logger.info(
        "Starting kwok load generator (metrics on %s:%s)",
        config.metrics_host,
        config.metrics_port,
    )
    start_http_server(config.metrics_port, addr=config.metrics_host, registry=registry)
    controller.run()
    return 0


__all__ = ["Controller", "WatchSource", "build_controller", "run_from_config"]
