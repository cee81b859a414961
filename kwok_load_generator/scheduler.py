"""One reconciliation tick per ``ScaleLoadConfig`` name.

A tick walks Fetching, FinalizerCheck and then exactly one of Deleting,
Disabled or Active. In the active state the steps always run in the same
order: observe nodes, plan targets, pass the rate budget, clean up orphans,
converge namespaces, converge objects per namespace, churn node annotations,
publish status. Any store error that escapes a step aborts the tick and is
raised to the caller, which requeues the name.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .annotations import AnnotationChurnSimulator
from .budget import RateBudget, effective_rate
from .entities import (
    CLEANUP_FINALIZER,
    RESOURCE_KINDS,
    OperationStats,
    RuntimeState,
    ScaleLoadConfig,
    utcnow,
)
from .metrics import MetricSet
from .namespaces import NamespaceLifecycle, is_ready, namespace_name
from .planner import reconcile_interval, target_namespaces
from .resources import ResourceChurnEngine
from .status import StatusPublisher, TickSummary
from .store import NODE, SCALE_LOAD_CONFIG, NotFoundError, ObjectStore, TrackingStore
from .synthetic import SyntheticContent

logger = logging.getLogger(__name__)

CALLS_PER_NAMESPACE = 5
BUDGET_DENIED_REQUEUE_SECONDS = 60.0
CLEANUP_DELAY_REQUEUE_SECONDS = 10.0
FIRST_TICK_MINUTES = 1.0


@dataclass(slots=True)
class ReconcileResult:
    """When to run the next tick; ``None`` means wait for a watch event."""

    requeue_after: Optional[float] = None


@dataclass(slots=True)
class _Tick:
    store: TrackingStore
    stats: OperationStats
    lifecycle: NamespaceLifecycle
    resources: ResourceChurnEngine
    annotations: AnnotationChurnSimulator
    status: StatusPublisher


class ReconcileScheduler:
    """Drive every ``ScaleLoadConfig`` toward its declared load."""

    def __init__(
        self,
        store: ObjectStore,
        metrics: Optional[MetricSet] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.random = rng or random.Random()
        self.content = SyntheticContent(self.random)
        self.clock = clock
        self.sleep = sleep
        self._states: Dict[str, RuntimeState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    # ------------------------------------------------------------------
    # Per-name bookkeeping
    # ------------------------------------------------------------------
    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def state_for(self, name: str) -> RuntimeState:
        with self._guard:
            state = self._states.get(name)
            if state is None:
                state = RuntimeState(budget=RateBudget(clock=self.clock))
                self._states[name] = state
            return state

    def drop_state(self, name: str) -> None:
        """Forget the runtime state, tick lock and metric series of ``name``."""

        with self._guard:
            self._states.pop(name, None)
            self._locks.pop(name, None)
        if self.metrics is not None:
            self.metrics.forget(name)

    def existing_state(self, name: str) -> Optional[RuntimeState]:
        with self._guard:
            return self._states.get(name)

    def _begin_tick(self, name: str) -> _Tick:
        stats = OperationStats()
        observe = None
        if self.metrics is not None:
            metrics = self.metrics

            def observe(verb: str, seconds: float) -> None:
                metrics.observe_api_call(name, verb, seconds)

        store = TrackingStore(self.store, stats, observe)
        return _Tick(
            store=store,
            stats=stats,
            lifecycle=NamespaceLifecycle(store, self.content, self.clock),
            resources=ResourceChurnEngine(store, self.content, self.clock),
            annotations=AnnotationChurnSimulator(store, self.content, self.clock, self.sleep),
            status=StatusPublisher(store, self.metrics, self.clock),
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def reconcile(self, name: str) -> ReconcileResult:
        """Run one tick for ``name``; ticks for the same name never overlap."""

        with self._lock_for(name):
            start = time.perf_counter()
            try:
                return self._reconcile(name, start)
            finally:
                if self.metrics is not None:
                    self.metrics.reconcile_duration_seconds.labels(config=name).observe(
                        time.perf_counter() - start
                    )

    def _reconcile(self, name: str, start: float) -> ReconcileResult:
        tick = self._begin_tick(name)
        try:
            obj = tick.store.get(SCALE_LOAD_CONFIG, name)
        except NotFoundError:
            return self._handle_missing(name, tick)

        config = ScaleLoadConfig.from_object(obj)
        if config.is_deleting:
            if not config.has_finalizer(CLEANUP_FINALIZER):
                logger.debug("%s is being deleted without our finalizer", name)
                return ReconcileResult()
            return self._handle_deletion(config, obj, tick)

        if not config.has_finalizer(CLEANUP_FINALIZER):
            metadata = obj.setdefault("metadata", {})
            metadata["finalizers"] = list(config.finalizers) + [CLEANUP_FINALIZER]
            tick.store.update(obj)
            logger.info("Added cleanup finalizer to %s", name)
            return ReconcileResult(requeue_after=0.0)

        if not config.spec.enabled:
            return self._handle_disabled(config, tick)
        return self._handle_active(config, tick, start)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    def _handle_missing(self, name: str, tick: _Tick) -> ReconcileResult:
        state = self.existing_state(name)
        removed = tick.lifecycle.cleanup_all(name, state)
        self.drop_state(name)
        if removed:
            logger.info("%s no longer exists; removed %s managed namespaces", name, removed)
        return ReconcileResult()

    def _handle_deletion(self, config: ScaleLoadConfig, obj: Dict[str, Any], tick: _Tick) -> ReconcileResult:
        cleanup = config.spec.cleanup
        if cleanup.enabled:
            tick.lifecycle.cleanup_all(config.name, self.existing_state(config.name))
            if cleanup.cleanup_delay_seconds > 0 and config.deletion_timestamp is not None:
                elapsed = (self.clock() - config.deletion_timestamp).total_seconds()
                if elapsed < cleanup.cleanup_delay_seconds:
                    logger.info(
                        "Waiting for cleanup delay of %s (%.0fs remaining)",
                        config.name,
                        cleanup.cleanup_delay_seconds - elapsed,
                    )
                    return ReconcileResult(requeue_after=CLEANUP_DELAY_REQUEUE_SECONDS)

        metadata = obj.setdefault("metadata", {})
        metadata["finalizers"] = [item for item in config.finalizers if item != CLEANUP_FINALIZER]
        tick.store.update(obj)
        self.drop_state(config.name)
        logger.info("Deletion of %s completed", config.name)
        return ReconcileResult()

    def _handle_disabled(self, config: ScaleLoadConfig, tick: _Tick) -> ReconcileResult:
        state = self.state_for(config.name)
        summary = TickSummary(
            enabled=False,
            stats=tick.stats,
            average_reconcile_ms=state.average_reconcile_ms,
        )
        tick.status.publish(config.name, summary)
        logger.info("Load generation is disabled for %s", config.name)
        return ReconcileResult()

    def _handle_active(self, config: ScaleLoadConfig, tick: _Tick, start: float) -> ReconcileResult:
        name = config.name
        spec = config.spec
        state = self.state_for(name)
        now = self.clock()

        nodes = tick.store.list(NODE, label_selector=spec.node_selector)
        node_count = len(nodes)
        target = target_namespaces(node_count, spec.load_profile)
        rate, rate_type = effective_rate(spec.load_profile, node_count)
        estimated = CALLS_PER_NAMESPACE * target
        if not state.budget.admit(estimated, rate):
            logger.info(
                "Rate budget exhausted for %s (%s calls needed, %s/min %s); retrying in %ss",
                name,
                estimated,
                rate,
                rate_type,
                BUDGET_DENIED_REQUEUE_SECONDS,
            )
            return ReconcileResult(requeue_after=BUDGET_DENIED_REQUEUE_SECONDS)

        if state.last_reconcile is None:
            minutes = FIRST_TICK_MINUTES
        else:
            minutes = max((now - state.last_reconcile).total_seconds() / 60.0, 0.0)

        node_names = [namespace_name(node) for node in nodes]
        if spec.cleanup.enabled and spec.cleanup.orphan_cleanup:
            managed = tick.lifecycle.list_managed(name)
            tick.lifecycle.cleanup_orphans(config, managed, node_names, state)

        namespaces = tick.lifecycle.converge(config, nodes, target, state)

        counts = {kind: 0 for kind in RESOURCE_KINDS}
        for namespace in namespaces.namespaces:
            if not is_ready(namespace):
                logger.debug("Namespace %s is not ready, skipping", namespace_name(namespace))
                continue
            for kind, count in tick.resources.manage_namespace(config, namespace, state, minutes / 60.0).items():
                counts[kind] = counts.get(kind, 0) + count

        if spec.annotation_churn.enabled and nodes:
            tick.annotations.run(spec.annotation_churn, nodes)

        state.last_reconcile = now
        state.record_reconcile(time.perf_counter() - start)
        summary = TickSummary(
            enabled=True,
            node_count=node_count,
            namespace_count=namespaces.count,
            resource_counts=counts,
            stats=tick.stats,
            minutes_elapsed=minutes or FIRST_TICK_MINUTES,
            average_reconcile_ms=state.average_reconcile_ms,
        )
        tick.status.publish(name, summary)

        interval = reconcile_interval(spec.load_profile)
        logger.info(
            "Reconciled %s: nodes=%s namespaces=%s/%s calls=%s errors=%s next in %ss",
            name,
            node_count,
            namespaces.count,
            target,
            tick.stats.calls,
            tick.stats.errors,
            interval,
        )
        return ReconcileResult(requeue_after=interval)


__all__ = [
    "BUDGET_DENIED_REQUEUE_SECONDS",
    "CALLS_PER_NAMESPACE",
    "CLEANUP_DELAY_REQUEUE_SECONDS",
    "ReconcileResult",
    "ReconcileScheduler",
]
