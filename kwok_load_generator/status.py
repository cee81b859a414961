"""Status sub-resource and gauge publishing for ``ScaleLoadConfig`` objects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .entities import (
    RESOURCE_KINDS,
    Condition,
    OperationStats,
    format_timestamp,
    utcnow,
)
from .metrics import MetricSet
from .store import SCALE_LOAD_CONFIG, ObjectStore

logger = logging.getLogger(__name__)

DEGRADED_ERROR_RATE = 10.0


@dataclass(slots=True)
class TickSummary:
    """What one tick observed and did, as reported in status."""

    enabled: bool
    node_count: int = 0
    namespace_count: int = 0
    resource_counts: Dict[str, int] = field(default_factory=dict)
    stats: OperationStats = field(default_factory=OperationStats)
    minutes_elapsed: float = 1.0
    average_reconcile_ms: float = 0.0


def _decimal(value: float) -> str:
    return f"{value:.2f}"


def calculate_metrics(summary: TickSummary) -> Dict[str, str]:
    """Per-minute rates of this tick's store traffic, as decimal strings."""

    minutes = summary.minutes_elapsed if summary.minutes_elapsed > 0 else 1.0
    stats = summary.stats
    return {
        "apiCallsPerMinute": _decimal(stats.calls / minutes),
        "averageReconcileTimeMs": _decimal(summary.average_reconcile_ms),
        "errorRate": _decimal(stats.error_rate),
        "resourceCreationRate": _decimal(stats.created / minutes),
        "resourceUpdateRate": _decimal(stats.updated / minutes),
        "resourceDeletionRate": _decimal(stats.deleted / minutes),
    }


def _carry_transition_time(
    condition: Condition,
    previous: Mapping[str, Mapping[str, Any]],
    now: str,
) -> Condition:
    old = previous.get(condition.type)
    if old is not None and old.get("status") == condition.status and old.get("lastTransitionTime"):
        condition.last_transition_time = old["lastTransitionTime"]
    else:
        condition.last_transition_time = now
    return condition


def build_conditions(
    enabled: bool,
    node_count: int,
    error_rate: float,
    previous: Sequence[Mapping[str, Any]] = (),
    now: Optional[datetime] = None,
) -> List[Condition]:
    """Compute the Ready, Scaling and Degraded conditions.

    ``lastTransitionTime`` only moves when a condition's status flips.
    """

    timestamp = format_timestamp(now or utcnow())
    by_type = {item.get("type"): item for item in previous if isinstance(item, Mapping)}

    if not enabled:
        ready = Condition("Ready", "False", "LoadGenerationDisabled", "Load generation is disabled")
    elif node_count == 0:
        ready = Condition("Ready", "False", "NoKwokNodes", "No KWOK nodes found matching selector")
    else:
        ready = Condition(
            "Ready",
            "True",
            "LoadGenerationActive",
            f"Successfully generating load for {node_count} KWOK nodes",
        )

    if node_count == 0:
        scaling = Condition("Scaling", "False", "NoScaling", "No scaling activities due to zero KWOK nodes")
    else:
        scaling = Condition("Scaling", "True", "ResourcesScaling", "Resources are scaling with KWOK node count")

    if error_rate > DEGRADED_ERROR_RATE:
        degraded = Condition("Degraded", "True", "HighErrorRate", f"High error rate: {error_rate:.1f}%")
    else:
        degraded = Condition("Degraded", "False", "OperatingNormally", "Load generation is operating normally")

    return [_carry_transition_time(item, by_type, timestamp) for item in (ready, scaling, degraded)]


class StatusPublisher:
    """Write the status sub-resource and refresh the exported gauges."""

    def __init__(
        self,
        store: ObjectStore,
        metrics: Optional[MetricSet] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.clock = clock

    def build_status(self, latest: Mapping[str, Any], summary: TickSummary) -> Dict[str, Any]:
        now = self.clock()
        metadata = latest.get("metadata") or {}
        previous = (latest.get("status") or {}).get("conditions") or []
        conditions = build_conditions(
            summary.enabled,
            summary.node_count,
            summary.stats.error_rate,
            previous,
            now,
        )
        return {
            "observedGeneration": metadata.get("generation", 0),
            "kwokNodeCount": summary.node_count,
            "generatedNamespaces": summary.namespace_count,
            "totalResources": {kind: summary.resource_counts.get(kind, 0) for kind in RESOURCE_KINDS},
            "lastReconcileTime": format_timestamp(now),
            "conditions": [condition.to_dict() for condition in conditions],
            "metrics": calculate_metrics(summary),
        }

    def publish(self, config_name: str, summary: TickSummary) -> Dict[str, Any]:
        """Re-read the object and write its status; store errors propagate."""

        latest = self.store.get(SCALE_LOAD_CONFIG, config_name)
        latest["status"] = self.build_status(latest, summary)
        if self.metrics is not None:
            self.metrics.record_counts(config_name, summary.node_count, summary.namespace_count)
        result = self.store.update_status(latest)
        logger.debug(
            "Updated status of %s: nodes=%s namespaces=%s resources=%s",
            config_name,
            summary.node_count,
            summary.namespace_count,
            sum(summary.resource_counts.values()),
        )
        return result


__all__ = [
    "DEGRADED_ERROR_RATE",
    "StatusPublisher",
    "TickSummary",
    "build_conditions",
    "calculate_metrics",
]
