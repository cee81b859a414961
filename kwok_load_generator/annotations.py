"""Node annotation churn modelled on OVN, machine-config and cluster controllers."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from .entities import LABEL_PREFIX, AnnotationChurnConfig, format_timestamp, parse_timestamp, utcnow
from .store import NODE, ConflictError, ObjectStore, StoreError
from .synthetic import SyntheticContent

logger = logging.getLogger(__name__)

LAST_UPDATE_ANNOTATION = LABEL_PREFIX + "last-annotation-update"
MANAGED_ANNOTATION = LABEL_PREFIX + "load-generator-managed"
LAST_SEEN_ANNOTATION = LABEL_PREFIX + "last-seen"

NETWORKING = "networking"
MACHINE_CONFIG = "machine-config"
CLUSTER = "cluster"

ITERATION_ANNOTATIONS: Dict[str, str] = {
    NETWORKING: LABEL_PREFIX + "networking-churn-iteration",
    MACHINE_CONFIG: LABEL_PREFIX + "machine-config-churn-iteration",
    CLUSTER: LABEL_PREFIX + "cluster-churn-iteration",
}

RETRY_ATTEMPTS = 5
RETRY_INITIAL_SECONDS = 0.1
RETRY_FACTOR = 2.0
RETRY_JITTER = 0.1


@dataclass(frozen=True)
class AnnotationRule:
    """One churned node annotation.

    ``generate`` receives the content source and the node name.
    """

    key: str
    category: str
    probability: float
    generate: Callable[[SyntheticContent, str], str]


ANNOTATION_RULES: Sequence[AnnotationRule] = (
    AnnotationRule("k8s.ovn.org/host-cidrs", NETWORKING, 0.3, lambda c, n: f'["{c.ip()}/19"]'),
    AnnotationRule("k8s.ovn.org/l3-gateway-config", NETWORKING, 0.3, lambda c, n: c.l3_gateway_config(n)),
    AnnotationRule("k8s.ovn.org/node-chassis-id", NETWORKING, 0.3, lambda c, n: c.random_uuid()),
    AnnotationRule("k8s.ovn.org/node-encap-ips", NETWORKING, 0.3, lambda c, n: f'["{c.ip()}"]'),
    AnnotationRule(
        "k8s.ovn.org/node-primary-ifaddr", NETWORKING, 0.3, lambda c, n: f'{{"ipv4":"{c.ip()}/19"}}'
    ),
    AnnotationRule(
        "k8s.ovn.org/node-subnets", NETWORKING, 0.3, lambda c, n: f'{{"default":["{c.subnet()}/23"]}}'
    ),
    AnnotationRule(
        "k8s.ovn.org/node-transit-switch-port-ifaddr",
        NETWORKING,
        0.3,
        lambda c, n: f'{{"ipv4":"{c.transit_ip()}/16"}}',
    ),
    AnnotationRule("k8s.ovn.org/zone-name", NETWORKING, 0.3, lambda c, n: n),
    AnnotationRule("k8s.ovn.org/remote-zone-migrated", NETWORKING, 0.3, lambda c, n: n),
    AnnotationRule("k8s.ovn.org/layer2-topology-version", NETWORKING, 0.3, lambda c, n: c.topology_version()),
    AnnotationRule(
        "cloud.network.openshift.io/egress-ipconfig", NETWORKING, 0.2, lambda c, n: c.egress_ip_config()
    ),
    AnnotationRule(
        "machineconfiguration.openshift.io/currentConfig", MACHINE_CONFIG, 0.4, lambda c, n: c.rendered_config()
    ),
    AnnotationRule(
        "machineconfiguration.openshift.io/desiredConfig", MACHINE_CONFIG, 0.4, lambda c, n: c.rendered_config()
    ),
    AnnotationRule(
        "machineconfiguration.openshift.io/desiredDrain",
        MACHINE_CONFIG,
        0.4,
        lambda c, n: c.rendered_config("uncordon-rendered-worker"),
    ),
    AnnotationRule(
        "machineconfiguration.openshift.io/lastAppliedDrain",
        MACHINE_CONFIG,
        0.4,
        lambda c, n: c.rendered_config("uncordon-rendered-worker"),
    ),
    AnnotationRule("machineconfiguration.openshift.io/state", MACHINE_CONFIG, 0.4, lambda c, n: c.mcd_state()),
    AnnotationRule("machineconfiguration.openshift.io/reason", MACHINE_CONFIG, 0.4, lambda c, n: c.mcd_reason()),
    AnnotationRule(
        "machineconfiguration.openshift.io/lastSyncedControllerConfigResourceVersion",
        MACHINE_CONFIG,
        0.4,
        lambda c, n: c.resource_version(),
    ),
    AnnotationRule(
        "machineconfiguration.openshift.io/controlPlaneTopology",
        MACHINE_CONFIG,
        0.4,
        lambda c, n: "HighlyAvailable",
    ),
    AnnotationRule(
        "machineconfiguration.openshift.io/lastObservedServerCAAnnotation",
        MACHINE_CONFIG,
        0.4,
        lambda c, n: "false",
    ),
    AnnotationRule("machineconfiguration.openshift.io/post-config-action", MACHINE_CONFIG, 0.4, lambda c, n: ""),
    AnnotationRule("csi.volume.kubernetes.io/nodeid", CLUSTER, 0.1, lambda c, n: c.csi_node_id()),
    AnnotationRule("machine.openshift.io/machine", CLUSTER, 0.05, lambda c, n: c.machine_reference(n)),
)


@dataclass(slots=True)
class AnnotationResult:
    updated: int = 0
    skipped: int = 0
    failed: int = 0


def _node_name(node: Mapping[str, Any]) -> str:
    return (node.get("metadata") or {}).get("name", "")


def _node_annotations(node: Mapping[str, Any]) -> Dict[str, str]:
    return (node.get("metadata") or {}).get("annotations") or {}


class AnnotationChurnSimulator:
    """Rewrite node annotations at randomized per-node intervals."""

    def __init__(
        self,
        store: ObjectStore,
        content: SyntheticContent,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rules: Sequence[AnnotationRule] = ANNOTATION_RULES,
    ) -> None:
        self.store = store
        self.content = content
        self.clock = clock
        self.sleep = sleep
        self.rules = rules

    def run(self, settings: AnnotationChurnConfig, nodes: Sequence[Mapping[str, Any]]) -> AnnotationResult:
        """Churn every due node; a node that cannot be written is skipped."""

        result = AnnotationResult()
        for node in nodes:
            name = _node_name(node)
            if not self.should_update(node, settings):
                result.skipped += 1
                continue
            changes = self.plan_changes(name, settings)
            try:
                self.update_node_with_retry(name, changes)
            except StoreError as exc:
                result.failed += 1
                logger.warning("Failed to update annotations on node %s: %s", name, exc)
                continue
            result.updated += 1
            logger.debug("Updated %s annotations on node %s", len(changes), name)
        if result.updated or result.failed:
            logger.info(
                "Node annotation churn: %s updated, %s failed, %s not due",
                result.updated,
                result.failed,
                result.skipped,
            )
        return result

    def should_update(self, node: Mapping[str, Any], settings: AnnotationChurnConfig) -> bool:
        last_update = last_annotation_update(node)
        if last_update is None:
            return True
        low = max(settings.update_interval_min, 0)
        high = max(settings.update_interval_max, low)
        threshold = timedelta(seconds=self.content.random.uniform(low, high))
        return self.clock() - last_update >= threshold

    def enabled_categories(self, settings: AnnotationChurnConfig) -> List[str]:
        categories = []
        if settings.networking_annotations:
            categories.append(NETWORKING)
        if settings.machine_config_annotations:
            categories.append(MACHINE_CONFIG)
        categories.append(CLUSTER)
        return categories

    def plan_changes(self, node_name: str, settings: AnnotationChurnConfig) -> Dict[str, str]:
        """Compute the annotation diff for one node."""

        rng = self.content.random
        categories = self.enabled_categories(settings)
        timestamp = format_timestamp(self.clock())
        changes: Dict[str, str] = {}
        changed_categories = set()
        for rule in self.rules:
            if rule.category not in categories:
                continue
            if rng.random() < rule.probability:
                changes[rule.key] = rule.generate(self.content, node_name)
                changed_categories.add(rule.category)
        for category in categories:
            if category in changed_categories:
                changes[ITERATION_ANNOTATIONS[category]] = str(rng.randint(0, 9999))
        if changed_categories:
            changes[LAST_UPDATE_ANNOTATION] = timestamp
        changes[MANAGED_ANNOTATION] = "true"
        changes[LAST_SEEN_ANNOTATION] = timestamp
        return changes

    def _backoff(self, retry_state: RetryCallState) -> float:
        delay = RETRY_INITIAL_SECONDS * RETRY_FACTOR ** (retry_state.attempt_number - 1)
        return delay * (1 + RETRY_JITTER * self.content.random.random())

    def update_node_with_retry(self, node_name: str, changes: Mapping[str, str]) -> Dict[str, Any]:
        """Merge ``changes`` onto the latest copy of the node and write it.

        Conflicts are retried with jittered exponential backoff; any other
        store error, or a conflict on the final attempt, propagates.
        """

        retrying = Retrying(
            stop=stop_after_attempt(RETRY_ATTEMPTS),
            wait=self._backoff,
            retry=retry_if_exception_type(ConflictError),
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(self._merge_and_write, node_name, changes)

    def _merge_and_write(self, node_name: str, changes: Mapping[str, str]) -> Dict[str, Any]:
        node = self.store.get(NODE, node_name)
        metadata = node.setdefault("metadata", {})
        annotations = metadata.get("annotations") or {}
        annotations.update(changes)
        metadata["annotations"] = annotations
        return self.store.update(node)


def last_annotation_update(node: Mapping[str, Any]) -> Optional[datetime]:
    return parse_timestamp(_node_annotations(node).get(LAST_UPDATE_ANNOTATION))


__all__ = [
    "ANNOTATION_RULES",
    "AnnotationChurnSimulator",
    "AnnotationResult",
    "AnnotationRule",
    "CLUSTER",
    "ITERATION_ANNOTATIONS",
    "LAST_SEEN_ANNOTATION",
    "LAST_UPDATE_ANNOTATION",
    "MACHINE_CONFIG",
    "MANAGED_ANNOTATION",
    "NETWORKING",
    "RETRY_ATTEMPTS",
    "last_annotation_update",
]
