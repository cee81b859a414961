"""Creation and removal of the namespaces that carry generated load."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .entities import (
    CREATED_BY,
    LABEL_ASSOCIATED_NODE,
    LABEL_CREATED_BY,
    LABEL_MANAGED_BY,
    LABEL_NAMESPACE_INDEX,
    RuntimeState,
    ScaleLoadConfig,
    parse_timestamp,
    utcnow,
)
from .store import NAMESPACE, RESOURCE_QUOTA, NotFoundError, ObjectStore, StoreError
from .synthetic import SyntheticContent

logger = logging.getLogger(__name__)

GRACEFUL_DELETE_SECONDS = 30
_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def namespace_name(obj: Mapping[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def namespace_labels(obj: Mapping[str, Any]) -> Dict[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def namespace_index(obj: Mapping[str, Any]) -> Optional[int]:
    value = namespace_labels(obj).get(LABEL_NAMESPACE_INDEX)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def is_terminating(obj: Mapping[str, Any]) -> bool:
    metadata = obj.get("metadata") or {}
    phase = (obj.get("status") or {}).get("phase")
    return bool(metadata.get("deletionTimestamp")) or phase == "Terminating"


def is_ready(obj: Mapping[str, Any]) -> bool:
    """Active, or freshly created and not yet reporting a phase."""

    phase = (obj.get("status") or {}).get("phase")
    return not is_terminating(obj) and phase in (None, "", "Active")


def _creation_time(obj: Mapping[str, Any]) -> datetime:
    created = parse_timestamp((obj.get("metadata") or {}).get("creationTimestamp"))
    return created or _FAR_FUTURE


def oldest_first(namespaces: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return sorted(namespaces, key=_creation_time)


@dataclass(slots=True)
class NamespaceResult:
    created: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    namespaces: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.namespaces)


class NamespaceLifecycle:
    """Keep the managed namespace set of one spec at its target size."""

    def __init__(
        self,
        store: ObjectStore,
        content: SyntheticContent,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.content = content
        self.clock = clock

    def list_managed(self, config_name: str) -> List[Dict[str, Any]]:
        return self.store.list(NAMESPACE, label_selector={LABEL_MANAGED_BY: config_name})

    def converge(
        self,
        config: ScaleLoadConfig,
        nodes: Sequence[Mapping[str, Any]],
        target: int,
        state: RuntimeState,
    ) -> NamespaceResult:
        result = NamespaceResult()
        existing = self.list_managed(config.name)
        live = [ns for ns in existing if not is_terminating(ns)]
        current = len(live)
        logger.debug("Namespaces for %s: current=%s target=%s", config.name, current, target)

        if current < target:
            result.created = self.create(config, nodes, target - current, existing, state)
        elif current > target:
            result.deleted = self.delete(config, live, current - target, state)

        if result.created or result.deleted:
            existing = self.list_managed(config.name)
        result.namespaces = [ns for ns in existing if not is_terminating(ns)]
        if result.created or result.deleted:
            logger.info(
                "Namespaces for %s converged to %s (created %s, deleted %s)",
                config.name,
                result.count,
                len(result.created),
                len(result.deleted),
            )
        return result

    def next_index(self, existing: Sequence[Mapping[str, Any]]) -> int:
        indices = [index for index in map(namespace_index, existing) if index is not None]
        if not indices:
            return len(existing)
        return max(max(indices) + 1, len(existing))

    def create(
        self,
        config: ScaleLoadConfig,
        nodes: Sequence[Mapping[str, Any]],
        count: int,
        existing: Sequence[Mapping[str, Any]],
        state: RuntimeState,
    ) -> List[str]:
        """Create ``count`` namespaces; the first failure aborts the batch."""

        settings = config.spec.namespace_config
        node_names = [namespace_name(node) for node in nodes]
        start_index = self.next_index(existing)
        created: List[str] = []
        for offset in range(count):
            now = self.clock()
            name = f"{settings.prefix}{self.content.random_string(6)}-{int(now.timestamp()) % 10000}"
            associated_node = self.content.random.choice(node_names) if node_names else ""
            labels = {
                LABEL_MANAGED_BY: config.name,
                LABEL_ASSOCIATED_NODE: associated_node,
                LABEL_CREATED_BY: CREATED_BY,
                LABEL_NAMESPACE_INDEX: str(start_index + offset),
            }
            labels.update(settings.labels)
            metadata: Dict[str, Any] = {"name": name, "labels": labels}
            if settings.annotations:
                metadata["annotations"] = dict(settings.annotations)
            self.store.create(
                {"apiVersion": NAMESPACE.api_version, "kind": NAMESPACE.kind, "metadata": metadata}
            )
            if settings.resource_quota is not None:
                self._create_quota(config, name, settings.resource_quota.hard_limits())
            state.namespace(name, associated_node).last_updates["namespace"] = now
            created.append(name)
            logger.debug("Created namespace %s (node %s)", name, associated_node or "-")
        return created

    def _create_quota(self, config: ScaleLoadConfig, namespace: str, hard: Mapping[str, str]) -> None:
        if not hard:
            return
        self.store.create(
            {
                "apiVersion": RESOURCE_QUOTA.api_version,
                "kind": RESOURCE_QUOTA.kind,
                "metadata": {
                    "name": "load-quota",
                    "namespace": namespace,
                    "labels": {LABEL_MANAGED_BY: config.name, LABEL_CREATED_BY: CREATED_BY},
                },
                "spec": {"hard": dict(hard)},
            }
        )

    def _grace_period(self, config: ScaleLoadConfig) -> int:
        return GRACEFUL_DELETE_SECONDS if config.spec.cleanup.graceful_deletes else 0

    def delete(
        self,
        config: ScaleLoadConfig,
        namespaces: Sequence[Mapping[str, Any]],
        count: int,
        state: RuntimeState,
    ) -> List[str]:
        """Delete the ``count`` oldest namespaces; the first failure aborts."""

        deleted: List[str] = []
        for namespace in oldest_first(namespaces)[:count]:
            name = namespace_name(namespace)
            self.store.delete(dict(namespace), grace_period_seconds=self._grace_period(config))
            state.forget_namespace(name)
            deleted.append(name)
            logger.debug("Deleted namespace %s", name)
        return deleted

    def cleanup_orphans(
        self,
        config: ScaleLoadConfig,
        namespaces: Sequence[Mapping[str, Any]],
        node_names: Iterable[str],
        state: RuntimeState,
    ) -> List[str]:
        """Delete namespaces whose associated node has been gone long enough."""

        live_nodes = set(node_names)
        now = self.clock()
        delay = timedelta(seconds=config.spec.cleanup.cleanup_delay_seconds)
        seen_orphans = set()
        deleted: List[str] = []
        for namespace in namespaces:
            if is_terminating(namespace):
                continue
            name = namespace_name(namespace)
            node = namespace_labels(namespace).get(LABEL_ASSOCIATED_NODE, "")
            if not node or node in live_nodes:
                continue
            seen_orphans.add(name)
            since = state.orphaned_since.setdefault(name, now)
            if now - since < delay:
                continue
            self.store.delete(dict(namespace), grace_period_seconds=self._grace_period(config))
            state.forget_namespace(name)
            deleted.append(name)
            logger.info("Deleted orphaned namespace %s (node %s is gone)", name, node)
        for name in list(state.orphaned_since):
            if name not in seen_orphans:
                del state.orphaned_since[name]
        return deleted

    def cleanup_all(self, config_name: str, state: Optional[RuntimeState] = None) -> int:
        """Delete every namespace labelled as managed by ``config_name``.

        Individual failures are logged and the sweep continues; the first one
        is re-raised afterwards so the caller retries later.
        """

        first_error: Optional[StoreError] = None
        deleted = 0
        for namespace in self.list_managed(config_name):
            name = namespace_name(namespace)
            if is_terminating(namespace):
                continue
            try:
                self.store.delete(dict(namespace))
            except NotFoundError:
                pass
            except StoreError as exc:
                logger.warning("Failed to delete managed namespace %s: %s", name, exc)
                if first_error is None:
                    first_error = exc
                continue
            deleted += 1
            if state is not None:
                state.forget_namespace(name)
        if first_error is not None:
            raise first_error
        logger.info("Removed %s namespaces managed by %s", deleted, config_name)
        return deleted


__all__ = [
    "GRACEFUL_DELETE_SECONDS",
    "NamespaceLifecycle",
    "NamespaceResult",
    "is_ready",
    "is_terminating",
    "namespace_index",
    "namespace_labels",
    "namespace_name",
    "oldest_first",
]
