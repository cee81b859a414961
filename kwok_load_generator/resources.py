"""Per-namespace object convergence and churn.

Every namespace selected for a resource kind holds ``count`` objects of that
kind, named by position (``load-config-0``, ``load-config-1`` ...). Scale-up
fills the missing positions, scale-down removes the highest positions, and each
surviving object is occasionally touched to simulate production write traffic.
Events are different: they are fire-and-forget creates at a configured hourly
rate and are never converged.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .entities import (
    CREATED_BY,
    LABEL_ASSOCIATED_NODE,
    LABEL_CREATED_BY,
    LABEL_MANAGED_BY,
    LABEL_PREFIX,
    LABEL_RESOURCE_TYPE,
    EventTypeConfig,
    ResourceTypeConfig,
    RuntimeState,
    ScaleLoadConfig,
    format_timestamp,
    utcnow,
)
from .namespaces import namespace_index, namespace_labels, namespace_name
from .store import (
    BUILD_CONFIG,
    CONFIG_MAP,
    EVENT,
    IMAGE_STREAM,
    ROUTE,
    SECRET,
    SERVICE,
    AlreadyExistsError,
    NotFoundError,
    ObjectKind,
    ObjectStore,
    StoreError,
)
from .synthetic import SyntheticContent

logger = logging.getLogger(__name__)

CHURN_PROBABILITY = 0.1
DEFAULT_RECREATE_CHANCE = 0.1
DEFAULT_EVENTS_PER_HOUR = 50
MAX_EVENTS_PER_TICK = 10
ANNOTATION_LAST_CHURN = LABEL_PREFIX + "last-churn"
ANNOTATION_CHURN_ITERATION = LABEL_PREFIX + "churn-iteration"
SAMPLE_IMAGE = "quay.io/cloud-bulldozer/sampleapp:latest"
SAMPLE_GIT_URI = "https://github.com/cloud-bulldozer/sampleapp.git"

DEFAULT_EVENT_TYPES: Sequence[EventTypeConfig] = (
    EventTypeConfig("Normal", "Started", "Container started successfully", 30),
    EventTypeConfig("Normal", "Created", "Created container %s", 25),
    EventTypeConfig("Normal", "Pulled", "Successfully pulled image", 20),
    EventTypeConfig("Warning", "FailedMount", "Unable to mount volumes", 10),
    EventTypeConfig("Warning", "FailedScheduling", "Pod scheduling failed", 8),
    EventTypeConfig("Normal", "Scheduled", "Successfully assigned pod", 7),
)

_PROBABILITY_RE = re.compile(r"^(0(\.[0-9]+)?|1(\.0+)?)$")


@dataclass(frozen=True)
class ManagedKind:
    """Static description of one converged resource kind."""

    key: str
    object_kind: ObjectKind
    resource_type: str
    name_prefix: str
    component: str

    def object_name(self, index: int) -> str:
        return f"{self.name_prefix}-{index}"


MANAGED_KINDS: Tuple[ManagedKind, ...] = (
    ManagedKind("configMaps", CONFIG_MAP, "configmap", "load-config", "configuration"),
    ManagedKind("secrets", SECRET, "secret", "load-secret", "credentials"),
    ManagedKind("routes", ROUTE, "route", "load-route", "frontend"),
    ManagedKind("imageStreams", IMAGE_STREAM, "imagestream", "load-image", "image"),
    ManagedKind("buildConfigs", BUILD_CONFIG, "buildconfig", "load-build", "build"),
)
ROUTE_SERVICE = ManagedKind("services", SERVICE, "service", "load-service", "backend")


def parse_probability(value: str, fallback: float = DEFAULT_RECREATE_CHANCE) -> float:
    text = value.strip() if isinstance(value, str) else ""
    if not _PROBABILITY_RE.match(text):
        logger.warning("Unparsable probability %r, using %s", value, fallback)
        return fallback
    return float(text)


def selected_by_interval(index: Optional[int], interval: int) -> bool:
    """Whether a namespace at ``index`` carries a kind with this interval.

    Namespaces without a readable index are always selected.
    """

    if interval <= 1 or index is None:
        return True
    return index % interval == 0


def position_of(name: str) -> Optional[int]:
    _, _, suffix = name.rpartition("-")
    try:
        return int(suffix)
    except ValueError:
        return None


def _object_name(obj: Mapping[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def _position_key(obj: Mapping[str, Any]) -> Tuple[int, int, str]:
    # The API server lists by name: load-config-10 sorts before load-config-2.
    name = _object_name(obj)
    position = position_of(name)
    if position is None:
        return 1, 0, name
    return 0, position, name


@dataclass(slots=True)
class KindResult:
    kind: str
    count: int = 0
    created: int = 0
    deleted: int = 0
    updated: int = 0
    recreated: int = 0
    failed: int = 0


class ResourceChurnEngine:
    """Converge and churn managed objects inside one namespace at a time."""

    def __init__(
        self,
        store: ObjectStore,
        content: SyntheticContent,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.content = content
        self.clock = clock
        self._builders: Dict[str, Callable[[str, str, int], Dict[str, Any]]] = {
            "configMaps": self._config_map_body,
            "secrets": self._secret_body,
            "routes": self._route_body,
            "imageStreams": self._image_stream_body,
            "buildConfigs": self._build_config_body,
            "services": self._service_body,
        }

    # ------------------------------------------------------------------
    # Namespace pass
    # ------------------------------------------------------------------
    def manage_namespace(
        self,
        config: ScaleLoadConfig,
        namespace: Mapping[str, Any],
        state: RuntimeState,
        hours_since_last: float,
    ) -> Dict[str, int]:
        """Run every enabled kind for one namespace and return object counts.

        Kinds are independent: a failing kind is logged and skipped.
        """

        name = namespace_name(namespace)
        index = namespace_index(namespace)
        runtime = state.namespace(name, namespace_labels(namespace).get(LABEL_ASSOCIATED_NODE, ""))
        churn = config.spec.resource_churn
        counts: Dict[str, int] = {}

        for kind in MANAGED_KINDS:
            settings = churn.for_kind(kind.key)
            if not settings.enabled:
                continue
            if not selected_by_interval(index, settings.namespace_interval):
                logger.debug(
                    "Skipping %s in %s (index %s, interval %s)",
                    kind.key,
                    name,
                    index,
                    settings.namespace_interval,
                )
                continue
            try:
                result = self.converge_kind(config, name, kind, settings)
            except StoreError as exc:
                logger.warning("Failed to manage %s in %s: %s", kind.key, name, exc)
                continue
            counts[kind.key] = result.count
            runtime.record(kind.key, result.count, self.clock())

        if churn.events.enabled:
            result = self.generate_events(config, name, hours_since_last)
            counts["events"] = result.count
            runtime.record("events", result.count, self.clock())

        return counts

    # ------------------------------------------------------------------
    # Converged kinds
    # ------------------------------------------------------------------
    def list_objects(self, config_name: str, namespace: str, kind: ManagedKind) -> List[Dict[str, Any]]:
        return self.store.list(
            kind.object_kind,
            namespace=namespace,
            label_selector={LABEL_MANAGED_BY: config_name, LABEL_RESOURCE_TYPE: kind.resource_type},
        )

    def converge_kind(
        self,
        config: ScaleLoadConfig,
        namespace: str,
        kind: ManagedKind,
        settings: ResourceTypeConfig,
    ) -> KindResult:
        """Bring the kind to positions ``0..count-1`` and churn the survivors.

        Positions are read back from object names, so gaps left by a failed
        recreate are refilled and surplus objects are removed highest first.
        """

        result = KindResult(kind=kind.key)
        items = sorted(self.list_objects(config.name, namespace, kind), key=_position_key)
        current = len(items)
        target = settings.count

        kept: List[Dict[str, Any]] = []
        surplus: List[Dict[str, Any]] = []
        for obj in items:
            position = position_of(_object_name(obj))
            if position is None or position >= target:
                surplus.append(obj)
            else:
                kept.append(obj)
        for obj in reversed(surplus):
            self._delete_object(kind, obj)
            result.deleted += 1

        occupied = {position_of(_object_name(obj)) for obj in kept}
        for position in range(target):
            if position not in occupied:
                self._create_at(config.name, namespace, kind, position)
                result.created += 1
        items = kept

        result.updated, result.recreated = self.churn(config.name, namespace, kind, items, settings)
        result.count = target
        if result.created or result.deleted or result.updated or result.recreated:
            logger.debug(
                "%s in %s: current=%s target=%s created=%s deleted=%s updated=%s recreated=%s",
                kind.key,
                namespace,
                current,
                target,
                result.created,
                result.deleted,
                result.updated,
                result.recreated,
            )
        return result

    def _create_at(self, config_name: str, namespace: str, kind: ManagedKind, position: int) -> None:
        if kind.key == "routes":
            service = self._builders["services"](config_name, namespace, position)
            try:
                self.store.create(service)
            except AlreadyExistsError:
                pass
        self.store.create(self._builders[kind.key](config_name, namespace, position))

    def _delete_object(self, kind: ManagedKind, obj: Mapping[str, Any]) -> None:
        self.store.delete(dict(obj))
        if kind.key != "routes":
            return
        metadata = obj.get("metadata") or {}
        service_name = ((obj.get("spec") or {}).get("to") or {}).get("name")
        if not service_name:
            position = position_of(metadata.get("name", ""))
            if position is None:
                return
            service_name = ROUTE_SERVICE.object_name(position)
        service = {
            "apiVersion": SERVICE.api_version,
            "kind": SERVICE.kind,
            "metadata": {"name": service_name, "namespace": metadata.get("namespace")},
        }
        try:
            self.store.delete(service)
        except NotFoundError:
            pass

    def churn(
        self,
        config_name: str,
        namespace: str,
        kind: ManagedKind,
        items: Sequence[Dict[str, Any]],
        settings: ResourceTypeConfig,
    ) -> Tuple[int, int]:
        """Touch each object with a fixed probability; best effort.

        A touched object is either annotated and updated, or, with the kind's
        delete-recreate chance, deleted and recreated at the same position.
        Returns ``(updated, recreated)``.
        """

        if not items:
            return 0, 0
        rng = self.content.random
        recreate_chance = parse_probability(settings.delete_recreate_chance)
        updated = recreated = 0
        for obj in items:
            if rng.random() >= CHURN_PROBABILITY:
                continue
            name = (obj.get("metadata") or {}).get("name", "")
            position = position_of(name)
            if position is not None and rng.random() < recreate_chance:
                try:
                    self.store.delete(dict(obj))
                    self.store.create(self._builders[kind.key](config_name, namespace, position))
                except StoreError as exc:
                    logger.warning("Delete-recreate churn failed for %s/%s: %s", namespace, name, exc)
                    continue
                recreated += 1
                continue
            metadata = obj.setdefault("metadata", {})
            annotations = metadata.get("annotations") or {}
            annotations[ANNOTATION_LAST_CHURN] = format_timestamp(self.clock())
            annotations[ANNOTATION_CHURN_ITERATION] = str(rng.randint(0, 999))
            metadata["annotations"] = annotations
            try:
                self.store.update(obj)
            except StoreError as exc:
                logger.warning("Churn update failed for %s/%s: %s", namespace, name, exc)
                continue
            updated += 1
        if updated or recreated:
            logger.info(
                "Churned %s %s in %s (%s updated, %s recreated)",
                updated + recreated,
                kind.key,
                namespace,
                updated,
                recreated,
            )
        return updated, recreated

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def generate_events(self, config: ScaleLoadConfig, namespace: str, hours_since_last: float) -> KindResult:
        """Create events at the configured hourly rate; failures are not retried."""

        settings = config.spec.resource_churn.events
        per_hour = settings.events_per_node_per_hour
        if per_hour <= 0:
            per_hour = DEFAULT_EVENTS_PER_HOUR
        to_create = min(int(per_hour * hours_since_last), MAX_EVENTS_PER_TICK)
        event_types = settings.event_types or list(DEFAULT_EVENT_TYPES)

        result = KindResult(kind="events")
        for position in range(to_create):
            event = self._event_body(config.name, namespace, position, self.pick_event_type(event_types))
            try:
                self.store.create(event)
            except StoreError as exc:
                result.failed += 1
                logger.debug("Event creation failed in %s: %s", namespace, exc)
                continue
            result.created += 1
        result.count = result.created
        if to_create:
            logger.debug(
                "Events in %s: attempted=%s created=%s failed=%s",
                namespace,
                to_create,
                result.created,
                result.failed,
            )
        return result

    def pick_event_type(self, event_types: Sequence[EventTypeConfig]) -> EventTypeConfig:
        weights = [max(event_type.weight, 0) for event_type in event_types]
        if sum(weights) <= 0:
            return event_types[0]
        return self.content.random.choices(list(event_types), weights=weights)[0]

    # ------------------------------------------------------------------
    # Object bodies
    # ------------------------------------------------------------------
    def _metadata(self, config_name: str, namespace: str, kind: ManagedKind, position: int) -> Dict[str, Any]:
        return {
            "name": kind.object_name(position),
            "namespace": namespace,
            "labels": {
                LABEL_MANAGED_BY: config_name,
                LABEL_RESOURCE_TYPE: kind.resource_type,
                LABEL_CREATED_BY: CREATED_BY,
                "app.kubernetes.io/name": f"load-app-{position}",
                "app.kubernetes.io/component": kind.component,
            },
        }

    def _config_map_body(self, config_name: str, namespace: str, position: int) -> Dict[str, Any]:
        kind = MANAGED_KINDS[0]
        return {
            "apiVersion": CONFIG_MAP.api_version,
            "kind": CONFIG_MAP.kind,
            "metadata": self._metadata(config_name, namespace, kind, position),
            "data": {
                "app.properties": self.content.app_properties(),
                "config.yaml": self.content.config_yaml(),
                "settings.json": self.content.settings_json(),
            },
        }

    def _secret_body(self, config_name: str, namespace: str, position: int) -> Dict[str, Any]:
        kind = MANAGED_KINDS[1]
        values = {
            "username": f"user-{position}",
            "password": self.content.password(32),
            "api-key": self.content.api_key(),
            "config.yaml": self.content.secret_config(),
        }
        return {
            "apiVersion": SECRET.api_version,
            "kind": SECRET.kind,
            "metadata": self._metadata(config_name, namespace, kind, position),
            "type": "Opaque",
            "data": {
                key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                for key, value in values.items()
            },
        }

    def _route_body(self, config_name: str, namespace: str, position: int) -> Dict[str, Any]:
        kind = MANAGED_KINDS[2]
        return {
            "apiVersion": ROUTE.api_version,
            "kind": ROUTE.kind,
            "metadata": self._metadata(config_name, namespace, kind, position),
            "spec": {
                "to": {"kind": "Service", "name": ROUTE_SERVICE.object_name(position)},
                "port": {"targetPort": 8080},
                "tls": {"termination": "edge"},
            },
        }

    def _service_body(self, config_name: str, namespace: str, position: int) -> Dict[str, Any]:
        return {
            "apiVersion": SERVICE.api_version,
            "kind": SERVICE.kind,
            "metadata": self._metadata(config_name, namespace, ROUTE_SERVICE, position),
            "spec": {
                "selector": {"app.kubernetes.io/name": f"load-app-{position}"},
                "ports": [{"name": "http", "port": 8080, "targetPort": 8080, "protocol": "TCP"}],
                "type": "ClusterIP",
            },
        }

    def _image_stream_body(self, config_name: str, namespace: str, position: int) -> Dict[str, Any]:
        kind = MANAGED_KINDS[3]
        return {
            "apiVersion": IMAGE_STREAM.api_version,
            "kind": IMAGE_STREAM.kind,
            "metadata": self._metadata(config_name, namespace, kind, position),
            "spec": {
                "tags": [
                    {
                        "name": "latest",
                        "from": {"kind": "DockerImage", "name": SAMPLE_IMAGE},
                        "importPolicy": {"scheduled": True},
                    }
                ]
            },
        }

    def _build_config_body(self, config_name: str, namespace: str, position: int) -> Dict[str, Any]:
        kind = MANAGED_KINDS[4]
        image_stream = MANAGED_KINDS[3].object_name(position)
        return {
            "apiVersion": BUILD_CONFIG.api_version,
            "kind": BUILD_CONFIG.kind,
            "metadata": self._metadata(config_name, namespace, kind, position),
            "spec": {
                "source": {"type": "Git", "git": {"uri": SAMPLE_GIT_URI}},
                "strategy": {"type": "Docker", "dockerStrategy": {}},
                "output": {"to": {"kind": "ImageStreamTag", "name": f"{image_stream}:latest"}},
            },
        }

    def _event_body(
        self,
        config_name: str,
        namespace: str,
        position: int,
        event_type: EventTypeConfig,
    ) -> Dict[str, Any]:
        now = self.clock()
        timestamp = format_timestamp(now)
        message = event_type.message
        if "%s" in message:
            message = message % f"container-{position}"
        return {
            "apiVersion": EVENT.api_version,
            "kind": EVENT.kind,
            "metadata": {
                "name": f"load-event-{position}-{int(now.timestamp())}",
                "namespace": namespace,
                "labels": {
                    LABEL_MANAGED_BY: config_name,
                    LABEL_RESOURCE_TYPE: "event",
                    LABEL_CREATED_BY: CREATED_BY,
                },
            },
            "involvedObject": {
                "kind": "Pod",
                "namespace": namespace,
                "name": f"load-pod-{position}",
                "apiVersion": "v1",
            },
            "reason": event_type.reason,
            "message": message,
            "type": event_type.type,
            "source": {"component": CREATED_BY},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }


__all__ = [
    "CHURN_PROBABILITY",
    "DEFAULT_EVENT_TYPES",
    "KindResult",
    "MANAGED_KINDS",
    "MAX_EVENTS_PER_TICK",
    "ManagedKind",
    "ResourceChurnEngine",
    "parse_probability",
    "position_of",
    "selected_by_interval",
]
