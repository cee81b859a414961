from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .budget import RateBudget

LABEL_PREFIX = "scale.openshift.io/"
LABEL_MANAGED_BY = LABEL_PREFIX + "managed-by"
LABEL_ASSOCIATED_NODE = LABEL_PREFIX + "associated-node"
LABEL_CREATED_BY = LABEL_PREFIX + "created-by"
LABEL_NAMESPACE_INDEX = LABEL_PREFIX + "namespace-index"
LABEL_RESOURCE_TYPE = LABEL_PREFIX + "resource-type"
CREATED_BY = "kwok-load-generator"
CLEANUP_FINALIZER = LABEL_PREFIX + "cleanup"

DEFAULT_NODE_SELECTOR: Mapping[str, str] = {"type": "kwok"}
DEFAULT_NAMESPACE_PREFIX = "openshift-fake-"
DEFAULT_PROFILE = "production"

RESOURCE_KINDS: tuple[str, ...] = (
    "configMaps",
    "secrets",
    "routes",
    "imageStreams",
    "buildConfigs",
    "events",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as an RFC3339 UTC timestamp with second precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC3339 timestamp, returning ``None`` when it is unusable."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


def _as_str_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(key): str(item) for key, item in value.items()}


@dataclass(slots=True)
class NamespaceResourceQuota:
    cpu: str = ""
    memory: str = ""
    storage: str = ""
    pods: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NamespaceResourceQuota":
        return cls(
            cpu=str(data.get("cpu") or ""),
            memory=str(data.get("memory") or ""),
            storage=str(data.get("storage") or ""),
            pods=_as_int(data.get("pods"), 0) or 0,
        )

    def hard_limits(self) -> Dict[str, str]:
        hard: Dict[str, str] = {}
        if self.cpu:
            hard["limits.cpu"] = self.cpu
        if self.memory:
            hard["limits.memory"] = self.memory
        if self.storage:
            hard["requests.storage"] = self.storage
        if self.pods > 0:
            hard["pods"] = str(self.pods)
        return hard


@dataclass(slots=True)
class NamespaceConfig:
    prefix: str = DEFAULT_NAMESPACE_PREFIX
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_quota: Optional[NamespaceResourceQuota] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NamespaceConfig":
        quota = data.get("resourceQuota")
        return cls(
            prefix=str(data.get("namespacePrefix") or DEFAULT_NAMESPACE_PREFIX),
            labels=_as_str_map(data.get("labels")),
            annotations=_as_str_map(data.get("annotations")),
            resource_quota=NamespaceResourceQuota.from_dict(quota) if isinstance(quota, Mapping) else None,
        )


@dataclass(slots=True)
class LoadProfile:
    """Load intensity settings.

    ``namespaces_per_node`` is kept as the raw decimal string from the object;
    it is parsed by the planner so that malformed values degrade to a default
    instead of failing the whole tick.
    """

    profile: str = DEFAULT_PROFILE
    namespaces_per_node: Optional[str] = None
    api_call_rate_static: Optional[int] = None
    api_call_rate_per_node: Optional[int] = None
    api_call_rate: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LoadProfile":
        ratio = data.get("namespacesPerNode")
        return cls(
            profile=str(data.get("profile") or DEFAULT_PROFILE),
            namespaces_per_node=None if ratio is None else str(ratio),
            api_call_rate_static=_as_int(data.get("apiCallRateStatic"), None),
            api_call_rate_per_node=_as_int(data.get("apiCallRatePerNode"), None),
            api_call_rate=_as_int(data.get("apiCallRate"), None),
        )


@dataclass(slots=True)
class ResourceTypeConfig:
    enabled: bool = True
    count: int = 1
    namespace_interval: int = 1
    delete_recreate_chance: str = "0.1"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceTypeConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            count=max(_as_int(data.get("count"), 1) or 0, 0),
            namespace_interval=_as_int(data.get("namespaceInterval"), 1) or 1,
            delete_recreate_chance=str(data.get("deleteRecreateChance") or "0.1"),
        )


@dataclass(slots=True)
class EventTypeConfig:
    type: str
    reason: str
    message: str
    weight: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EventTypeConfig":
        return cls(
            type=str(data.get("type") or "Normal"),
            reason=str(data.get("reason") or ""),
            message=str(data.get("message") or ""),
            weight=_as_int(data.get("weight"), 1) or 0,
        )


@dataclass(slots=True)
class EventsConfig:
    enabled: bool = True
    events_per_node_per_hour: int = 50
    event_types: List[EventTypeConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EventsConfig":
        event_types = [
            EventTypeConfig.from_dict(item)
            for item in data.get("eventTypes") or []
            if isinstance(item, Mapping)
        ]
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            events_per_node_per_hour=_as_int(data.get("eventsPerNodePerHour"), 50) or 0,
            event_types=event_types,
        )


@dataclass(slots=True)
class ResourceChurnConfig:
    config_maps: ResourceTypeConfig = field(default_factory=ResourceTypeConfig)
    secrets: ResourceTypeConfig = field(default_factory=ResourceTypeConfig)
    routes: ResourceTypeConfig = field(default_factory=ResourceTypeConfig)
    image_streams: ResourceTypeConfig = field(default_factory=ResourceTypeConfig)
    build_configs: ResourceTypeConfig = field(default_factory=ResourceTypeConfig)
    events: EventsConfig = field(default_factory=EventsConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceChurnConfig":
        def _kind(key: str) -> ResourceTypeConfig:
            value = data.get(key)
            return ResourceTypeConfig.from_dict(value if isinstance(value, Mapping) else {})

        events = data.get("events")
        return cls(
            config_maps=_kind("configMaps"),
            secrets=_kind("secrets"),
            routes=_kind("routes"),
            image_streams=_kind("imageStreams"),
            build_configs=_kind("buildConfigs"),
            events=EventsConfig.from_dict(events if isinstance(events, Mapping) else {}),
        )

    def for_kind(self, kind: str) -> ResourceTypeConfig:
        return {
            "configMaps": self.config_maps,
            "secrets": self.secrets,
            "routes": self.routes,
            "imageStreams": self.image_streams,
            "buildConfigs": self.build_configs,
        }[kind]


@dataclass(slots=True)
class AnnotationChurnConfig:
    enabled: bool = True
    networking_annotations: bool = True
    machine_config_annotations: bool = True
    update_interval_min: int = 60
    update_interval_max: int = 300

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnnotationChurnConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            networking_annotations=_as_bool(data.get("networkingAnnotations"), True),
            machine_config_annotations=_as_bool(data.get("machineConfigAnnotations"), True),
            update_interval_min=_as_int(data.get("updateIntervalMin"), 60) or 0,
            update_interval_max=_as_int(data.get("updateIntervalMax"), 300) or 0,
        )


@dataclass(slots=True)
class CleanupConfig:
    enabled: bool = True
    graceful_deletes: bool = True
    cleanup_delay_seconds: int = 60
    orphan_cleanup: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CleanupConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            graceful_deletes=_as_bool(data.get("gracefulDeletes"), True),
            cleanup_delay_seconds=_as_int(data.get("cleanupDelaySeconds"), 60) or 0,
            orphan_cleanup=_as_bool(data.get("orphanCleanup"), True),
        )


@dataclass(slots=True)
class LoadSpecification:
    """Desired state of one ``ScaleLoadConfig``."""

    enabled: bool = True
    node_selector: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_NODE_SELECTOR))
    load_profile: LoadProfile = field(default_factory=LoadProfile)
    namespace_config: NamespaceConfig = field(default_factory=NamespaceConfig)
    annotation_churn: AnnotationChurnConfig = field(default_factory=AnnotationChurnConfig)
    resource_churn: ResourceChurnConfig = field(default_factory=ResourceChurnConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LoadSpecification":
        def _section(key: str) -> Mapping[str, Any]:
            value = data.get(key)
            return value if isinstance(value, Mapping) else {}

        selector = _as_str_map(data.get("kwokNodeSelector")) or dict(DEFAULT_NODE_SELECTOR)
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            node_selector=selector,
            load_profile=LoadProfile.from_dict(_section("loadProfile")),
            namespace_config=NamespaceConfig.from_dict(_section("namespaceConfig")),
            annotation_churn=AnnotationChurnConfig.from_dict(_section("annotationChurn")),
            resource_churn=ResourceChurnConfig.from_dict(_section("resourceChurn")),
            cleanup=CleanupConfig.from_dict(_section("cleanupConfig")),
        )


@dataclass(slots=True)
class ScaleLoadConfig:
    """A ``ScaleLoadConfig`` custom object together with its parsed spec."""

    name: str
    spec: LoadSpecification
    generation: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    status: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "ScaleLoadConfig":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            spec=LoadSpecification.from_dict(spec if isinstance(spec, Mapping) else {}),
            generation=_as_int(metadata.get("generation"), 0) or 0,
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=parse_timestamp(metadata.get("deletionTimestamp")),
            status=dict(obj.get("status") or {}),
            raw=dict(obj),
        )

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers


@dataclass(slots=True)
class Condition:
    type: str
    status: str
    reason: str
    message: str
    last_transition_time: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass(slots=True)
class OperationStats:
    """Store operations issued during one tick."""

    calls: int = 0
    errors: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def error_rate(self) -> float:
        """Failed calls as a percentage of all calls."""

        if self.calls == 0:
            return 0.0
        return self.errors / self.calls * 100.0


@dataclass(slots=True)
class NamespaceRuntime:
    namespace: str
    associated_node: str = ""
    resource_counters: Dict[str, int] = field(default_factory=dict)
    last_updates: Dict[str, datetime] = field(default_factory=dict)

    def record(self, kind: str, count: int, when: datetime) -> None:
        self.resource_counters[kind] = count
        self.last_updates[kind] = when


@dataclass(slots=True)
class RuntimeState:
    """In-memory bookkeeping for one spec instance.

    Lost on restart; every target is recomputed from the object store, so the
    only visible effect is a forgiven rate-budget window.
    """

    budget: RateBudget
    last_reconcile: Optional[datetime] = None
    namespaces: Dict[str, NamespaceRuntime] = field(default_factory=dict)
    orphaned_since: Dict[str, datetime] = field(default_factory=dict)
    reconcile_count: int = 0
    reconcile_seconds_total: float = 0.0

    def namespace(self, name: str, associated_node: str = "") -> NamespaceRuntime:
        runtime = self.namespaces.get(name)
        if runtime is None:
            runtime = NamespaceRuntime(namespace=name, associated_node=associated_node)
            self.namespaces[name] = runtime
        return runtime

    def forget_namespace(self, name: str) -> None:
        self.namespaces.pop(name, None)
        self.orphaned_since.pop(name, None)

    def record_reconcile(self, seconds: float) -> None:
        self.reconcile_count += 1
        self.reconcile_seconds_total += seconds

    @property
    def average_reconcile_ms(self) -> float:
        if self.reconcile_count == 0:
            return 0.0
        return self.reconcile_seconds_total / self.reconcile_count * 1000.0


__all__ = [
    "AnnotationChurnConfig",
    "CLEANUP_FINALIZER",
    "CREATED_BY",
    "CleanupConfig",
    "Condition",
    "DEFAULT_NODE_SELECTOR",
    "EventTypeConfig",
    "EventsConfig",
    "LABEL_ASSOCIATED_NODE",
    "LABEL_CREATED_BY",
    "LABEL_MANAGED_BY",
    "LABEL_NAMESPACE_INDEX",
    "LABEL_RESOURCE_TYPE",
    "LoadProfile",
    "LoadSpecification",
    "NamespaceConfig",
    "NamespaceResourceQuota",
    "NamespaceRuntime",
    "OperationStats",
    "RESOURCE_KINDS",
    "ResourceChurnConfig",
    "ResourceTypeConfig",
    "RuntimeState",
    "ScaleLoadConfig",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
