"""Generic object-store access used by the reconciliation engine.

Everything the engine reads or writes goes through the small ``ObjectStore``
protocol defined here. Objects are plain manifest dictionaries (``apiVersion``,
``kind``, ``metadata`` ...) so that core resources and OpenShift custom kinds
are handled the same way. ``KubernetesObjectStore`` implements the protocol on
top of the ``kubernetes`` dynamic client and translates API failures into the
``StoreError`` hierarchy; ``TrackingStore`` wraps any store to time and count
calls for instrumentation and status reporting.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Protocol,
    Tuple,
)

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient

from .config import Config
from .entities import OperationStats

logger = logging.getLogger(__name__)


class ObjectKind(NamedTuple):
    """API version and kind of a stored object."""

    api_version: str
    kind: str
    namespaced: bool = True


NAMESPACE = ObjectKind("v1", "Namespace", namespaced=False)
NODE = ObjectKind("v1", "Node", namespaced=False)
CONFIG_MAP = ObjectKind("v1", "ConfigMap")
SECRET = ObjectKind("v1", "Secret")
SERVICE = ObjectKind("v1", "Service")
EVENT = ObjectKind("v1", "Event")
RESOURCE_QUOTA = ObjectKind("v1", "ResourceQuota")
ROUTE = ObjectKind("route.openshift.io/v1", "Route")
IMAGE_STREAM = ObjectKind("image.openshift.io/v1", "ImageStream")
BUILD_CONFIG = ObjectKind("build.openshift.io/v1", "BuildConfig")
SCALE_LOAD_CONFIG = ObjectKind("scale.openshift.io/v1", "ScaleLoadConfig", namespaced=False)


class StoreError(Exception):
    """Failure reported by the object store."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """The addressed object does not exist."""


class AlreadyExistsError(StoreError):
    """An object with the same name already exists."""


class ConflictError(StoreError):
    """The write was based on a stale resource version."""


class ObjectStore(Protocol):
    def get(self, kind: ObjectKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        ...

    def list(
        self,
        kind: ObjectKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def delete(self, obj: Dict[str, Any], grace_period_seconds: Optional[int] = None) -> None:
        ...


def format_label_selector(labels: Optional[Mapping[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def object_identity(obj: Mapping[str, Any]) -> Tuple[str, str, Optional[str]]:
    """Return ``(kind, name, namespace)`` for logging and lookups."""

    metadata = obj.get("metadata") or {}
    return obj.get("kind", ""), metadata.get("name", ""), metadata.get("namespace")


def _error_reason(exc: ApiException) -> str:
    body = getattr(exc, "body", None)
    if not body:
        return exc.reason or ""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return exc.reason or ""
    if isinstance(payload, dict):
        return str(payload.get("reason") or exc.reason or "")
    return exc.reason or ""


def translate_api_exception(exc: ApiException, action: str) -> StoreError:
    status = exc.status
    message = f"{action} failed: {status} {exc.reason}"
    if status == 404:
        return NotFoundError(message, status=status)
    if status == 409:
        if _error_reason(exc) == "AlreadyExists":
            return AlreadyExistsError(message, status=status)
        return ConflictError(message, status=status)
    return StoreError(message, status=status)


@contextmanager
def _translated(action: str) -> Iterator[None]:
    try:
        yield
    except ApiException as exc:
        raise translate_api_exception(exc, action) from exc


class KubernetesObjectStore:
    """``ObjectStore`` backed by the Kubernetes dynamic client."""

    def __init__(self, dynamic_client: DynamicClient) -> None:
        self._client = dynamic_client
        self._resources: Dict[Tuple[str, str], Any] = {}

    def _resource(self, api_version: str, kind: str) -> Any:
        key = (api_version, kind)
        resource = self._resources.get(key)
        if resource is None:
            resource = self._client.resources.get(api_version=api_version, kind=kind)
            self._resources[key] = resource
        return resource

    def _resource_for(self, obj: Mapping[str, Any]) -> Any:
        return self._resource(obj["apiVersion"], obj["kind"])

    def get(self, kind: ObjectKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        resource = self._resource(kind.api_version, kind.kind)
        with _translated(f"get {kind.kind}/{name}"):
            result = resource.get(name=name, namespace=namespace)
        return result.to_dict()

    def list(
        self,
        kind: ObjectKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        resource = self._resource(kind.api_version, kind.kind)
        with _translated(f"list {kind.kind}"):
            result = resource.get(
                namespace=namespace,
                label_selector=format_label_selector(label_selector),
            )
        payload = result.to_dict()
        items = payload.get("items") or []
        for item in items:
            item.setdefault("apiVersion", kind.api_version)
            item.setdefault("kind", kind.kind)
        return items

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind, name, namespace = object_identity(obj)
        resource = self._resource_for(obj)
        with _translated(f"create {kind}/{name}"):
            result = resource.create(body=obj, namespace=namespace)
        return result.to_dict()

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind, name, namespace = object_identity(obj)
        resource = self._resource_for(obj)
        with _translated(f"update {kind}/{name}"):
            result = resource.replace(body=obj, namespace=namespace)
        return result.to_dict()

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind, name, namespace = object_identity(obj)
        resource = self._resource_for(obj)
        with _translated(f"update status {kind}/{name}"):
            result = resource.status.replace(body=obj, namespace=namespace)
        return result.to_dict()

    def delete(self, obj: Dict[str, Any], grace_period_seconds: Optional[int] = None) -> None:
        kind, name, namespace = object_identity(obj)
        resource = self._resource_for(obj)
        body = None
        if grace_period_seconds is not None:
            body = {
                "apiVersion": "v1",
                "kind": "DeleteOptions",
                "gracePeriodSeconds": grace_period_seconds,
            }
        with _translated(f"delete {kind}/{name}"):
            resource.delete(name=name, namespace=namespace, body=body)

    def watch(
        self,
        kind: ObjectKind,
        timeout_seconds: Optional[int] = None,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(event_type, object)`` pairs until the server closes the stream."""

        resource = self._resource(kind.api_version, kind.kind)
        with _translated(f"watch {kind.kind}"):
            for event in resource.watch(timeout=timeout_seconds, watcher=k8s_watch.Watch()):
                yield event["type"], event.get("raw_object") or {}


class TrackingStore:
    """Wrap a store, timing every call and counting outcomes.

    ``NotFoundError`` is not counted as a failure: lookups of missing objects
    are part of normal control flow.
    """

    def __init__(
        self,
        inner: ObjectStore,
        stats: OperationStats,
        observe: Optional[Callable[[str, float], None]] = None,
    ) -> None:
        self._inner = inner
        self.stats = stats
        self._observe = observe

    def _call(self, verb: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        start = time.perf_counter()
        self.stats.calls += 1
        try:
            result = func(*args, **kwargs)
        except NotFoundError:
            raise
        except StoreError:
            self.stats.errors += 1
            raise
        finally:
            if self._observe is not None:
                self._observe(verb, time.perf_counter() - start)
        if verb == "create":
            self.stats.created += 1
        elif verb == "update":
            self.stats.updated += 1
        elif verb == "delete":
            self.stats.deleted += 1
        return result

    def get(self, kind: ObjectKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        return self._call("get", self._inner.get, kind, name, namespace)

    def list(
        self,
        kind: ObjectKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        return self._call("list", self._inner.list, kind, namespace, label_selector)

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("create", self._inner.create, obj)

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("update", self._inner.update, obj)

    def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("update_status", self._inner.update_status, obj)

    def delete(self, obj: Dict[str, Any], grace_period_seconds: Optional[int] = None) -> None:
        self._call("delete", self._inner.delete, obj, grace_period_seconds)


def load_api_client(config: Config) -> k8s_client.ApiClient:
    """Build an API client from in-cluster credentials or a kubeconfig."""

    if config.in_cluster:
        k8s_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
        return k8s_client.ApiClient()
    try:
        api_client = k8s_config.new_client_from_config(
            config_file=config.kubeconfig_path, context=config.kube_context
        )
    except k8s_config.ConfigException:
        logger.info("No usable kubeconfig, falling back to in-cluster configuration")
        k8s_config.load_incluster_config()
        return k8s_client.ApiClient()
    logger.info("Using kubeconfig file (context %s)", config.kube_context or "current")
    return api_client


def build_object_store(api_client: k8s_client.ApiClient) -> KubernetesObjectStore:
    return KubernetesObjectStore(DynamicClient(api_client))


__all__ = [
    "AlreadyExistsError",
    "BUILD_CONFIG",
    "CONFIG_MAP",
    "ConflictError",
    "EVENT",
    "IMAGE_STREAM",
    "KubernetesObjectStore",
    "NAMESPACE",
    "NODE",
    "NotFoundError",
    "ObjectKind",
    "ObjectStore",
    "RESOURCE_QUOTA",
    "ROUTE",
    "SCALE_LOAD_CONFIG",
    "SECRET",
    "SERVICE",
    "StoreError",
    "TrackingStore",
    "build_object_store",
    "format_label_selector",
    "load_api_client",
    "object_identity",
    "translate_api_exception",
]
