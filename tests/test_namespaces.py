"""Tests for namespace convergence and cleanup."""

from __future__ import annotations

from datetime import timedelta

import pytest

from kwok_load_generator.budget import RateBudget
from kwok_load_generator.entities import (
    LABEL_ASSOCIATED_NODE,
    LABEL_MANAGED_BY,
    LABEL_NAMESPACE_INDEX,
    RuntimeState,
    ScaleLoadConfig,
)
from kwok_load_generator.namespaces import (
    GRACEFUL_DELETE_SECONDS,
    NamespaceLifecycle,
    is_ready,
    is_terminating,
    oldest_first,
)
from kwok_load_generator.store import NAMESPACE, RESOURCE_QUOTA, StoreError

from tests.fakes import START, FakeObjectStore, FrozenClock, make_config, make_namespace, make_node


def _config(spec=None) -> ScaleLoadConfig:
    return ScaleLoadConfig.from_object(make_config("load", spec=spec))


class TestNamespaceHelpers:
    """Readiness and ordering helpers."""

    def test_terminating(self) -> None:
        assert is_terminating(make_namespace("a", phase="Terminating"))
        namespace = make_namespace("b")
        namespace["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        assert is_terminating(namespace)
        assert not is_ready(namespace)

    def test_fresh_namespace_without_phase_is_ready(self) -> None:
        namespace = make_namespace("a")
        namespace.pop("status")
        assert is_ready(namespace)

    def test_oldest_first_sorts_any_input(self) -> None:
        namespaces = [
            make_namespace("mid", created=START + timedelta(minutes=5)),
            make_namespace("new", created=START + timedelta(minutes=9)),
            make_namespace("none"),
            make_namespace("old", created=START),
        ]
        assert [ns["metadata"]["name"] for ns in oldest_first(namespaces)] == ["old", "mid", "new", "none"]


class TestNamespaceLifecycle:
    """Convergence toward the target namespace count."""

    @pytest.fixture
    def state(self, clock: FrozenClock) -> RuntimeState:
        return RuntimeState(budget=RateBudget(clock=clock))

    @pytest.fixture
    def lifecycle(self, store: FakeObjectStore, content, clock: FrozenClock) -> NamespaceLifecycle:
        return NamespaceLifecycle(store, content, clock)

    def test_creates_up_to_target(self, lifecycle, store, state) -> None:
        nodes = [make_node("kwok-node-0"), make_node("kwok-node-1")]
        result = lifecycle.converge(_config(), nodes, 3, state)

        assert len(result.created) == 3
        assert result.count == 3
        namespaces = store.objects_of(NAMESPACE)
        indices = sorted(int(ns["metadata"]["labels"][LABEL_NAMESPACE_INDEX]) for ns in namespaces)
        assert indices == [0, 1, 2]
        for namespace in namespaces:
            labels = namespace["metadata"]["labels"]
            assert namespace["metadata"]["name"].startswith("openshift-fake-")
            assert labels[LABEL_MANAGED_BY] == "load"
            assert labels[LABEL_ASSOCIATED_NODE] in {"kwok-node-0", "kwok-node-1"}
        assert set(state.namespaces) == set(result.created)

    def test_user_labels_and_annotations(self, lifecycle, store, state) -> None:
        config = _config({"namespaceConfig": {"labels": {"team": "perf"}, "annotations": {"owner": "qa"}}})
        lifecycle.converge(config, [make_node("kwok-node-0")], 1, state)
        (namespace,) = store.objects_of(NAMESPACE)
        assert namespace["metadata"]["labels"]["team"] == "perf"
        assert namespace["metadata"]["annotations"] == {"owner": "qa"}

    def test_quota_created_with_namespace(self, lifecycle, store, state) -> None:
        config = _config({"namespaceConfig": {"resourceQuota": {"cpu": "2", "memory": "4Gi"}}})
        result = lifecycle.converge(config, [make_node("kwok-node-0")], 1, state)
        quota = store.lookup(RESOURCE_QUOTA, "load-quota", result.created[0])
        assert quota["spec"]["hard"] == {"limits.cpu": "2", "limits.memory": "4Gi"}

    def test_no_nodes_leaves_association_empty(self, lifecycle, store, state) -> None:
        lifecycle.converge(_config(), [], 1, state)
        (namespace,) = store.objects_of(NAMESPACE)
        assert namespace["metadata"]["labels"][LABEL_ASSOCIATED_NODE] == ""

    def test_deletes_oldest_first(self, lifecycle, store, state) -> None:
        for name, minutes in [("ns-c", 30), ("ns-a", 0), ("ns-d", 45), ("ns-b", 15)]:
            store.add(make_namespace(name, created=START + timedelta(minutes=minutes)))

        result = lifecycle.converge(_config(), [make_node("kwok-node-0")], 2, state)

        assert result.deleted == ["ns-a", "ns-b"]
        assert sorted(store.names_of(NAMESPACE)) == ["ns-c", "ns-d"]
        assert all(grace == GRACEFUL_DELETE_SECONDS for _, _, grace in store.deleted)

    def test_immediate_deletes_without_graceful_flag(self, lifecycle, store, state) -> None:
        store.add(make_namespace("ns-a"))
        lifecycle.converge(_config({"cleanupConfig": {"gracefulDeletes": False}}), [], 0, state)
        assert store.deleted == [("Namespace", "ns-a", 0)]

    def test_at_target_is_a_no_op(self, lifecycle, store, state) -> None:
        store.add(make_namespace("ns-a"))
        store.add(make_namespace("ns-b", index=1))
        result = lifecycle.converge(_config(), [make_node("kwok-node-0")], 2, state)
        assert result.created == [] and result.deleted == []
        assert store.count_calls("create") == 0
        assert store.count_calls("delete") == 0

    def test_terminating_namespaces_do_not_count(self, lifecycle, store, state) -> None:
        store.add(make_namespace("ns-a", phase="Terminating"))
        result = lifecycle.converge(_config(), [make_node("kwok-node-0")], 1, state)
        assert len(result.created) == 1
        assert result.count == 1

    def test_new_index_follows_highest_existing(self, lifecycle, store, state) -> None:
        store.add(make_namespace("ns-x", index=4))
        result = lifecycle.converge(_config(), [make_node("kwok-node-0")], 2, state)
        created = store.lookup(NAMESPACE, result.created[0])
        assert created["metadata"]["labels"][LABEL_NAMESPACE_INDEX] == "5"

    def test_create_failure_aborts_batch(self, lifecycle, store, state) -> None:
        store.fail("create", "Namespace", StoreError("boom", status=500))
        with pytest.raises(StoreError):
            lifecycle.converge(_config(), [make_node("kwok-node-0")], 3, state)
        assert store.objects_of(NAMESPACE) == []


class TestOrphanCleanup:
    """Namespaces whose node has disappeared."""

    def test_deleted_after_delay(self, store, content, clock) -> None:
        lifecycle = NamespaceLifecycle(store, content, clock)
        state = RuntimeState(budget=RateBudget(clock=clock))
        store.add(make_namespace("ns-gone", node="kwok-node-9"))
        store.add(make_namespace("ns-live", node="kwok-node-0", index=1))
        config = _config({"cleanupConfig": {"cleanupDelaySeconds": 60}})

        managed = lifecycle.list_managed("load")
        assert lifecycle.cleanup_orphans(config, managed, ["kwok-node-0"], state) == []
        assert state.orphaned_since == {"ns-gone": clock.now}

        clock.advance(61)
        managed = lifecycle.list_managed("load")
        assert lifecycle.cleanup_orphans(config, managed, ["kwok-node-0"], state) == ["ns-gone"]
        assert store.names_of(NAMESPACE) == ["ns-live"]
        assert state.orphaned_since == {}

    def test_returning_node_clears_record(self, store, content, clock) -> None:
        lifecycle = NamespaceLifecycle(store, content, clock)
        state = RuntimeState(budget=RateBudget(clock=clock))
        store.add(make_namespace("ns-a", node="kwok-node-1"))
        config = _config()

        lifecycle.cleanup_orphans(config, lifecycle.list_managed("load"), [], state)
        assert "ns-a" in state.orphaned_since
        lifecycle.cleanup_orphans(config, lifecycle.list_managed("load"), ["kwok-node-1"], state)
        assert state.orphaned_since == {}

    def test_unassociated_namespace_is_never_orphaned(self, store, content, clock) -> None:
        lifecycle = NamespaceLifecycle(store, content, clock)
        state = RuntimeState(budget=RateBudget(clock=clock))
        store.add(make_namespace("ns-a", node=""))
        lifecycle.cleanup_orphans(_config(), lifecycle.list_managed("load"), [], state)
        assert state.orphaned_since == {}


class TestCleanupAll:
    """Removal of every namespace managed by a config."""

    def test_removes_only_managed(self, store, content, clock) -> None:
        lifecycle = NamespaceLifecycle(store, content, clock)
        store.add(make_namespace("ns-a"))
        store.add(make_namespace("ns-b", index=1))
        store.add(make_namespace("other", config_name="someone-else"))

        assert lifecycle.cleanup_all("load") == 2
        assert store.names_of(NAMESPACE) == ["other"]

    def test_skips_terminating(self, store, content, clock) -> None:
        lifecycle = NamespaceLifecycle(store, content, clock)
        store.add(make_namespace("ns-a", phase="Terminating"))
        assert lifecycle.cleanup_all("load") == 0
        assert store.count_calls("delete") == 0

    def test_continues_past_failures_then_raises(self, store, content, clock) -> None:
        lifecycle = NamespaceLifecycle(store, content, clock)
        store.add(make_namespace("ns-a"))
        store.add(make_namespace("ns-b", index=1))
        store.fail("delete", "Namespace", StoreError("denied", status=403))

        with pytest.raises(StoreError):
            lifecycle.cleanup_all("load")
        assert store.names_of(NAMESPACE) == ["ns-a"]
