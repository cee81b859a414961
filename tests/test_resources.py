"""Tests for per-namespace object convergence, churn and events."""

from __future__ import annotations

import pytest

from kwok_load_generator.budget import RateBudget
from kwok_load_generator.entities import (
    LABEL_MANAGED_BY,
    LABEL_RESOURCE_TYPE,
    EventTypeConfig,
    RuntimeState,
    ScaleLoadConfig,
)
from kwok_load_generator.resources import (
    ANNOTATION_CHURN_ITERATION,
    ANNOTATION_LAST_CHURN,
    MANAGED_KINDS,
    MAX_EVENTS_PER_TICK,
    ResourceChurnEngine,
    parse_probability,
    position_of,
    selected_by_interval,
)
from kwok_load_generator.store import (
    BUILD_CONFIG,
    CONFIG_MAP,
    EVENT,
    IMAGE_STREAM,
    ROUTE,
    SECRET,
    SERVICE,
    StoreError,
)
from kwok_load_generator.synthetic import SyntheticContent

from tests.fakes import FakeObjectStore, FixedRandom, FrozenClock, make_config, make_namespace

ONLY_CONFIG_MAPS = {
    "resourceChurn": {
        "secrets": {"enabled": False},
        "routes": {"enabled": False},
        "imageStreams": {"enabled": False},
        "buildConfigs": {"enabled": False},
        "events": {"enabled": False},
    }
}


def _config(spec=None) -> ScaleLoadConfig:
    return ScaleLoadConfig.from_object(make_config("load", spec=spec))


def _only(kind: str, settings: dict) -> dict:
    churn = {key: {"enabled": False} for key in ("configMaps", "secrets", "routes", "imageStreams", "buildConfigs")}
    churn[kind] = settings
    churn["events"] = {"enabled": False}
    return {"resourceChurn": churn}


@pytest.fixture
def state(clock: FrozenClock) -> RuntimeState:
    return RuntimeState(budget=RateBudget(clock=clock))


@pytest.fixture
def engine(store: FakeObjectStore, calm_content: SyntheticContent, clock: FrozenClock) -> ResourceChurnEngine:
    return ResourceChurnEngine(store, calm_content, clock)


class TestHelpers:
    """Gate and parsing helpers."""

    @pytest.mark.parametrize(
        ("index", "interval", "expected"),
        [(0, 10, True), (7, 10, False), (20, 10, True), (3, 1, True), (5, 0, True), (None, 10, True)],
    )
    def test_selected_by_interval(self, index, interval, expected) -> None:
        assert selected_by_interval(index, interval) is expected

    def test_parse_probability(self) -> None:
        assert parse_probability("0.25") == 0.25
        assert parse_probability("1") == 1.0
        assert parse_probability("1.5") == 0.1
        assert parse_probability("often") == 0.1

    def test_position_of(self) -> None:
        assert position_of("load-config-12") == 12
        assert position_of("load-config-x") is None


class TestConvergeKinds:
    """Positional convergence of each kind."""

    def test_creates_every_enabled_kind(self, engine, store, state) -> None:
        spec = {"resourceChurn": {"configMaps": {"count": 2}, "events": {"enabled": False}}}
        counts = engine.manage_namespace(_config(spec), make_namespace("ns-a"), state, 1 / 60)

        assert counts == {"configMaps": 2, "secrets": 1, "routes": 1, "imageStreams": 1, "buildConfigs": 1}
        assert store.names_of(CONFIG_MAP, "ns-a") == ["load-config-0", "load-config-1"]
        assert store.names_of(SECRET, "ns-a") == ["load-secret-0"]
        assert store.names_of(ROUTE, "ns-a") == ["load-route-0"]
        assert store.names_of(SERVICE, "ns-a") == ["load-service-0"]
        assert store.names_of(IMAGE_STREAM, "ns-a") == ["load-image-0"]
        assert store.names_of(BUILD_CONFIG, "ns-a") == ["load-build-0"]
        assert state.namespaces["ns-a"].resource_counters["configMaps"] == 2

    def test_objects_carry_identity_labels(self, engine, store, state) -> None:
        engine.manage_namespace(_config(ONLY_CONFIG_MAPS), make_namespace("ns-a"), state, 0)
        labels = store.lookup(CONFIG_MAP, "load-config-0", "ns-a")["metadata"]["labels"]
        assert labels[LABEL_MANAGED_BY] == "load"
        assert labels[LABEL_RESOURCE_TYPE] == "configmap"

    def test_second_pass_is_idempotent(self, engine, store, state) -> None:
        config = _config({"resourceChurn": {"configMaps": {"count": 3}, "events": {"enabled": False}}})
        engine.manage_namespace(config, make_namespace("ns-a"), state, 0)
        writes = store.count_calls("create")

        engine.manage_namespace(config, make_namespace("ns-a"), state, 0)

        assert store.count_calls("create") == writes
        assert store.count_calls("update") == 0
        assert store.count_calls("delete") == 0

    def test_namespace_interval(self, engine, store, state) -> None:
        config = _config(_only("configMaps", {"count": 1, "namespaceInterval": 10}))
        for index in range(30):
            engine.manage_namespace(config, make_namespace(f"ns-{index}", index=index), state, 0)

        holders = sorted(obj["metadata"]["namespace"] for obj in store.objects_of(CONFIG_MAP))
        assert holders == ["ns-0", "ns-10", "ns-20"]

    def test_scale_down_removes_trailing(self, engine, store, state) -> None:
        engine.manage_namespace(_config(_only("configMaps", {"count": 4})), make_namespace("ns-a"), state, 0)
        engine.manage_namespace(_config(_only("configMaps", {"count": 2})), make_namespace("ns-a"), state, 0)
        assert store.names_of(CONFIG_MAP, "ns-a") == ["load-config-0", "load-config-1"]

    def test_scale_uses_numeric_positions(self, engine, store, state) -> None:
        engine.manage_namespace(_config(_only("configMaps", {"count": 12})), make_namespace("ns-a"), state, 0)
        # List in name order, as the API server does.
        store.objects = dict(sorted(store.objects.items(), key=lambda item: item[0][3]))

        engine.manage_namespace(_config(_only("configMaps", {"count": 5})), make_namespace("ns-a"), state, 0)
        assert sorted(store.names_of(CONFIG_MAP, "ns-a")) == [f"load-config-{index}" for index in range(5)]

        counts = engine.manage_namespace(_config(_only("configMaps", {"count": 12})), make_namespace("ns-a"), state, 0)
        assert counts == {"configMaps": 12}
        assert len(store.names_of(CONFIG_MAP, "ns-a")) == 12

    def test_gap_is_filled_without_touching_survivors(self, engine, store, state) -> None:
        engine.manage_namespace(_config(_only("configMaps", {"count": 3})), make_namespace("ns-a"), state, 0)
        store.objects.pop(("v1", "ConfigMap", "ns-a", "load-config-1"))
        creates = store.count_calls("create", "ConfigMap")

        engine.manage_namespace(_config(_only("configMaps", {"count": 3})), make_namespace("ns-a"), state, 0)

        assert store.count_calls("create", "ConfigMap") == creates + 1
        assert store.count_calls("delete", "ConfigMap") == 0
        assert sorted(store.names_of(CONFIG_MAP, "ns-a")) == ["load-config-0", "load-config-1", "load-config-2"]

    def test_route_scale_down_removes_service(self, engine, store, state) -> None:
        engine.manage_namespace(_config(_only("routes", {"count": 2})), make_namespace("ns-a"), state, 0)
        engine.manage_namespace(_config(_only("routes", {"count": 1})), make_namespace("ns-a"), state, 0)
        assert store.names_of(ROUTE, "ns-a") == ["load-route-0"]
        assert store.names_of(SERVICE, "ns-a") == ["load-service-0"]

    def test_existing_service_is_reused(self, engine, store, state) -> None:
        store.add(
            {
                "apiVersion": "v1",
                "kind": "Service",
                "metadata": {"name": "load-service-0", "namespace": "ns-a"},
            }
        )
        counts = engine.manage_namespace(_config(_only("routes", {"count": 1})), make_namespace("ns-a"), state, 0)
        assert counts == {"routes": 1}
        assert store.names_of(ROUTE, "ns-a") == ["load-route-0"]

    def test_missing_service_on_delete_is_fine(self, engine, store, state) -> None:
        engine.manage_namespace(_config(_only("routes", {"count": 1})), make_namespace("ns-a"), state, 0)
        store.objects.pop(("v1", "Service", "ns-a", "load-service-0"))
        counts = engine.manage_namespace(_config(_only("routes", {"count": 0})), make_namespace("ns-a"), state, 0)
        assert counts == {"routes": 0}
        assert store.names_of(ROUTE, "ns-a") == []

    def test_failing_kind_does_not_block_others(self, engine, store, state) -> None:
        store.fail("list", "ConfigMap", StoreError("unavailable", status=503))
        spec = {"resourceChurn": {"events": {"enabled": False}}}
        counts = engine.manage_namespace(_config(spec), make_namespace("ns-a"), state, 0)

        assert "configMaps" not in counts
        assert counts["secrets"] == 1
        assert store.names_of(SECRET, "ns-a") == ["load-secret-0"]

    def test_secret_data_is_base64(self, engine, store, state) -> None:
        engine.manage_namespace(_config(_only("secrets", {"count": 1})), make_namespace("ns-a"), state, 0)
        secret = store.lookup(SECRET, "load-secret-0", "ns-a")
        assert set(secret["data"]) == {"username", "password", "api-key", "config.yaml"}
        assert secret["data"]["username"] == "dXNlci0w"


class TestChurn:
    """Probabilistic updates and delete-recreate."""

    def _seed(self, store: FakeObjectStore, state: RuntimeState, clock: FrozenClock, count: int) -> None:
        seeding = ResourceChurnEngine(store, SyntheticContent(FixedRandom(0.99)), clock)
        seeding.manage_namespace(_config(_only("configMaps", {"count": count})), make_namespace("ns-a"), state, 0)

    def test_selected_objects_get_annotated(self, store, state, clock) -> None:
        self._seed(store, state, clock, 3)
        engine = ResourceChurnEngine(store, SyntheticContent(FixedRandom(0.05)), clock)
        config = _config(_only("configMaps", {"count": 3, "deleteRecreateChance": "0"}))

        engine.manage_namespace(config, make_namespace("ns-a"), state, 0)

        assert store.count_calls("update", "ConfigMap") == 3
        annotations = store.lookup(CONFIG_MAP, "load-config-2", "ns-a")["metadata"]["annotations"]
        assert annotations[ANNOTATION_LAST_CHURN] == "2024-01-01T12:00:00Z"
        assert ANNOTATION_CHURN_ITERATION in annotations

    def test_delete_recreate(self, store, state, clock) -> None:
        self._seed(store, state, clock, 2)
        engine = ResourceChurnEngine(store, SyntheticContent(FixedRandom(0.05)), clock)
        config = _config(_only("configMaps", {"count": 2, "deleteRecreateChance": "1"}))

        engine.manage_namespace(config, make_namespace("ns-a"), state, 0)

        assert store.count_calls("update", "ConfigMap") == 0
        assert store.count_calls("delete", "ConfigMap") == 2
        assert sorted(store.names_of(CONFIG_MAP, "ns-a")) == ["load-config-0", "load-config-1"]

    def test_failed_recreate_is_refilled_next_pass(self, store, state, clock) -> None:
        self._seed(store, state, clock, 3)
        store.fail("create", "ConfigMap", StoreError("throttled", status=429))
        churning = ResourceChurnEngine(store, SyntheticContent(FixedRandom(0.05)), clock)
        config = _config(_only("configMaps", {"count": 3, "deleteRecreateChance": "1"}))

        churning.manage_namespace(config, make_namespace("ns-a"), state, 0)
        assert sorted(store.names_of(CONFIG_MAP, "ns-a")) == ["load-config-1", "load-config-2"]

        calm = ResourceChurnEngine(store, SyntheticContent(FixedRandom(0.99)), clock)
        for _ in range(3):
            counts = calm.manage_namespace(config, make_namespace("ns-a"), state, 0)
            assert counts == {"configMaps": 3}

        assert sorted(store.names_of(CONFIG_MAP, "ns-a")) == ["load-config-0", "load-config-1", "load-config-2"]

    def test_update_failures_are_absorbed(self, store, state, clock) -> None:
        self._seed(store, state, clock, 2)
        store.fail("update", "ConfigMap", StoreError("timeout", status=504))
        engine = ResourceChurnEngine(store, SyntheticContent(FixedRandom(0.05)), clock)
        config = _config(_only("configMaps", {"count": 2, "deleteRecreateChance": "0"}))

        counts = engine.manage_namespace(config, make_namespace("ns-a"), state, 0)

        assert counts == {"configMaps": 2}
        assert store.count_calls("update", "ConfigMap") == 2


class TestEvents:
    """Event generation rate and content."""

    def test_rate_is_capped(self, engine, store) -> None:
        result = engine.generate_events(_config(), "ns-a", hours_since_last=1.0)
        assert result.created == MAX_EVENTS_PER_TICK
        assert len(store.objects_of(EVENT, "ns-a")) == MAX_EVENTS_PER_TICK

    def test_first_tick_rate(self, engine, store) -> None:
        result = engine.generate_events(_config(), "ns-a", hours_since_last=1 / 60)
        assert result.created == 0

    def test_rate_scales_with_elapsed_time(self, engine, store) -> None:
        spec = {"resourceChurn": {"events": {"eventsPerNodePerHour": 8}}}
        result = engine.generate_events(_config(spec), "ns-a", hours_since_last=0.5)
        assert result.created == 4

    def test_failures_are_counted_not_retried(self, engine, store) -> None:
        store.fail("create", "Event", StoreError("throttled", status=429), times=3)
        result = engine.generate_events(_config(), "ns-a", hours_since_last=1.0)
        assert result.failed == 3
        assert result.created == MAX_EVENTS_PER_TICK - 3
        assert store.count_calls("create", "Event") == MAX_EVENTS_PER_TICK

    def test_custom_event_type_and_message(self, engine, store) -> None:
        spec = {
            "resourceChurn": {
                "events": {
                    "eventsPerNodePerHour": 4,
                    "eventTypes": [
                        {"type": "Warning", "reason": "BackOff", "message": "Back-off restarting %s", "weight": 1}
                    ]
                }
            }
        }
        engine.generate_events(_config(spec), "ns-a", hours_since_last=0.5)
        events = store.objects_of(EVENT, "ns-a")
        assert len(events) == 2
        first = next(event for event in events if event["metadata"]["name"].startswith("load-event-0-"))
        assert first["reason"] == "BackOff"
        assert first["type"] == "Warning"
        assert first["message"] == "Back-off restarting container-0"
        assert first["involvedObject"]["name"] == "load-pod-0"

    def test_weighted_pick_skips_zero_weight(self, engine) -> None:
        types = [EventTypeConfig("Normal", "Never", "", 0), EventTypeConfig("Normal", "Always", "", 5)]
        assert all(engine.pick_event_type(types).reason == "Always" for _ in range(10))

    def test_all_zero_weights_use_first(self, engine) -> None:
        types = [EventTypeConfig("Normal", "First", "", 0), EventTypeConfig("Normal", "Second", "", 0)]
        assert engine.pick_event_type(types).reason == "First"

    def test_event_names_embed_timestamp(self, engine, store, clock) -> None:
        engine.generate_events(_config(), "ns-a", hours_since_last=1.0)
        suffix = str(int(clock.now.timestamp()))
        assert all(name.endswith(suffix) for name in store.names_of(EVENT, "ns-a"))


def test_kind_table_is_positional() -> None:
    assert [kind.object_name(3) for kind in MANAGED_KINDS] == [
        "load-config-3",
        "load-secret-3",
        "load-route-3",
        "load-image-3",
        "load-build-3",
    ]
