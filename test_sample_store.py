"""
Tests for the SQLite sample store and inverter registry
"""

from datetime import datetime, timedelta

import pytest
import pytz

from solarview.config import CostDefaultsConfig, SampleBoundsConfig
from solarview.database import init_schema
from solarview.errors import ConfigurationError, NotFoundError, ValidationError
from solarview.inverter_registry import InverterRegistry
from solarview.models import (AggregationWindow, CostSettings, DcChannel, InverterCreate, InverterStatus,
                              InverterUpdate, PollEvent, PowerSample)
from solarview.sample_store import SampleStore

UTC = pytz.UTC
T0 = UTC.localize(datetime(2024, 6, 1, 10, 0, 0))


def make_sample(ts, **kwargs):
    values = {"ac_power": 500.0, "ac_voltage": 230.0, "ac_current": 2.2, "yield_today": 1.0, "yield_total": 100.0}
    values.update(kwargs)
    return PowerSample(timestamp=ts, **values)


@pytest.fixture
def db_path(tmp_path):
    return init_schema(str(tmp_path / "test.db"))


@pytest.fixture
def registry(db_path):
    return InverterRegistry(db_path, cost_defaults=CostDefaultsConfig(price_per_kwh=0.2))


@pytest.fixture
def store(db_path):
    return SampleStore(db_path, bounds=SampleBoundsConfig())


@pytest.fixture
def inverter(registry):
    return registry.create("alice", InverterCreate(name="Roof East", gateway_url="http://10.0.0.5"))


class TestSampleAppend:
    """Ordering, bounds and ownership on write"""

    def test_append_fills_ids_and_truncates(self, store, inverter):
        stored = store.append(inverter.id, make_sample(T0 + timedelta(microseconds=400000)))
        assert stored.inverter_id == inverter.id
        assert stored.owner_id == "alice"
        assert stored.timestamp == T0
        assert store.latest(inverter.id) == stored

    def test_duplicate_second_rejected(self, store, inverter):
        store.append(inverter.id, make_sample(T0))
        with pytest.raises(ValidationError):
            store.append(inverter.id, make_sample(T0 + timedelta(milliseconds=300), ac_power=900.0))
        assert store.latest(inverter.id).ac_power == 500.0

    def test_older_sample_rejected(self, store, inverter):
        store.append(inverter.id, make_sample(T0))
        with pytest.raises(ValidationError):
            store.append(inverter.id, make_sample(T0 - timedelta(seconds=10)))

    def test_ordering_is_per_inverter(self, store, registry, inverter):
        other = registry.create("alice", InverterCreate(name="Roof West"))
        store.append(inverter.id, make_sample(T0 + timedelta(seconds=10)))
        store.append(other.id, make_sample(T0))

    @pytest.mark.parametrize("field,value", [
        ("ac_power", -1.0),
        ("ac_power", 1e9),
        ("ac_voltage", float("nan")),
        ("ac_current", float("inf")),
        ("temperature", 300.0),
        ("yield_today", -0.5),
    ])
    def test_implausible_values_rejected(self, store, inverter, field, value):
        with pytest.raises(ValidationError):
            store.append(inverter.id, make_sample(T0, **{field: value}))
        assert store.latest(inverter.id) is None

    def test_too_many_dc_channels(self, store, inverter):
        channels = [DcChannel(power=10, voltage=30, current=0.3)] * 5
        with pytest.raises(ValidationError):
            store.append(inverter.id, make_sample(T0, dc_channels=channels))

    def test_missing_timestamp(self, store, inverter):
        with pytest.raises(ValidationError):
            store.append(inverter.id, make_sample(None))

    def test_unknown_inverter(self, store):
        with pytest.raises(NotFoundError):
            store.append("missing", make_sample(T0))

    def test_dc_channels_round_trip(self, store, inverter):
        channels = [DcChannel(power=250.0, voltage=35.0, current=7.1), DcChannel(power=240.0, voltage=34.5, current=6.9)]
        store.append(inverter.id, make_sample(T0, dc_channels=channels, temperature=41.5))
        latest = store.latest(inverter.id)
        assert latest.dc_channels == channels
        assert latest.dc(3) == DcChannel()
        assert latest.temperature == 41.5


class TestAppendMany:
    """Bulk import reports rejects by index"""

    def test_mixed_batch(self, store, inverter):
        samples = [
            make_sample(T0),
            make_sample(T0),  # duplicate
            make_sample(T0 + timedelta(seconds=10), ac_power=-5),
            make_sample(T0 + timedelta(seconds=20)),
            make_sample(T0 + timedelta(seconds=5)),  # older than the newest accepted
        ]
        result = store.append_many(inverter.id, samples)
        assert result.accepted == 2
        assert [r["index"] for r in result.rejected] == [1, 2, 4]
        assert all(r["error"] == "validation" for r in result.rejected)

    def test_unknown_inverter(self, store):
        with pytest.raises(NotFoundError):
            store.append_many("missing", [make_sample(T0)])


class TestSampleQuery:
    """Windowed reads"""

    def test_half_open_window_ascending(self, store, inverter):
        for i in range(4):
            store.append(inverter.id, make_sample(T0 + timedelta(minutes=i)))
        window = AggregationWindow(start=T0 + timedelta(minutes=1), end=T0 + timedelta(minutes=3))
        result = store.query(window, inverter_id=inverter.id)
        assert [s.timestamp for s in result] == [T0 + timedelta(minutes=1), T0 + timedelta(minutes=2)]

    def test_owner_scope_and_inverter_filter(self, store, registry, inverter):
        other = registry.create("alice", InverterCreate(name="Carport"))
        foreign = registry.create("bob", InverterCreate(name="Bob's roof"))
        store.append(inverter.id, make_sample(T0))
        store.append(other.id, make_sample(T0))
        store.append(foreign.id, make_sample(T0))
        window = AggregationWindow(start=T0, end=T0 + timedelta(hours=1))

        assert {s.inverter_id for s in store.query(window, owner_id="alice")} == {inverter.id, other.id}
        assert [s.inverter_id for s in store.query(window, owner_id="alice", inverter_ids=[other.id])] == [other.id]
        assert store.query(window, owner_id="alice", inverter_ids=[]) == []

    def test_query_needs_one_selector(self, store):
        window = AggregationWindow(start=T0, end=T0 + timedelta(hours=1))
        with pytest.raises(ValidationError):
            store.query(window)
        with pytest.raises(ValidationError):
            store.query(window, inverter_id="a", owner_id="b")

    def test_yield_baselines_take_last_reading_in_range(self, store, registry, inverter):
        other = registry.create("alice", InverterCreate(name="Carport"))
        store.append(inverter.id, make_sample(T0 - timedelta(hours=11), yield_today=9.0))  # previous day
        store.append(inverter.id, make_sample(T0 - timedelta(hours=2), yield_today=3.0))
        store.append(inverter.id, make_sample(T0 - timedelta(minutes=5), yield_today=4.5))
        store.append(inverter.id, make_sample(T0, yield_today=5.0))
        store.append(other.id, make_sample(T0 + timedelta(minutes=1), yield_today=2.0))
        midnight = UTC.localize(datetime(2024, 6, 1))

        assert store.yield_baselines(midnight, T0, owner_id="alice") == {inverter.id: 4.5}
        assert store.yield_baselines(midnight, T0, inverter_id=other.id) == {}
        assert store.yield_baselines(midnight, T0, owner_id="alice", inverter_ids=[]) == {}

    def test_prune_before(self, store, inverter):
        store.append(inverter.id, make_sample(T0 - timedelta(days=400)))
        store.append(inverter.id, make_sample(T0))
        assert store.prune_before(T0 - timedelta(days=1)) == 1
        window = AggregationWindow(start=T0 - timedelta(days=500), end=T0 + timedelta(days=1))
        assert len(store.query(window, inverter_id=inverter.id)) == 1

    def test_poll_events_newest_first(self, store, inverter):
        store.record_poll_event(PollEvent(inverter.id, T0, ok=True))
        store.record_poll_event(PollEvent(inverter.id, T0 + timedelta(seconds=10), ok=False,
                                          consecutive_failures=1, error_kind="device_unreachable", message="timeout"))
        events = store.recent_poll_events(inverter.id)
        assert [e.ok for e in events] == [False, True]
        assert events[0].consecutive_failures == 1
        assert events[0].error_kind == "device_unreachable"


class TestInverterRegistry:
    """Owner-scoped inverter records and cost settings"""

    def test_create_defaults(self, inverter):
        assert inverter.status == InverterStatus.OFFLINE
        assert inverter.enabled is True
        assert inverter.last_seen is None

    def test_other_owner_sees_not_found(self, registry, inverter):
        with pytest.raises(NotFoundError):
            registry.get("bob", inverter.id)
        with pytest.raises(NotFoundError):
            registry.update("bob", inverter.id, InverterUpdate(name="stolen"))
        with pytest.raises(NotFoundError):
            registry.delete("bob", inverter.id)
        assert registry.get("alice", inverter.id).name == "Roof East"

    def test_update_partial(self, registry, inverter):
        updated = registry.update("alice", inverter.id, InverterUpdate(enabled=False))
        assert updated.enabled is False
        assert updated.name == "Roof East"

    @pytest.mark.parametrize("data", [
        {"name": "  "},
        {"name": "x", "max_power_w": 0},
        {"name": "x", "gateway_url": "ftp://10.0.0.5"},
    ])
    def test_invalid_create(self, registry, data):
        with pytest.raises(ValidationError):
            registry.create("alice", InverterCreate(**data))

    def test_status_filter_and_mark_seen(self, registry, inverter):
        registry.mark_seen(inverter.id, T0)
        online = registry.list_for_owner("alice", InverterStatus.ONLINE)
        assert [i.id for i in online] == [inverter.id]
        assert online[0].last_seen == T0
        assert registry.list_for_owner("alice", InverterStatus.OFFLINE) == []

    def test_list_enabled_needs_gateway(self, registry, inverter):
        registry.create("alice", InverterCreate(name="No gateway"))
        registry.create("bob", InverterCreate(name="Disabled", gateway_url="http://10.0.0.9", enabled=False))
        assert [i.id for i in registry.list_enabled()] == [inverter.id]

    def test_delete_cascades_samples(self, registry, store, inverter):
        store.append(inverter.id, make_sample(T0))
        registry.delete("alice", inverter.id)
        window = AggregationWindow(start=T0, end=T0 + timedelta(hours=1))
        assert store.query(window, owner_id="alice") == []

    def test_cost_settings_default_then_saved(self, registry):
        defaults = registry.get_cost_settings("alice")
        assert defaults.price_per_kwh == 0.2
        assert defaults.timezone == "UTC"
        saved = registry.set_cost_settings("alice", CostSettings(price_per_kwh=0.3, currency="eur", tax_rate=0.1))
        assert saved.currency == "EUR"
        assert registry.get_cost_settings("alice").price_per_kwh == 0.3
        assert registry.get_cost_settings("bob").price_per_kwh == 0.2

    @pytest.mark.parametrize("settings", [
        CostSettings(price_per_kwh=-1.0),
        CostSettings(price_per_kwh=0.25, tax_rate=1.5),
        CostSettings(price_per_kwh=0.25, currency="DOLLARS"),
        CostSettings(price_per_kwh=0.25, timezone="Not/AZone"),
    ])
    def test_invalid_cost_settings_keep_previous(self, registry, settings):
        registry.set_cost_settings("alice", CostSettings(price_per_kwh=0.3))
        with pytest.raises(ConfigurationError):
            registry.set_cost_settings("alice", settings)
        assert registry.get_cost_settings("alice").price_per_kwh == 0.3
