"""
Tests for the live poller: sample capture and offline detection
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest
import pytz

from solarview.config import PollingConfig
from solarview.database import init_schema
from solarview.errors import DeviceUnreachable
from solarview.gateway_client import GatewayClient
from solarview.inverter_registry import InverterRegistry
from solarview.live_poller import LivePoller
from solarview.models import InverterCreate, InverterStatus, InverterUpdate, LiveReading
from solarview.sample_store import SampleStore

UTC = pytz.UTC


def reading(ac_power=820.0, yield_today=3.2):
    return LiveReading.model_validate({
        "acPower": ac_power,
        "acVoltage": 230.1,
        "acCurrent": 3.56,
        "dcChannels": [{"power": 430.0, "voltage": 36.2, "current": 11.9}],
        "temperature": 38.5,
        "yieldToday": yield_today,
        "yieldTotal": 1520.4,
    })


class Clock:
    """Manually advanced clock"""

    def __init__(self):
        self.now = UTC.localize(datetime(2024, 6, 1, 12, 0, 0))

    def __call__(self):
        return self.now

    def advance(self, seconds=10):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def setup(tmp_path):
    db = init_schema(str(tmp_path / "poll.db"))
    registry = InverterRegistry(db)
    store = SampleStore(db)
    gateway = Mock(spec=GatewayClient)
    gateway.fetch_live = AsyncMock(return_value=reading())
    clock = Clock()
    poller = LivePoller(registry, store, gateway, PollingConfig(interval_secs=60, offline_after_failures=3), clock=clock)
    inverter = registry.create("alice", InverterCreate(name="Roof", gateway_url="http://192.168.1.50"))
    return poller, registry, store, gateway, clock, inverter


class TestPollOnce:
    """One poll cycle"""

    @pytest.mark.asyncio
    async def test_success_stores_sample_and_marks_online(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        event = await poller.poll_once(inverter)

        assert event.ok is True
        assert event.consecutive_failures == 0
        gateway.fetch_live.assert_awaited_once_with("http://192.168.1.50")
        stored = store.latest(inverter.id)
        assert stored.timestamp == clock.now
        assert stored.ac_power == 820.0
        assert len(stored.dc_channels) == 1
        updated = registry.get("alice", inverter.id)
        assert updated.status == InverterStatus.ONLINE
        assert updated.last_seen == clock.now

    @pytest.mark.asyncio
    async def test_single_failure_keeps_status(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        await poller.poll_once(inverter)
        clock.advance()
        gateway.fetch_live.side_effect = DeviceUnreachable("timed out")

        event = await poller.poll_once(inverter, consecutive_failures=0)
        assert event.ok is False
        assert event.consecutive_failures == 1
        assert event.error_kind == "device_unreachable"
        assert registry.get("alice", inverter.id).status == InverterStatus.ONLINE

    @pytest.mark.asyncio
    async def test_offline_after_three_consecutive_failures(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        await poller.poll_once(inverter)
        gateway.fetch_live.side_effect = DeviceUnreachable("connection refused")

        failures = 0
        statuses = []
        for _ in range(3):
            clock.advance()
            event = await poller.poll_once(inverter, failures)
            failures = event.consecutive_failures
            statuses.append(registry.get("alice", inverter.id).status)

        assert failures == 3
        assert statuses == [InverterStatus.ONLINE, InverterStatus.ONLINE, InverterStatus.OFFLINE]

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        gateway.fetch_live.side_effect = DeviceUnreachable("timed out")
        event = await poller.poll_once(inverter, 2)
        assert event.consecutive_failures == 3
        assert registry.get("alice", inverter.id).status == InverterStatus.OFFLINE

        gateway.fetch_live.side_effect = None
        clock.advance()
        event = await poller.poll_once(inverter, event.consecutive_failures)
        assert event.ok is True
        assert event.consecutive_failures == 0
        assert registry.get("alice", inverter.id).status == InverterStatus.ONLINE

    @pytest.mark.asyncio
    async def test_rejected_sample_is_not_a_device_failure(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        await poller.poll_once(inverter)
        # same second again: the store refuses the duplicate
        event = await poller.poll_once(inverter, consecutive_failures=2)

        assert event.ok is False
        assert event.error_kind == "validation"
        assert event.consecutive_failures == 0
        assert registry.get("alice", inverter.id).status == InverterStatus.ONLINE

    @pytest.mark.asyncio
    async def test_events_recorded(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        await poller.poll_once(inverter)
        clock.advance()
        gateway.fetch_live.side_effect = DeviceUnreachable("timed out")
        await poller.poll_once(inverter)
        events = store.recent_poll_events(inverter.id)
        assert [e.ok for e in events] == [False, True]


class TestPollerTasks:
    """Per-inverter task management"""

    @pytest.mark.asyncio
    async def test_refresh_follows_registry(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        registry.create("alice", InverterCreate(name="No gateway"))
        await poller.start()
        try:
            assert set(poller.running) == {inverter.id}
            for _ in range(20):
                if gateway.fetch_live.await_count:
                    break
                await asyncio.sleep(0.01)
            assert gateway.fetch_live.await_count >= 1

            registry.update("alice", inverter.id, InverterUpdate(enabled=False))
            await poller.refresh()
            assert poller.running == {}

            registry.update("alice", inverter.id, InverterUpdate(enabled=True, gateway_url="http://192.168.1.51"))
            await poller.refresh()
            assert poller.running == {inverter.id: "http://192.168.1.51"}
        finally:
            await poller.stop()
        assert poller.running == {}

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_kill_task(self, setup):
        poller, registry, store, gateway, clock, inverter = setup
        gateway.fetch_live.side_effect = RuntimeError("bug")
        await poller.start()
        try:
            for _ in range(20):
                if gateway.fetch_live.await_count:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0)
            assert inverter.id in poller.running
        finally:
            await poller.stop()

    @pytest.mark.asyncio
    async def test_hung_gateway_does_not_block_other_inverters(self, setup):
        _, registry, store, gateway, clock, inverter = setup
        stuck = registry.create("alice", InverterCreate(name="Carport", gateway_url="http://192.168.1.60"))
        never = asyncio.Event()

        async def fetch(url):
            if url == stuck.gateway_url:
                await never.wait()
            return reading()

        def ticking():
            clock.advance(1)
            return clock.now

        gateway.fetch_live = AsyncMock(side_effect=fetch)
        poller = LivePoller(registry, store, gateway, PollingConfig(interval_secs=0.5), clock=ticking)
        await poller.start()
        try:
            for _ in range(300):
                if len(store.recent_poll_events(inverter.id)) >= 2:
                    break
                await asyncio.sleep(0.01)
            assert set(poller.running) == {inverter.id, stuck.id}
        finally:
            await poller.stop()

        events = store.recent_poll_events(inverter.id)
        assert len(events) >= 2
        assert all(e.ok for e in events)
        assert store.latest(inverter.id) is not None
        assert registry.get("alice", inverter.id).status == InverterStatus.ONLINE
        assert store.recent_poll_events(stuck.id) == []
        assert store.latest(stuck.id) is None
