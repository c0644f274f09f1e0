"""
Live Poller: one asyncio task per enabled inverter.

Each cycle reads the gateway, stores the reading as a sample stamped with
the poll time and updates the inverter's status. Consecutive gateway
failures are counted inside the inverter's own task; the inverter is only
marked offline once the count reaches ``offline_after_failures``.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from solarview.config import PollingConfig
from solarview.errors import DeviceUnreachable, NotFoundError, ValidationError
from solarview.gateway_client import GatewayClient
from solarview.inverter_registry import InverterRegistry
from solarview.models import Inverter, InverterStatus, PollEvent
from solarview.sample_store import SampleStore
from solarview.timezone_utils import now_utc, truncate_to_second

log = logging.getLogger(__name__)


class LivePoller:
    def __init__(self, registry: InverterRegistry, store: SampleStore, gateway: GatewayClient,
                 config: Optional[PollingConfig] = None, clock: Callable[[], datetime] = now_utc):
        self.registry = registry
        self.store = store
        self.gateway = gateway
        self.config = config or PollingConfig()
        self.clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}
        self._urls: Dict[str, str] = {}

    @property
    def running(self) -> Dict[str, str]:
        """Inverter id -> gateway url for every live polling task."""
        return {inv_id: self._urls[inv_id] for inv_id, t in self._tasks.items() if not t.done()}

    async def poll_once(self, inverter: Inverter, consecutive_failures: int = 0) -> PollEvent:
        """
        Run one poll cycle for ``inverter``.

        Args:
            inverter: the inverter to read
            consecutive_failures: failure count carried over from earlier cycles

        Returns:
            The recorded PollEvent; its ``consecutive_failures`` is the count
            to carry into the next cycle.
        """
        polled_at = truncate_to_second(self.clock())
        try:
            reading = await self.gateway.fetch_live(inverter.gateway_url)
        except DeviceUnreachable as e:
            failures = consecutive_failures + 1
            threshold = self.config.offline_after_failures
            if failures == threshold:
                log.warning(f"Inverter {inverter.id} ({inverter.name}) unreachable {failures} times in a row, marking offline")
            else:
                log.warning(f"Poll failed for inverter {inverter.id} ({failures}/{threshold}): {e.message}")
            if failures >= threshold:
                await asyncio.to_thread(self.registry.set_status, inverter.id, InverterStatus.OFFLINE)
            event = PollEvent(inverter.id, polled_at, ok=False, consecutive_failures=failures,
                              error_kind=e.kind, message=e.message)
            await asyncio.to_thread(self.store.record_poll_event, event)
            return event

        sample = reading.to_sample(polled_at, self.config.dc_channels)
        try:
            await asyncio.to_thread(self.store.append, inverter.id, sample)
        except ValidationError as e:
            # the gateway answered, so this is not a device failure
            log.warning(f"Rejected sample from inverter {inverter.id}: {e.message}")
            await asyncio.to_thread(self.registry.mark_seen, inverter.id, polled_at)
            event = PollEvent(inverter.id, polled_at, ok=False, consecutive_failures=0,
                              error_kind=e.kind, message=e.message)
            await asyncio.to_thread(self.store.record_poll_event, event)
            return event

        await asyncio.to_thread(self.registry.mark_seen, inverter.id, polled_at)
        if consecutive_failures >= self.config.offline_after_failures:
            log.info(f"Inverter {inverter.id} ({inverter.name}) is reachable again")
        event = PollEvent(inverter.id, polled_at, ok=True, consecutive_failures=0)
        await asyncio.to_thread(self.store.record_poll_event, event)
        return event

    async def _run(self, inverter: Inverter) -> None:
        failures = 0
        log.info(f"Polling inverter {inverter.id} ({inverter.name}) every {self.config.interval_secs}s at {inverter.gateway_url}")
        while True:
            try:
                event = await self.poll_once(inverter, failures)
                failures = event.consecutive_failures
            except asyncio.CancelledError:
                raise
            except NotFoundError:
                log.info(f"Inverter {inverter.id} no longer exists, stopping its poller")
                return
            except Exception as e:
                log.error(f"Unexpected error polling inverter {inverter.id}: {e}", exc_info=True)
            await asyncio.sleep(self.config.interval_secs)

    def _start_task(self, inverter: Inverter) -> None:
        self._tasks[inverter.id] = asyncio.create_task(self._run(inverter), name=f"poll-{inverter.id}")
        self._urls[inverter.id] = inverter.gateway_url

    async def _cancel_task(self, inverter_id: str) -> None:
        task = self._tasks.pop(inverter_id, None)
        self._urls.pop(inverter_id, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def start(self) -> None:
        await self.refresh()

    async def refresh(self) -> None:
        """Match running tasks to the registry's enabled inverters."""
        enabled = {inv.id: inv for inv in await asyncio.to_thread(self.registry.list_enabled)}
        for inverter_id in list(self._tasks):
            task = self._tasks[inverter_id]
            inv = enabled.get(inverter_id)
            if inv is None or task.done() or inv.gateway_url != self._urls.get(inverter_id):
                await self._cancel_task(inverter_id)
        for inverter_id, inv in enabled.items():
            if inverter_id not in self._tasks:
                self._start_task(inv)
        log.debug(f"Poller running for {len(self._tasks)} inverter(s)")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._urls.clear()
        log.info("Live poller stopped")
