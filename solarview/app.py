import asyncio, logging, sys
from dataclasses import asdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import pydantic

from solarview.aggregator import aggregate, cut_day_start, daily_production, make_window
from solarview.alert_rules import evaluate as evaluate_alerts
from solarview.config import EngineConfig
from solarview.cost_engine import costs, environmental_impact, monthly_savings, savings_summary
from solarview.database import init_schema
from solarview.errors import NotFoundError, ValidationError
from solarview.export_pipeline import export_stages
from solarview.gateway_client import GatewayClient, validate_power_limit
from solarview.inverter_registry import InverterRegistry
from solarview.job_coordinator import JobCoordinator, JobSnapshot
from solarview.live_poller import LivePoller
from solarview.models import (AggregationWindow, Artifact, CostSettings, ExportRequest, ImportResult, Inverter,
                              InverterCreate, InverterStatus, InverterUpdate, JobKind, LiveReading, PollEvent,
                              PowerSample, ReportRequest)
from solarview.report_pipeline import period_label, report_stages
from solarview.sample_store import SampleStore
from solarview.timezone_utils import (ensure_utc, format_utc_iso, local_date, local_midnight, now_utc,
                                      parse_iso_utc, resolve_timezone)

log = logging.getLogger(__name__)


def inverter_to_dict(inv: Inverter) -> Dict[str, Any]:
    data = inv.model_dump(mode="json")
    for key in ("last_seen", "created_at", "updated_at"):
        value = getattr(inv, key)
        data[key] = format_utc_iso(value) if value else None
    return data


def sample_to_dict(sample: PowerSample) -> Dict[str, Any]:
    return {
        "timestamp": format_utc_iso(sample.timestamp) if sample.timestamp else None,
        "inverterId": sample.inverter_id,
        "acPower": sample.ac_power,
        "acVoltage": sample.ac_voltage,
        "acCurrent": sample.ac_current,
        "dcChannels": [ch.model_dump() for ch in sample.dc_channels],
        "temperature": sample.temperature,
        "yieldToday": sample.yield_today,
        "yieldTotal": sample.yield_total,
    }


def poll_event_to_dict(event: PollEvent) -> Dict[str, Any]:
    data = asdict(event)
    data["timestamp"] = format_utc_iso(event.timestamp)
    return data


class SolarViewApp:
    """
    Wires storage, polling and the job pipelines together and exposes the
    owner-scoped query surface used by the HTTP API.

    Polling and retention run on the loop that calls ``run()``. Job tasks run
    on whichever loop starts them (the API server's loop in production).
    """
    def __init__(self, cfg: EngineConfig, configure_logging: bool = True):
        self.cfg = cfg
        if configure_logging:
            self._configure_logging()
        self.db_path = init_schema(cfg.database.path)
        busy = cfg.database.busy_timeout_ms
        self.registry = InverterRegistry(self.db_path, cost_defaults=cfg.cost_defaults,
                                         default_timezone=cfg.timezone, busy_timeout_ms=busy)
        self.store = SampleStore(self.db_path, bounds=cfg.bounds, busy_timeout_ms=busy)
        self.gateway = GatewayClient(timeout_ms=cfg.polling.timeout_ms)
        self.poller = LivePoller(self.registry, self.store, self.gateway, cfg.polling)
        self.jobs = JobCoordinator(retain_per_kind=cfg.jobs.retain_per_kind)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._retention_task: Optional[asyncio.Task] = None

    def _configure_logging(self):
        """Configure logging based on config settings."""
        log_config = self.cfg.logging
        root_logger = logging.getLogger()
        log_level = getattr(logging, log_config.level.upper())
        root_logger.setLevel(log_level)

        if not root_logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_level)
            console_handler.setFormatter(logging.Formatter(log_config.format))
            root_logger.addHandler(console_handler)

        logging.getLogger("solarview").setLevel(log_level)
        # third-party chatter (font scans, per-request access lines)
        for name in log_config.quiet_modules:
            logging.getLogger(name).setLevel(logging.WARNING)
        log.info(f"Logging configured - Level: {log_config.level}")

    # --- lifecycle ---

    async def run(self):
        """Start polling and retention; returns when cancelled."""
        self._loop = asyncio.get_running_loop()
        log.info(f"Starting SolarView engine (db: {self.db_path}, timezone: {self.cfg.timezone})")
        self._retention_task = asyncio.create_task(self._retention_loop())
        await self.poller.start()
        log.info(f"Polling interval: {self.cfg.polling.interval_secs} seconds")
        try:
            while True:
                # picks up inverters added, edited or removed through the API
                await asyncio.sleep(max(30.0, self.cfg.polling.interval_secs * 3))
                try:
                    await self.poller.refresh()
                except Exception as e:
                    log.error(f"Error refreshing poller: {e}", exc_info=True)
        finally:
            await self.stop()

    def request_refresh(self) -> None:
        """Ask the polling loop to reconcile with the registry now (safe from any thread)."""
        if self._loop is None or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.poller.refresh(), self._loop)

    async def _retention_loop(self):
        retention = self.cfg.retention
        while True:
            try:
                await self.prune_samples()
            except Exception as e:
                log.error(f"Error pruning old samples: {e}", exc_info=True)
            await asyncio.sleep(retention.prune_interval_minutes * 60)

    async def prune_samples(self) -> int:
        cutoff = now_utc() - timedelta(days=self.cfg.retention.sample_days)
        return await asyncio.to_thread(self.store.prune_before, cutoff)

    async def stop(self):
        if self._retention_task is not None:
            self._retention_task.cancel()
            await asyncio.gather(self._retention_task, return_exceptions=True)
            self._retention_task = None
        await self.poller.stop()
        await self._stop_jobs()
        log.info("Application shutdown complete")

    async def _stop_jobs(self, timeout: float = 5.0):
        """Cancel running jobs on the loop that owns them (the API loop in production)."""
        loop = self.jobs.loop
        if loop is None or loop.is_closed():
            return
        if loop is asyncio.get_running_loop():
            await self.jobs.shutdown()
            return
        if not loop.is_running():
            # the API shutdown hook already cancelled them
            return
        future = asyncio.run_coroutine_threadsafe(self.jobs.shutdown(), loop)
        try:
            await asyncio.wait_for(asyncio.wrap_future(future), timeout)
        except asyncio.TimeoutError:
            log.warning(f"Running jobs did not stop within {timeout} seconds")

    # --- inverters ---

    def list_inverters(self, owner_id: str, status: Optional[str] = None) -> List[Inverter]:
        if status is not None:
            try:
                status = InverterStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status filter: {status!r} (expected online or offline)")
        return self.registry.list_for_owner(owner_id, status)

    def create_inverter(self, owner_id: str, data: InverterCreate) -> Inverter:
        inv = self.registry.create(owner_id, data)
        self.request_refresh()
        return inv

    def get_inverter(self, owner_id: str, inverter_id: str) -> Inverter:
        return self.registry.get(owner_id, inverter_id)

    def update_inverter(self, owner_id: str, inverter_id: str, changes: InverterUpdate) -> Inverter:
        inv = self.registry.update(owner_id, inverter_id, changes)
        self.request_refresh()
        return inv

    def delete_inverter(self, owner_id: str, inverter_id: str) -> None:
        self.registry.delete(owner_id, inverter_id)
        self.request_refresh()

    async def live(self, owner_id: str, inverter_id: str, refresh: bool = False) -> Dict[str, Any]:
        """
        Latest reading for one inverter.

        By default this is the newest stored sample (kept fresh by the
        poller). ``refresh=True`` reads the gateway directly and raises
        DeviceUnreachable if it does not answer.
        """
        inv = self.registry.get(owner_id, inverter_id)
        if refresh:
            if not inv.gateway_url:
                raise ValidationError(f"Inverter {inverter_id} has no gateway address")
            reading = await self.gateway.fetch_live(inv.gateway_url)
            sample = reading.to_sample(now_utc().replace(microsecond=0), self.cfg.polling.dc_channels)
            sample = sample.model_copy(update={"inverter_id": inv.id, "owner_id": owner_id})
            source = "gateway"
        else:
            sample = await asyncio.to_thread(self.store.latest, inverter_id)
            source = "store"
        alerts = evaluate_alerts([inv], {inv.id: sample}, self.cfg.alerts)
        events = await asyncio.to_thread(self.store.recent_poll_events, inverter_id, 10)
        return {
            "inverter": inverter_to_dict(inv),
            "source": source,
            "sample": sample_to_dict(sample) if sample else None,
            "alerts": [a.to_dict() for a in alerts],
            "poll_events": [poll_event_to_dict(e) for e in events],
        }

    async def send_control(self, owner_id: str, inverter_id: str, action: str) -> Dict[str, Any]:
        inv = self.registry.get(owner_id, inverter_id)
        if not inv.gateway_url:
            raise ValidationError(f"Inverter {inverter_id} has no gateway address")
        return await self.gateway.send_control(inv.gateway_url, action)

    async def set_power_limit(self, owner_id: str, inverter_id: str, kind: str, persistent: bool,
                              value: float) -> Dict[str, Any]:
        inv = self.registry.get(owner_id, inverter_id)
        validate_power_limit(kind, value, inv.max_power_w)
        if not inv.gateway_url:
            raise ValidationError(f"Inverter {inverter_id} has no gateway address")
        return await self.gateway.set_power_limit(inv.gateway_url, kind, persistent, value, inv.max_power_w)

    async def test_connection(self, owner_id: str, inverter_id: str) -> Dict[str, Any]:
        """One poll cycle on demand. Status changes follow the same debounce as regular polling."""
        inv = self.registry.get(owner_id, inverter_id)
        if not inv.gateway_url:
            raise ValidationError(f"Inverter {inverter_id} has no gateway address")
        event = await self.poller.poll_once(inv)
        inv = self.registry.get(owner_id, inverter_id)
        return {"ok": event.ok, "event": poll_event_to_dict(event), "inverter": inverter_to_dict(inv)}

    async def import_samples(self, owner_id: str, inverter_id: str, records: List[Dict[str, Any]]) -> ImportResult:
        """
        Bulk historical import. Records use the gateway's field names plus a
        ``timestamp``; each is checked on its own and rejects are reported by index.
        """
        self.registry.get(owner_id, inverter_id)
        parsed: List[PowerSample] = []
        positions: List[int] = []
        rejected: List[Dict[str, Any]] = []
        for index, record in enumerate(records):
            try:
                if not isinstance(record, dict):
                    raise ValidationError("Record must be an object")
                ts = record.get("timestamp")
                timestamp = parse_iso_utc(ts) if isinstance(ts, str) else None
                reading = LiveReading.model_validate(record)
                parsed.append(reading.to_sample(timestamp, self.cfg.polling.dc_channels))
                positions.append(index)
            except ValidationError as e:
                rejected.append({"index": index, "error": e.kind, "message": e.message})
            except (pydantic.ValidationError, ValueError) as e:
                rejected.append({"index": index, "error": ValidationError.kind, "message": str(e).splitlines()[0]})

        result = await asyncio.to_thread(self.store.append_many, inverter_id, parsed)
        for reject in result.rejected:
            reject["index"] = positions[reject["index"]]
        result.rejected = sorted(rejected + result.rejected, key=lambda r: r["index"])
        return result

    # --- aggregates & money ---

    def get_cost_settings(self, owner_id: str) -> CostSettings:
        return self.registry.get_cost_settings(owner_id)

    def set_cost_settings(self, owner_id: str, settings: CostSettings) -> CostSettings:
        return self.registry.set_cost_settings(owner_id, settings)

    async def aggregate(self, owner_id: str, start: datetime, end: datetime, granularity: str = "day",
                        inverter_id: Optional[str] = None) -> Dict[str, Any]:
        window = make_window(start, end, granularity)
        settings = self.registry.get_cost_settings(owner_id)
        if inverter_id is not None:
            self.registry.get(owner_id, inverter_id)
            scope = {"inverter_id": inverter_id}
        else:
            scope = {"owner_id": owner_id}
        samples = await asyncio.to_thread(self.store.query, window, **scope)
        baselines = None
        day_start = cut_day_start(window, settings.timezone)
        if day_start is not None:
            baselines = await asyncio.to_thread(self.store.yield_baselines, day_start, window.start, **scope)
        result = aggregate(samples, window, settings.timezone, baselines)
        return {
            "window": {"start": format_utc_iso(window.start), "end": format_utc_iso(window.end),
                       "granularity": window.granularity.value, "timezone": settings.timezone},
            "aggregate": result.to_dict(),
            "cost": costs(result, settings).to_dict(),
            "impact": environmental_impact(result.total_production_kwh, self.cfg.emission_factors).to_dict(),
        }

    async def _latest_by_inverter(self, inverters: List[Inverter]) -> Dict[str, Optional[PowerSample]]:
        latest = {}
        for inv in inverters:
            latest[inv.id] = await asyncio.to_thread(self.store.latest, inv.id)
        return latest

    async def dashboard(self, owner_id: str) -> Dict[str, Any]:
        """Headline figures for the owner's installation right now."""
        settings = self.registry.get_cost_settings(owner_id)
        tz = resolve_timezone(settings.timezone)
        now = now_utc()
        today = local_date(now, tz)
        stale_after = timedelta(minutes=self.cfg.alerts.offline_minutes)

        inverters = self.registry.list_for_owner(owner_id)
        latest = await self._latest_by_inverter(inverters)
        total_ac = yield_today = yield_total = 0.0
        online = 0
        for inv in inverters:
            sample = latest.get(inv.id)
            if inv.status == InverterStatus.ONLINE:
                online += 1
            if sample is None:
                continue
            yield_total += sample.yield_total
            if local_date(sample.timestamp, tz) == today:
                yield_today += sample.yield_today
            if inv.status == InverterStatus.ONLINE and now - ensure_utc(sample.timestamp) <= stale_after:
                total_ac += sample.ac_power

        alerts = evaluate_alerts(inverters, latest, self.cfg.alerts, now)
        return {
            "total_ac_power_w": round(total_ac, 2),
            "yield_today_kwh": round(yield_today, 2),
            "yield_total_kwh": round(yield_total, 2),
            "savings_today": costs(yield_today, settings).to_dict(),
            "online_inverters": online,
            "total_inverters": len(inverters),
            "alerts": [a.to_dict() for a in alerts],
        }

    async def savings(self, owner_id: str, months: int = 12) -> Dict[str, Any]:
        """Savings today / month / year / lifetime plus a per-month history."""
        settings = self.registry.get_cost_settings(owner_id)
        tz = resolve_timezone(settings.timezone)
        now = now_utc()
        today = local_date(now, tz)
        first_month = date(today.year, today.month, 1)
        for _ in range(months - 1):
            first_month = (first_month - timedelta(days=1)).replace(day=1)
        start_day = min(first_month, date(today.year, 1, 1))
        window = AggregationWindow(start=ensure_utc(local_midnight(start_day, tz)), end=now + timedelta(seconds=1))

        samples = await asyncio.to_thread(self.store.query, window, owner_id=owner_id)
        daily = daily_production(samples, tz)
        latest = await self._latest_by_inverter(self.registry.list_for_owner(owner_id))
        lifetime = sum(s.yield_total for s in latest.values() if s is not None) if latest else None
        summary = savings_summary(daily, settings, today, lifetime_kwh=lifetime)
        return {
            "summary": summary.to_dict(),
            "monthly": monthly_savings(daily, settings, today, months),
            "impact": environmental_impact(lifetime or 0.0, self.cfg.emission_factors).to_dict(),
            "settings": settings.model_dump(),
        }

    # --- jobs ---

    async def start_export(self, owner_id: str, request: ExportRequest) -> JobSnapshot:
        settings = self.registry.get_cost_settings(owner_id)
        for inverter_id in request.inverter_ids or []:
            self.registry.get(owner_id, inverter_id)
        stages = export_stages(self.store, owner_id, request, settings.timezone)
        return await self.jobs.start(owner_id, JobKind.EXPORT, stages,
                                     label=f"{request.format} {request.start.date()} - {request.end.date()}")

    async def start_report(self, owner_id: str, request: ReportRequest) -> JobSnapshot:
        settings = self.registry.get_cost_settings(owner_id)
        if request.inverter_id is not None:
            self.registry.get(owner_id, request.inverter_id)
        stages = report_stages(self.store, owner_id, request, settings, self.cfg.emission_factors)
        return await self.jobs.start(owner_id, JobKind.REPORT, stages,
                                     label=period_label(request.month, request.year))

    def _job_of_kind(self, owner_id: str, job_id: str, kind: Optional[JobKind]) -> JobSnapshot:
        snapshot = self.jobs.status(job_id, owner_id)
        if kind is not None and snapshot.kind != JobKind(kind):
            raise NotFoundError(f"{JobKind(kind).value.capitalize()} job {job_id} not found")
        return snapshot

    def job_status(self, owner_id: str, job_id: str, kind: Optional[JobKind] = None) -> JobSnapshot:
        return self._job_of_kind(owner_id, job_id, kind)

    async def cancel_job(self, owner_id: str, job_id: str, kind: Optional[JobKind] = None) -> JobSnapshot:
        self._job_of_kind(owner_id, job_id, kind)
        return await self.jobs.cancel(job_id, owner_id)

    def job_artifact(self, owner_id: str, job_id: str, kind: Optional[JobKind] = None) -> Artifact:
        self._job_of_kind(owner_id, job_id, kind)
        return self.jobs.artifact(job_id, owner_id)

    def list_jobs(self, owner_id: str, kind: Optional[JobKind] = None) -> List[JobSnapshot]:
        return self.jobs.list_jobs(owner_id, kind)
