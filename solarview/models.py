from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InverterStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class JobKind(str, Enum):
    EXPORT = "export"
    REPORT = "report"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class Inverter(BaseModel):
    id: str
    owner_id: str
    name: str
    serial_number: Optional[str] = None
    gateway_url: Optional[str] = None
    status: InverterStatus = InverterStatus.OFFLINE
    max_power_w: float = 2000.0
    enabled: bool = True
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InverterCreate(BaseModel):
    name: str
    serial_number: Optional[str] = None
    gateway_url: Optional[str] = None
    max_power_w: float = 2000.0
    enabled: bool = True


class InverterUpdate(BaseModel):
    name: Optional[str] = None
    serial_number: Optional[str] = None
    gateway_url: Optional[str] = None
    max_power_w: Optional[float] = None
    enabled: Optional[bool] = None


class DcChannel(BaseModel):
    model_config = ConfigDict(frozen=True)

    power: float = 0.0
    voltage: float = 0.0
    current: float = 0.0


class PowerSample(BaseModel):
    """One telemetry reading. Immutable; the store fills inverter/owner ids on append."""
    model_config = ConfigDict(frozen=True)

    timestamp: Optional[datetime] = None
    inverter_id: Optional[str] = None
    owner_id: Optional[str] = None
    ac_power: float = 0.0
    ac_voltage: float = 0.0
    ac_current: float = 0.0
    dc_channels: List[DcChannel] = Field(default_factory=list)
    temperature: Optional[float] = None
    yield_today: float = 0.0  # kWh, resets daily on the device
    yield_total: float = 0.0  # kWh, lifetime

    def dc(self, index: int) -> DcChannel:
        """DC channel by 1-based index; missing channels read as zeros."""
        if 1 <= index <= len(self.dc_channels):
            return self.dc_channels[index - 1]
        return DcChannel()


class LiveReading(BaseModel):
    """Payload of ``GET {gateway}/live``."""
    model_config = ConfigDict(populate_by_name=True)

    ac_power: float = Field(alias="acPower")
    ac_voltage: float = Field(alias="acVoltage")
    ac_current: float = Field(alias="acCurrent")
    dc_channels: List[DcChannel] = Field(default_factory=list, alias="dcChannels")
    temperature: Optional[float] = None
    yield_today: float = Field(default=0.0, alias="yieldToday")
    yield_total: float = Field(default=0.0, alias="yieldTotal")

    def to_sample(self, timestamp: datetime, max_channels: int = 4) -> PowerSample:
        return PowerSample(
            timestamp=timestamp,
            ac_power=self.ac_power,
            ac_voltage=self.ac_voltage,
            ac_current=self.ac_current,
            dc_channels=list(self.dc_channels[:max_channels]),
            temperature=self.temperature,
            yield_today=self.yield_today,
            yield_total=self.yield_total,
        )


class CostSettings(BaseModel):
    price_per_kwh: float
    currency: str = "USD"
    tax_rate: float = 0.0
    timezone: Optional[str] = None  # None -> engine default


class ExportRequest(BaseModel):
    start: datetime
    end: datetime
    fields: List[str]
    format: str = "csv"
    inverter_ids: Optional[List[str]] = None


class ReportRequest(BaseModel):
    month: int
    year: int
    include_charts: bool = True
    include_details: bool = True
    inverter_id: Optional[str] = None


class ControlRequest(BaseModel):
    action: str


class PowerLimitRequest(BaseModel):
    kind: str
    persistent: bool = False
    value: float


@dataclass(frozen=True)
class AggregationWindow:
    """Half-open [start, end) plus a bucketing granularity."""
    start: datetime
    end: datetime
    granularity: Granularity = Granularity.DAY


@dataclass
class BestDay:
    date: date
    production_kwh: float


@dataclass
class SeriesBucket:
    label: str
    start: datetime
    production_kwh: float
    peak_ac_power_w: float


@dataclass
class AggregateResult:
    total_production_kwh: float
    peak_ac_power_w: float
    average_daily_production_kwh: float
    best_day: Optional[BestDay]
    total_days: int
    online_days: int
    uptime_ratio: float
    daily_production: Dict[date, float] = field(default_factory=dict)
    series: List[SeriesBucket] = field(default_factory=list)

    def to_dict(self, rounded: bool = True) -> Dict[str, Any]:
        def r(value: float) -> float:
            return round(value, 2) if rounded else value

        return {
            "total_production_kwh": r(self.total_production_kwh),
            "peak_ac_power_w": r(self.peak_ac_power_w),
            "average_daily_production_kwh": r(self.average_daily_production_kwh),
            "best_day": None if self.best_day is None else {
                "date": self.best_day.date.isoformat(),
                "production_kwh": r(self.best_day.production_kwh),
            },
            "total_days": self.total_days,
            "online_days": self.online_days,
            "uptime_ratio": r(self.uptime_ratio),
            "series": [
                {
                    "label": b.label,
                    "start": b.start.isoformat(),
                    "production_kwh": r(b.production_kwh),
                    "peak_ac_power_w": r(b.peak_ac_power_w),
                }
                for b in self.series
            ],
        }


@dataclass
class CostAmount:
    amount: float
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": round(self.amount, 2), "currency": self.currency}


@dataclass
class EnvironmentalImpact:
    co2_saved_kg: float
    trees_equivalent: float
    coal_avoided_kg: float

    def to_dict(self) -> Dict[str, Any]:
        return {k: round(v, 2) for k, v in asdict(self).items()}


@dataclass
class Artifact:
    content: bytes
    media_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ImportResult:
    accepted: int = 0
    rejected: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PollEvent:
    inverter_id: str
    timestamp: datetime
    ok: bool
    consecutive_failures: int = 0
    error_kind: Optional[str] = None
    message: Optional[str] = None
