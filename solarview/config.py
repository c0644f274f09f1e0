from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator
import pytz


class DatabaseConfig(BaseModel):
    # None -> ~/.solarview/solarview.db
    path: Optional[str] = None
    busy_timeout_ms: int = Field(default=5000, ge=0)


class PollingConfig(BaseModel):
    interval_secs: float = Field(ge=0.5, default=10.0)
    timeout_ms: int = Field(ge=100, default=5000)
    offline_after_failures: int = Field(ge=1, default=3, description="Consecutive failed polls before an inverter is marked offline")
    dc_channels: int = Field(ge=1, le=4, default=4)


class SampleBoundsConfig(BaseModel):
    """Physically plausible ranges for stored samples."""
    max_power_w: float = Field(default=100_000.0, gt=0)
    max_voltage_v: float = Field(default=1000.0, gt=0)
    max_current_a: float = Field(default=200.0, gt=0)
    min_temperature_c: float = -40.0
    max_temperature_c: float = 125.0
    max_yield_today_kwh: float = Field(default=1000.0, gt=0)

    @model_validator(mode='after')
    def validate_temperature_range(self):
        if self.min_temperature_c >= self.max_temperature_c:
            raise ValueError("min_temperature_c must be below max_temperature_c")
        return self


class EmissionFactorsConfig(BaseModel):
    """Grid-region conversion factors for environmental equivalents."""
    co2_kg_per_kwh: float = Field(default=0.4, gt=0, description="kg CO2 avoided per kWh produced")
    co2_kg_per_tree_year: float = Field(default=21.0, gt=0, description="kg CO2 absorbed by one tree per year")
    coal_kg_per_kwh: float = Field(default=0.5, gt=0, description="kg coal burned per kWh of grid power")


class CostDefaultsConfig(BaseModel):
    """Cost settings applied to owners that have not saved their own."""
    price_per_kwh: float = Field(default=0.25, ge=0.0)
    currency: str = "USD"
    tax_rate: float = Field(default=0.0, ge=0.0, le=1.0)


class AlertThresholdsConfig(BaseModel):
    low_production_w: float = Field(default=20.0, ge=0)
    high_temperature_c: float = 70.0
    offline_minutes: int = Field(default=5, ge=1)


class JobsConfig(BaseModel):
    retain_per_kind: int = Field(default=5, ge=1, description="Finished jobs kept per owner and kind")


class RetentionConfig(BaseModel):
    sample_days: int = Field(default=365, ge=1)
    prune_interval_minutes: int = Field(default=60, ge=1)


class ApiConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)


class LoggingConfig(BaseModel):
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    quiet_modules: List[str] = Field(default_factory=lambda: ["matplotlib", "PIL", "aiohttp.access"])

    @field_validator('level')
    @classmethod
    def validate_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level


class EngineConfig(BaseModel):
    timezone: str = "UTC"  # Default owner timezone for day bucketing
    database: DatabaseConfig = DatabaseConfig()
    polling: PollingConfig = PollingConfig()
    bounds: SampleBoundsConfig = SampleBoundsConfig()
    emission_factors: EmissionFactorsConfig = EmissionFactorsConfig()
    cost_defaults: CostDefaultsConfig = CostDefaultsConfig()
    alerts: AlertThresholdsConfig = AlertThresholdsConfig()
    jobs: JobsConfig = JobsConfig()
    retention: RetentionConfig = RetentionConfig()
    api: ApiConfig = ApiConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {value}")
        return value
