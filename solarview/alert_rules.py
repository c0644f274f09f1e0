"""
Threshold checks over the live snapshot.

Findings are returned to the caller and logged; nothing is delivered.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from solarview.config import AlertThresholdsConfig
from solarview.models import Inverter, InverterStatus, PowerSample
from solarview.timezone_utils import ensure_utc, now_utc

log = logging.getLogger(__name__)


@dataclass
class AlertFinding:
    kind: str  # offline | high_temperature | low_production
    inverter_id: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "inverter_id": self.inverter_id, "message": self.message}


def _is_offline(inverter: Inverter, thresholds: AlertThresholdsConfig, now: datetime) -> bool:
    if inverter.status == InverterStatus.OFFLINE or inverter.last_seen is None:
        return True
    return now - ensure_utc(inverter.last_seen) > timedelta(minutes=thresholds.offline_minutes)


def evaluate(inverters: List[Inverter], latest: Dict[str, Optional[PowerSample]],
             thresholds: Optional[AlertThresholdsConfig] = None,
             now: Optional[datetime] = None) -> List[AlertFinding]:
    """
    Check every enabled inverter against the alert thresholds.

    An offline inverter only produces the offline finding; its last stored
    reading is stale and is not checked further.
    """
    thresholds = thresholds or AlertThresholdsConfig()
    now = ensure_utc(now or now_utc())
    findings: List[AlertFinding] = []
    for inv in inverters:
        if not inv.enabled:
            continue
        if _is_offline(inv, thresholds, now):
            if inv.last_seen is None:
                msg = f"{inv.name} has never reported"
            else:
                minutes = int((now - ensure_utc(inv.last_seen)).total_seconds() // 60)
                msg = f"{inv.name} has not reported for {minutes} minute(s)"
            findings.append(AlertFinding("offline", inv.id, msg))
            continue
        sample = latest.get(inv.id)
        if sample is None:
            continue
        if sample.temperature is not None and sample.temperature > thresholds.high_temperature_c:
            findings.append(AlertFinding(
                "high_temperature", inv.id,
                f"{inv.name} temperature {sample.temperature:.1f} °C exceeds {thresholds.high_temperature_c:.1f} °C",
            ))
        if sample.ac_power < thresholds.low_production_w:
            findings.append(AlertFinding(
                "low_production", inv.id,
                f"{inv.name} is producing {sample.ac_power:.0f} W, below {thresholds.low_production_w:.0f} W",
            ))

    for f in findings:
        log.info(f"Alert [{f.kind}] {f.inverter_id}: {f.message}")
    return findings
