"""
Inverter registry and owner-scoped cost settings.

Every read or write is scoped to an owner; asking for another owner's
inverter behaves exactly like asking for one that does not exist.
"""
import sqlite3
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from solarview.config import CostDefaultsConfig
from solarview.cost_engine import validate_cost_settings
from solarview.database import connect
from solarview.errors import NotFoundError, ValidationError
from solarview.models import CostSettings, Inverter, InverterCreate, InverterStatus, InverterUpdate
from solarview.timezone_utils import format_utc_iso, now_utc, parse_iso_utc

log = logging.getLogger(__name__)


def _row_to_inverter(row: sqlite3.Row) -> Inverter:
    return Inverter(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        serial_number=row["serial_number"],
        gateway_url=row["gateway_url"],
        status=InverterStatus(row["status"]),
        max_power_w=row["max_power_w"],
        enabled=bool(row["enabled"]),
        last_seen=parse_iso_utc(row["last_seen"]) if row["last_seen"] else None,
        created_at=parse_iso_utc(row["created_at"]),
        updated_at=parse_iso_utc(row["updated_at"]),
    )


def _check_inverter_fields(name: Optional[str], max_power_w: Optional[float], gateway_url: Optional[str]) -> None:
    if name is not None and not name.strip():
        raise ValidationError("Inverter name must not be empty")
    if max_power_w is not None and max_power_w <= 0:
        raise ValidationError("max_power_w must be positive")
    if gateway_url and not gateway_url.startswith(("http://", "https://")):
        raise ValidationError(f"gateway_url must be an http(s) URL, got {gateway_url!r}")


class InverterRegistry:
    def __init__(self, db_path: str, cost_defaults: Optional[CostDefaultsConfig] = None,
                 default_timezone: str = "UTC", busy_timeout_ms: int = 5000):
        self.path = db_path
        self.cost_defaults = cost_defaults or CostDefaultsConfig()
        self.default_timezone = default_timezone
        self.busy_timeout_ms = busy_timeout_ms

    def _connect(self) -> sqlite3.Connection:
        return connect(self.path, self.busy_timeout_ms)

    # --- inverters ---

    def create(self, owner_id: str, data: InverterCreate) -> Inverter:
        _check_inverter_fields(data.name, data.max_power_w, data.gateway_url)
        now = format_utc_iso(now_utc())
        inverter_id = uuid.uuid4().hex
        con = self._connect()
        try:
            con.execute("""
                INSERT INTO inverters (id, owner_id, name, serial_number, gateway_url, status,
                                       max_power_w, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (inverter_id, owner_id, data.name.strip(), data.serial_number, data.gateway_url,
                  InverterStatus.OFFLINE.value, data.max_power_w, int(data.enabled), now, now))
            con.commit()
        finally:
            con.close()
        log.info(f"Created inverter {inverter_id} ({data.name}) for owner {owner_id}")
        return self.get(owner_id, inverter_id)

    def get(self, owner_id: str, inverter_id: str) -> Inverter:
        con = self._connect()
        try:
            row = con.execute("SELECT * FROM inverters WHERE id = ? AND owner_id = ?",
                              (inverter_id, owner_id)).fetchone()
        finally:
            con.close()
        if row is None:
            raise NotFoundError(f"Inverter {inverter_id} not found")
        return _row_to_inverter(row)

    def list_for_owner(self, owner_id: str, status: Optional[InverterStatus] = None) -> List[Inverter]:
        sql = "SELECT * FROM inverters WHERE owner_id = ?"
        params: list = [owner_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(InverterStatus(status).value)
        sql += " ORDER BY created_at DESC, id"
        con = self._connect()
        try:
            return [_row_to_inverter(r) for r in con.execute(sql, params).fetchall()]
        finally:
            con.close()

    def list_enabled(self) -> List[Inverter]:
        """All pollable inverters: enabled and with a gateway address."""
        con = self._connect()
        try:
            rows = con.execute("""
                SELECT * FROM inverters
                WHERE enabled = 1 AND gateway_url IS NOT NULL AND gateway_url != ''
                ORDER BY id
            """).fetchall()
            return [_row_to_inverter(r) for r in rows]
        finally:
            con.close()

    def update(self, owner_id: str, inverter_id: str, changes: InverterUpdate) -> Inverter:
        self.get(owner_id, inverter_id)
        values = changes.model_dump(exclude_unset=True)
        _check_inverter_fields(values.get("name"), values.get("max_power_w"), values.get("gateway_url"))
        if not values:
            return self.get(owner_id, inverter_id)
        if "enabled" in values:
            values["enabled"] = int(values["enabled"])
        values["updated_at"] = format_utc_iso(now_utc())
        assignments = ", ".join(f"{col} = ?" for col in values)
        con = self._connect()
        try:
            con.execute(f"UPDATE inverters SET {assignments} WHERE id = ? AND owner_id = ?",
                        (*values.values(), inverter_id, owner_id))
            con.commit()
        finally:
            con.close()
        return self.get(owner_id, inverter_id)

    def delete(self, owner_id: str, inverter_id: str) -> None:
        """Delete an inverter; its samples go with it (ON DELETE CASCADE)."""
        self.get(owner_id, inverter_id)
        con = self._connect()
        try:
            con.execute("DELETE FROM poll_events WHERE inverter_id = ?", (inverter_id,))
            con.execute("DELETE FROM inverters WHERE id = ? AND owner_id = ?", (inverter_id, owner_id))
            con.commit()
        finally:
            con.close()
        log.info(f"Deleted inverter {inverter_id} for owner {owner_id}")

    def set_status(self, inverter_id: str, status: InverterStatus, last_seen: Optional[datetime] = None) -> None:
        fields = ["status = ?", "updated_at = ?"]
        params: list = [InverterStatus(status).value, format_utc_iso(now_utc())]
        if last_seen is not None:
            fields.append("last_seen = ?")
            params.append(format_utc_iso(last_seen))
        params.append(inverter_id)
        con = self._connect()
        try:
            con.execute(f"UPDATE inverters SET {', '.join(fields)} WHERE id = ?", params)
            con.commit()
        finally:
            con.close()

    def mark_seen(self, inverter_id: str, seen_at: Optional[datetime] = None) -> None:
        """Successful poll: online, with last_seen moved forward."""
        self.set_status(inverter_id, InverterStatus.ONLINE, last_seen=seen_at or now_utc())

    # --- cost settings ---

    def get_cost_settings(self, owner_id: str) -> CostSettings:
        con = self._connect()
        try:
            row = con.execute("SELECT * FROM cost_settings WHERE owner_id = ?", (owner_id,)).fetchone()
        finally:
            con.close()
        if row is None:
            return CostSettings(
                price_per_kwh=self.cost_defaults.price_per_kwh,
                currency=self.cost_defaults.currency,
                tax_rate=self.cost_defaults.tax_rate,
                timezone=self.default_timezone,
            )
        return CostSettings(
            price_per_kwh=row["price_per_kwh"],
            currency=row["currency"],
            tax_rate=row["tax_rate"],
            timezone=row["timezone"] or self.default_timezone,
        )

    def set_cost_settings(self, owner_id: str, settings: CostSettings) -> CostSettings:
        """Validate then store. Invalid settings raise ConfigurationError and leave the stored row untouched."""
        validate_cost_settings(settings)
        normalized = settings.model_copy(update={"currency": settings.currency.upper()})
        con = self._connect()
        try:
            con.execute("""
                INSERT INTO cost_settings (owner_id, price_per_kwh, currency, tax_rate, timezone, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    price_per_kwh = excluded.price_per_kwh,
                    currency = excluded.currency,
                    tax_rate = excluded.tax_rate,
                    timezone = excluded.timezone,
                    updated_at = excluded.updated_at
            """, (owner_id, normalized.price_per_kwh, normalized.currency, normalized.tax_rate,
                  normalized.timezone, format_utc_iso(now_utc())))
            con.commit()
        finally:
            con.close()
        log.info(f"Saved cost settings for owner {owner_id}: {normalized.price_per_kwh} {normalized.currency}/kWh")
        return self.get_cost_settings(owner_id)
