"""
SQLite schema for inverters, samples, owner settings and poll events.
"""
import os
import sqlite3
import logging
from typing import Optional

log = logging.getLogger(__name__)


def default_db_path() -> str:
    base = os.path.expanduser("~/.solarview")   # inside user home
    os.makedirs(base, exist_ok=True)
    return os.path.join(base, "solarview.db")


def connect(path: str, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Open a connection with row access by name and foreign keys enforced."""
    con = sqlite3.connect(path, timeout=busy_timeout_ms / 1000.0)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con


def init_schema(path: Optional[str] = None) -> str:
    """
    Create all tables and indexes if missing.

    WAL journal mode lets readers see a committed prefix of the sample stream
    while a poller is writing.

    Returns:
        The database path actually used.
    """
    if path is None:
        path = default_db_path()
    log.info(f"Initializing database at: {path}")
    con = connect(path)
    cur = con.cursor()
    try:
        cur.execute("PRAGMA journal_mode = WAL")

        cur.execute("""
            CREATE TABLE IF NOT EXISTS inverters (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                serial_number TEXT,
                gateway_url TEXT,
                status TEXT NOT NULL DEFAULT 'offline',
                max_power_w REAL NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                last_seen TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_inverters_owner ON inverters(owner_id)")

        cur.execute("""
            CREATE TABLE IF NOT EXISTS power_samples (
                inverter_id TEXT NOT NULL REFERENCES inverters(id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                ts TEXT NOT NULL,
                ac_power REAL,
                ac_voltage REAL,
                ac_current REAL,
                dc_power_1 REAL, dc_voltage_1 REAL, dc_current_1 REAL,
                dc_power_2 REAL, dc_voltage_2 REAL, dc_current_2 REAL,
                dc_power_3 REAL, dc_voltage_3 REAL, dc_current_3 REAL,
                dc_power_4 REAL, dc_voltage_4 REAL, dc_current_4 REAL,
                dc_channel_count INTEGER NOT NULL DEFAULT 0,
                temperature REAL,
                yield_today REAL,
                yield_total REAL,
                PRIMARY KEY (inverter_id, ts)
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_samples_owner_ts ON power_samples(owner_id, ts)")

        cur.execute("""
            CREATE TABLE IF NOT EXISTS cost_settings (
                owner_id TEXT PRIMARY KEY,
                price_per_kwh REAL NOT NULL,
                currency TEXT NOT NULL,
                tax_rate REAL NOT NULL DEFAULT 0,
                timezone TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS poll_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                inverter_id TEXT NOT NULL,
                ts TEXT NOT NULL,
                ok INTEGER NOT NULL,
                consecutive_failures INTEGER NOT NULL DEFAULT 0,
                error_kind TEXT,
                message TEXT
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_poll_events_inverter ON poll_events(inverter_id, ts DESC)")

        con.commit()
    except Exception as e:
        log.error(f"Failed to initialize database schema: {e}")
        con.rollback()
        raise
    finally:
        con.close()
    return path
