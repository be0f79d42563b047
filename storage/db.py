# storage/db.py
import sqlite3
import json
import os
import time
import logging

log = logging.getLogger("db")

DB_PATH = "storage/afk_events.db"


class LocalDB:
    def __init__(self, path=DB_PATH):
        """Initialize local SQLite database for AFK transition storage."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.path = path
        self._create()
        log.info("Local database initialized: %s", path)

    def _create(self):
        """Create all tables if they don't exist."""
        # One row per AFK verdict flip
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS afk_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts REAL NOT NULL,
            device TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            event TEXT NOT NULL,
            unchanged_ticks INTEGER,
            pattern_detected BOOLEAN DEFAULT 0,
            payload TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )""")

        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS system_health (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts REAL NOT NULL,
            device_id TEXT NOT NULL,
            cpu_percent REAL,
            ram_percent REAL,
            temp_celsius REAL,
            tracked_entities INTEGER,
            afk_entities INTEGER,
            tick_ms REAL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )""")

        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_afk_ts ON afk_events(ts)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_afk_entity ON afk_events(entity_id)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_health_ts ON system_health(ts)")
        self.conn.commit()

    def insert_afk_event(self, device, entity_id, verdict, ts=None, payload=None):
        """
        Insert an AFK transition.

        Args:
            device: Device ID
            entity_id: Entity the verdict belongs to
            verdict: ActivityVerdict with transition set
            ts: Event timestamp (defaults to now)
            payload: Optional extra data (dict)
        """
        try:
            self.conn.execute(
                "INSERT INTO afk_events (ts, device, entity_id, event, unchanged_ticks, pattern_detected, payload) "
                "VALUES (?,?,?,?,?,?,?)",
                (ts if ts is not None else time.time(), device, str(entity_id), verdict.transition,
                 int(verdict.unchanged_ticks), bool(verdict.pattern_detected),
                 json.dumps(payload, default=str) if payload else None)
            )
            self.conn.commit()
            return True
        except sqlite3.OperationalError as e:
            error_msg = str(e).lower()
            if "disk" in error_msg or "full" in error_msg or "space" in error_msg:
                log.critical("Disk full - cannot write to database. Free space required.")
                return False
            log.exception("Database operational error: %s", e)
            return False

    def query_afk_events(self, entity_id=None, event=None, start_ts=None, end_ts=None, limit=1000):
        """
        Query AFK transitions, newest first.

        Args:
            entity_id: Filter by entity (optional)
            event: "afk_start" or "afk_end" (optional)
            start_ts: Start timestamp (optional)
            end_ts: End timestamp (optional)
            limit: Maximum number of results

        Returns:
            List of event dictionaries
        """
        query = ("SELECT ts, device, entity_id, event, unchanged_ticks, pattern_detected, payload "
                 "FROM afk_events WHERE 1=1")
        params = []

        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(str(entity_id))
        if event:
            query += " AND event = ?"
            params.append(event)
        if start_ts is not None:
            query += " AND ts >= ?"
            params.append(start_ts)
        if end_ts is not None:
            query += " AND ts <= ?"
            params.append(end_ts)

        query += " ORDER BY ts DESC, id DESC LIMIT ?"
        params.append(limit)

        try:
            events = []
            for row in self.conn.execute(query, params):
                events.append({
                    "ts": row[0],
                    "device": row[1],
                    "entity_id": row[2],
                    "event": row[3],
                    "unchanged_ticks": row[4],
                    "pattern_detected": bool(row[5]),
                    "payload": json.loads(row[6]) if row[6] else None
                })
            return events
        except sqlite3.Error as e:
            log.exception("Failed to query AFK events: %s", e)
            return []

    def get_afk_statistics(self, start_ts=None, end_ts=None):
        """Count AFK starts per entity in a time range."""
        query = ("SELECT entity_id, COUNT(*), SUM(pattern_detected) FROM afk_events "
                 "WHERE event = 'afk_start'")
        params = []
        if start_ts is not None:
            query += " AND ts >= ?"
            params.append(start_ts)
        if end_ts is not None:
            query += " AND ts <= ?"
            params.append(end_ts)
        query += " GROUP BY entity_id"

        try:
            stats = {}
            for row in self.conn.execute(query, params):
                stats[row[0]] = {"afk_count": row[1], "pattern_count": row[2] or 0}
            return stats
        except sqlite3.Error as e:
            log.exception("Failed to get AFK statistics: %s", e)
            return {}

    def insert_health(self, device_id, health, statistics=None):
        """Store one heartbeat (host health plus scan statistics)."""
        statistics = statistics or {}
        try:
            self.conn.execute(
                "INSERT INTO system_health (ts, device_id, cpu_percent, ram_percent, temp_celsius, "
                "tracked_entities, afk_entities, tick_ms) VALUES (?,?,?,?,?,?,?,?)",
                (health.get("ts", time.time()), device_id, health.get("cpu"), health.get("ram"),
                 health.get("temp"), statistics.get("total_entities"), statistics.get("afk_entities"),
                 statistics.get("mean_tick_ms"))
            )
            self.conn.commit()
        except sqlite3.Error as e:
            log.exception("Failed to insert system health: %s", e)

    def cleanup_old_events(self, days=30):
        """
        Delete AFK events older than specified days.

        Args:
            days: Number of days to keep
        """
        cutoff_ts = time.time() - (days * 24 * 60 * 60)
        try:
            cursor = self.conn.execute("DELETE FROM afk_events WHERE ts < ?", (cutoff_ts,))
            deleted = cursor.rowcount
            self.conn.commit()
            log.info("Deleted %d old AFK events (older than %d days)", deleted, days)
            return deleted
        except sqlite3.Error as e:
            log.exception("Failed to cleanup old events: %s", e)
            return 0

    def close(self):
        """Close database connection."""
        try:
            self.conn.close()
            log.info("Database connection closed")
        except sqlite3.Error as e:
            log.debug("Database close failed: %s", e)
