# storage.py
import json
import sqlite3
import threading
from datetime import datetime, timezone

DEFAULT_DB = "jobserver.db"

CONFIG_DEFAULTS = {
    "driver": "",
    "transport": "ssh",
    "results_dir": "results",
    "poll_interval": "1.0",
    "dead_on_transport_failure": "true",
    "health_check_interval": "0",
    "ssh_user": "",
    "ssh_key_filename": "",
}


class Storage:
    def __init__(self, db_path=DEFAULT_DB):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        # Dispatcher threads append concurrently with the scheduler loop
        self._lock = threading.Lock()

        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        # Every append must be on disk before the client sees the ack
        self.conn.execute("PRAGMA synchronous=FULL;")

        self._init_schema()

    def _init_schema(self):
        # State-transition log, append-only
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """)

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.commit()

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Event log ----------------
    def append(self, event, **payload):
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO events (kind, payload, created_at) VALUES (?, ?, ?)",
                (event, json.dumps(payload, sort_keys=True), now))
            self.conn.commit()
            return cur.lastrowid

    def events(self, after=0):
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT seq, kind, payload FROM events WHERE seq > ? ORDER BY seq", (after,))
            rows = cur.fetchall()
        for row in rows:
            yield row["seq"], row["kind"], json.loads(row["payload"])

    def count_events(self):
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) AS c FROM events").fetchone()["c"]

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT value FROM config WHERE key=?", (key,))
            row = cur.fetchone()
        if row:
            return row["value"]
        return CONFIG_DEFAULTS.get(key) if default is None else default

    def set_config(self, key, value):
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))
            self.conn.commit()

    def config_items(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
            return [dict(row) for row in cur.fetchall()]

    def get_bool(self, key):
        return str(self.get_config(key)).strip().lower() in ("1", "true", "yes", "on")

    def get_float(self, key):
        return float(self.get_config(key))
