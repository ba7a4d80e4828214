"""SQLite-backed key-value store for sessions, commits and settings.

Values are JSON documents grouped into two areas: ``local`` for recorded
state and ``sync`` for small settings. Listeners are called after every
write with the changed keys.
"""

import json
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Iterable, NamedTuple, Optional, Union

from .models import Commit, LocalState, PendingDownload, Session, Settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_DB_PATH = Path(
    os.environ.get("SESSIONDL_DB", Path.home() / ".cache" / "sessiondl" / "state.db")
)

LOCAL = "local"
SYNC = "sync"

# Local area keys
KEY_SESSIONS = "sessions"
KEY_COMMITS = "commits"
KEY_PENDING = "pending"
KEY_UI = "ui"
KEY_BACKUP_PROOF = "backup_proof"

# Sync area keys
KEY_SETTINGS = "settings"
KEY_SESSIONS_INDEX = "sessions_index"


class Change(NamedTuple):
    old_value: object
    new_value: object  # None when the key was removed


ChangeListener = Callable[[dict[str, Change], str], None]


class StateStore:
    _instance: Optional["StateStore"] = None
    _lock = threading.Lock()

    def __new__(cls, db_path: Optional[Path] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
                    instance._connection: Optional[sqlite3.Connection] = None
                    instance._initialized = False
                    instance._write_lock = threading.RLock()
                    instance._listeners: list[ChangeListener] = []
                    instance._data_version: Optional[int] = None
                    cls._instance = instance
        return cls._instance

    @classmethod
    def reset_instance(cls):
        with cls._lock:
            if cls._instance is not None:
                if cls._instance._connection:
                    cls._instance._connection.close()
                cls._instance = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA journal_mode = WAL")
        return self._connection

    def _ensure_schema(self) -> sqlite3.Connection:
        conn = self._get_connection()
        if self._initialized:
            return conn
        if self._get_schema_version(conn) < SCHEMA_VERSION:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_meta (
                    version INTEGER PRIMARY KEY,
                    applied_at INTEGER DEFAULT (strftime('%s', 'now')),
                    description TEXT
                );

                CREATE TABLE IF NOT EXISTS kv (
                    area TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
                    PRIMARY KEY (area, key)
                );
                """
            )
            conn.execute(
                "INSERT INTO schema_meta (version, description) VALUES (?, ?)",
                (SCHEMA_VERSION, f"Schema version {SCHEMA_VERSION}"),
            )
        self._initialized = True
        return conn

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT MAX(version) as v FROM schema_meta").fetchone()
            return row["v"] if row and row["v"] else 0
        except sqlite3.OperationalError:
            return 0

    # -- key-value API --

    def get(self, keys: Union[str, Iterable[str]], area: str = LOCAL) -> dict:
        """Return ``{key: value}`` for the keys that exist."""
        if isinstance(keys, str):
            keys = [keys]
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        # Shared connection: never read inside another thread's open write
        with self._write_lock:
            conn = self._ensure_schema()
            rows = conn.execute(
                f"SELECT key, value FROM kv WHERE area = ? AND key IN ({placeholders})",
                (area, *keys),
            ).fetchall()

        result = {}
        for row in rows:
            try:
                result[row["key"]] = json.loads(row["value"])
            except json.JSONDecodeError:
                logger.warning(f"Ignoring corrupt value for {area}:{row['key']}")
        return result

    def set(self, items: dict, area: str = LOCAL) -> None:
        """Write several keys at once, then notify listeners."""
        if not items:
            return
        with self._write_lock:
            conn = self._ensure_schema()
            old = self.get(items.keys(), area)
            conn.execute("BEGIN")
            try:
                for key, value in items.items():
                    conn.execute(
                        """
                        INSERT INTO kv (area, key, value, updated_at)
                        VALUES (?, ?, ?, strftime('%s', 'now'))
                        ON CONFLICT(area, key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        (area, key, json.dumps(value)),
                    )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            self._data_version = self._read_data_version()
        self._notify({k: Change(old.get(k), v) for k, v in items.items()}, area)

    def remove(self, keys: Union[str, Iterable[str]], area: str = LOCAL) -> None:
        if isinstance(keys, str):
            keys = [keys]
        keys = list(keys)
        if not keys:
            return
        with self._write_lock:
            conn = self._ensure_schema()
            old = self.get(keys, area)
            placeholders = ",".join("?" for _ in keys)
            conn.execute(
                f"DELETE FROM kv WHERE area = ? AND key IN ({placeholders})",
                (area, *keys),
            )
            self._data_version = self._read_data_version()
        changes = {k: Change(v, None) for k, v in old.items()}
        if changes:
            self._notify(changes, area)

    # -- change notification --

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, changes: dict[str, Change], area: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes, area)
            except Exception:
                logger.exception("Store change listener failed")

    def _read_data_version(self) -> int:
        row = self._get_connection().execute("PRAGMA data_version").fetchone()
        return row[0]

    def has_external_changes(self) -> bool:
        """True if another process wrote to the database since the last check."""
        with self._write_lock:
            self._ensure_schema()
            version = self._read_data_version()
            changed = self._data_version is not None and version != self._data_version
            self._data_version = version
        return changed

    # -- typed helpers --

    def load_state(self) -> LocalState:
        got = self.get([KEY_SESSIONS, KEY_COMMITS, KEY_PENDING])
        sessions = {
            sid: Session.from_dict(data) for sid, data in (got.get(KEY_SESSIONS) or {}).items()
        }
        commits = [Commit.from_dict(data) for data in got.get(KEY_COMMITS) or []]
        pending = {
            pid: PendingDownload.from_dict(data) for pid, data in (got.get(KEY_PENDING) or {}).items()
        }
        return LocalState(sessions=sessions, commits=commits, pending=pending)

    def save_state(self, state: LocalState) -> None:
        self.set({
            KEY_SESSIONS: {sid: s.to_dict() for sid, s in state.sessions.items()},
            KEY_COMMITS: [c.to_dict() for c in state.commits],
            KEY_PENDING: {pid: p.to_dict() for pid, p in state.pending.items()},
        })

    def load_settings(self) -> Settings:
        got = self.get(KEY_SETTINGS, area=SYNC)
        raw = got.get(KEY_SETTINGS)
        return Settings.from_dict(raw if isinstance(raw, dict) else None)

    def save_settings(self, settings: Settings) -> None:
        self.set({KEY_SETTINGS: settings.to_dict()}, area=SYNC)

    def ensure_settings_defaults(self) -> None:
        """Write default settings unless a valid ``urn_only`` flag exists."""
        raw = self.get(KEY_SETTINGS, area=SYNC).get(KEY_SETTINGS)
        if not isinstance(raw, dict):
            self.save_settings(Settings())
        elif not isinstance(raw.get("urn_only"), bool):
            self.set({KEY_SETTINGS: {**raw, "urn_only": True}}, area=SYNC)

    def load_ui_query(self) -> str:
        ui = self.get(KEY_UI).get(KEY_UI) or {}
        return str(ui.get("query") or "") if isinstance(ui, dict) else ""

    def save_ui_query(self, query: str) -> None:
        self.set({KEY_UI: {"query": query}})
