import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional


DB_PATH = Path(os.getenv("STORAGE_DIR", "storage")) / "app.db"


class Database:
    def __init__(self, path: Path = DB_PATH):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def init(self):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_messages (
                    msg_id TEXT PRIMARY KEY,
                    created_at TEXT
                )
                """
            )
            con.commit()

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.path)
        try:
            yield con
        finally:
            con.close()

    def has_processed(self, msg_id: str) -> bool:
        with self._conn() as con:
            row = con.execute("SELECT 1 FROM processed_messages WHERE msg_id=?", (msg_id,)).fetchone()
            return row is not None

    def mark_processed(self, msg_id: str):
        with self._conn() as con:
            con.execute(
                "INSERT OR IGNORE INTO processed_messages (msg_id, created_at) VALUES (?, ?)",
                (msg_id, datetime.utcnow().isoformat() + "Z"),
            )
            con.commit()

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._conn() as con:
            cur = con.cursor()
            try:
                row = cur.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
            except sqlite3.OperationalError:
                # table not created yet
                return default
            if not row:
                return default
            return row[0]

    def set_setting(self, key: str, value: str):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute("INSERT INTO settings(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value))
            con.commit()


def setting(key: str, default: str = "", db: Optional[Database] = None) -> str:
    """Settings table first, then the environment, then ``default``."""
    db = db or Database()
    return db.get_setting(key, None) or os.getenv(key, default)


def setting_flag(key: str, default: bool = False, db: Optional[Database] = None) -> bool:
    raw = setting(key, "true" if default else "false", db=db)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def get_db() -> Database:
    db = Database()
    db.init()
    return db
