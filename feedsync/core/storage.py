from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass

from feedsync.core.settings import Settings


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Single-row record: credentials, sync checkpoint, target folder
CREATE TABLE IF NOT EXISTS feedly_settings (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  user_id TEXT,
  access_token TEXT,
  last_sync INTEGER,
  continuation_time INTEGER,
  continuation_token TEXT,
  annotations_folder TEXT,
  updated_at TEXT DEFAULT (datetime('now'))
);
"""


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()


_db: DB | None = None


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    global _db
    from feedsync.core.checkpoint import init_settings_store

    s = Settings.from_env()
    os.makedirs(os.path.dirname(s.db_path), exist_ok=True)

    conn = connect(s.db_path)
    _db = DB(conn=conn)
    _db.init()

    init_settings_store(conn, s)


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
