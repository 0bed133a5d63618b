"""Persisted Feedly settings and sync checkpoint."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from feedsync.core.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_ANNOTATIONS_FOLDER = "Feedly Annotations"

@dataclass
class FeedlySettings:
    """Credentials plus sync progress.

    ``continuation_token`` is set only while a sync is mid-flight. While it is
    set, ``last_sync`` must not move; ``continuation_time`` becomes the new
    ``last_sync`` once the sync reaches its last page.
    """

    user_id: str = ""
    access_token: str = ""
    last_sync: int | None = None  # epoch ms
    continuation_time: int | None = None  # epoch ms
    continuation_token: str | None = None
    annotations_folder: str = DEFAULT_ANNOTATIONS_FOLDER

    @property
    def has_credentials(self) -> bool:
        return bool(self.user_id) and bool(self.access_token)

    @property
    def sync_in_progress(self) -> bool:
        return self.continuation_token is not None

    def copy(self) -> FeedlySettings:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "last_sync": self.last_sync,
            "continuation_time": self.continuation_time,
            "continuation_token": self.continuation_token,
            "annotations_folder": self.annotations_folder,
        }

    def redacted(self) -> dict[str, Any]:
        """to_dict() with the access token masked, for display."""
        d = self.to_dict()
        if self.access_token:
            d["access_token"] = "****" + self.access_token[-4:]
        return d

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FeedlySettings:
        return cls(
            user_id=row["user_id"] or "",
            access_token=row["access_token"] or "",
            last_sync=row["last_sync"],
            continuation_time=row["continuation_time"],
            continuation_token=row["continuation_token"],
            annotations_folder=row["annotations_folder"] or DEFAULT_ANNOTATIONS_FOLDER,
        )

class SettingsStore:
    """Loads and saves the single FeedlySettings row. Thread-safe."""

    def __init__(self, conn: sqlite3.Connection, env: Settings | None = None) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        self._seed_user_id = env.feedly_user_id if env else ""
        self._seed_access_token = env.feedly_access_token if env else ""

    def load(self) -> FeedlySettings:
        """Return a fresh copy of the stored record, defaults applied."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT user_id, access_token, last_sync, continuation_time,
                       continuation_token, annotations_folder
                FROM feedly_settings
                WHERE id = 1
                """
            ).fetchone()
        settings = FeedlySettings.from_row(row) if row else FeedlySettings()
        if not settings.user_id:
            settings.user_id = self._seed_user_id
        if not settings.access_token:
            settings.access_token = self._seed_access_token
        return settings

    def _upsert(self, values: dict[str, Any]) -> None:
        """Write only the given columns of the single row and commit."""
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        updates = ", ".join(f"{c} = excluded.{c}" for c in values)
        with self._lock:
            self._conn.execute(
                f"""
                INSERT INTO feedly_settings (id, {columns}, updated_at)
                VALUES (1, {placeholders}, datetime('now'))
                ON CONFLICT(id) DO UPDATE SET
                    {updates},
                    updated_at = excluded.updated_at
                """,
                tuple(values.values()),
            )
            self._conn.commit()

    def save(self, settings: FeedlySettings) -> None:
        """Replace the whole record.

        Writers that run concurrently use save_checkpoint() and
        update_preferences() instead, which leave each other's columns alone.
        """
        self._upsert(settings.to_dict())

    def save_checkpoint(
        self,
        *,
        last_sync: int | None,
        continuation_time: int | None,
        continuation_token: str | None,
    ) -> None:
        """Persist sync progress. Credentials and folder are untouched."""
        self._upsert(
            {
                "last_sync": last_sync,
                "continuation_time": continuation_time,
                "continuation_token": continuation_token,
            }
        )
        logger.debug(
            f"Saved checkpoint: last_sync={last_sync} "
            f"continuation_time={continuation_time} "
            f"in_progress={continuation_token is not None}"
        )

    def update_preferences(
        self,
        *,
        user_id: str | None = None,
        access_token: str | None = None,
        annotations_folder: str | None = None,
    ) -> None:
        """Persist the given credentials/folder. Sync progress is untouched."""
        values = {
            "user_id": user_id,
            "access_token": access_token,
            "annotations_folder": annotations_folder,
        }
        values = {k: v for k, v in values.items() if v is not None}
        if values:
            self._upsert(values)


# Global store instance
_store: SettingsStore | None = None


def init_settings_store(conn: sqlite3.Connection, env: Settings | None = None) -> None:
    """Initialize the global SettingsStore with DB connection."""
    global _store
    _store = SettingsStore(conn, env)

def get_settings_store() -> SettingsStore:
    """Get the global SettingsStore. Must call init_settings_store first."""
    if _store is None:
        raise RuntimeError("SettingsStore not initialized. Call init_settings_store first.")
    return _store
