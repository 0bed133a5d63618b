"""Annotation sync: resumable, paged download of the Feedly annotations journal.

Provides:
- SyncRun state machine (IDLE -> FETCHING_PAGE -> MERGING -> ... -> COMPLETED | PAUSED)
- SyncEvent for SSE streaming
- run_annotation_sync() async generator

Checkpoint policy: the continuation token is persisted after every full page,
and ``last_sync`` only advances after the last (short) page. An interrupted
run therefore resumes at the page after the last one merged.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncContextManager, AsyncIterator, Callable, Protocol

from feedsync.core.checkpoint import DEFAULT_ANNOTATIONS_FOLDER, FeedlySettings
from feedsync.core.notes import note_path, render_annotation, render_frontmatter
from feedsync.providers.feedly import (
    ANNOTATIONS_PAGE_SIZE,
    FeedlyAuthError,
    FeedlyError,
    FeedlyRateLimitError,
)

if TYPE_CHECKING:
    from feedsync.core.checkpoint import SettingsStore
    from feedsync.core.vault import Vault
    from feedsync.providers.content_types import AnnotatedEntry, AnnotationPage

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """States of an annotation sync run."""

    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    MERGING = "merging"
    COMPLETING = "completing"
    COMPLETED = "completed"
    PAUSED = "paused"


class PauseReason(str, Enum):
    """Why a sync run stopped before completing."""

    CONFIG_MISSING = "config_missing"
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"
    UNEXPECTED = "unexpected"


_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.FETCHING_PAGE}),
    SyncState.FETCHING_PAGE: frozenset({SyncState.MERGING}),
    SyncState.MERGING: frozenset({SyncState.FETCHING_PAGE, SyncState.COMPLETING}),
    SyncState.COMPLETING: frozenset({SyncState.COMPLETED}),
    SyncState.COMPLETED: frozenset(),
    SyncState.PAUSED: frozenset(),
}

TERMINAL_STATES = frozenset({SyncState.COMPLETED, SyncState.PAUSED})


@dataclass
class SyncRun:
    """Tracks one invocation of the sync command."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SyncState = SyncState.IDLE
    pause_reason: PauseReason | None = None
    resumed: bool = False  # started from a stored continuation token
    pages_fetched: int = 0
    entries_merged: int = 0
    notes_created: int = 0
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self) -> None:
        """Update last_activity timestamp."""
        self.last_activity = datetime.now(timezone.utc)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: SyncState) -> None:
        """Move to ``new_state``; raises RuntimeError on an illegal edge."""
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal sync transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Sync {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.touch()

    def pause(self, reason: PauseReason, error: str | None = None) -> None:
        """Stop the run. Allowed from any non-terminal state."""
        if self.finished:
            raise RuntimeError(f"Cannot pause a {self.state.value} sync")
        self.state = SyncState.PAUSED
        self.pause_reason = reason
        self.error = error
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "state": self.state.value,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "resumed": self.resumed,
            "pages_fetched": self.pages_fetched,
            "entries_merged": self.entries_merged,
            "notes_created": self.notes_created,
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "error": self.error,
        }


class SyncEventType(str, Enum):
    """Types of events emitted during a sync."""

    STARTED = "started"
    PAGE_MERGED = "page_merged"
    COMPLETED = "completed"
    PAUSED = "paused"


@dataclass
class SyncEvent:
    """Event emitted during a sync. ``message`` is the user-facing notice."""

    type: SyncEventType
    run_id: str
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        event_data = {
            "type": self.type.value,
            "run_id": self.run_id,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        return f"event: {self.type.value}\ndata: {json.dumps(event_data)}\n\n"


class AnnotationSource(Protocol):
    """Paged access to the annotations journal (FeedlyClient, or a fake)."""

    async def fetch_annotations(
        self,
        newer_than: int,
        continuation: str | None = None,
    ) -> AnnotationPage: ...


OpenAnnotationSource = Callable[[str], AsyncContextManager[AnnotationSource]]


def now_ms() -> int:
    return int(time.time() * 1000)


def missing_credentials_message(settings: FeedlySettings) -> str | None:
    if not settings.user_id:
        return "Missing Feedly user id"
    if not settings.access_token:
        return "Missing Feedly access token"
    return None


def merge_entry(item: AnnotatedEntry, folder: str, vault: Vault, run: SyncRun) -> None:
    """Append one annotation to the note for its title, creating the note if needed."""
    path = note_path(folder, item.entry.title)
    if not vault.file_exists(path):
        vault.create(path, render_frontmatter(item))
        run.notes_created += 1
    content = render_annotation(item)
    if content:
        vault.append(path, content)
    run.entries_merged += 1


def _checkpoint(store: SettingsStore, settings: FeedlySettings) -> None:
    store.save_checkpoint(
        last_sync=settings.last_sync,
        continuation_time=settings.continuation_time,
        continuation_token=settings.continuation_token,
    )


def _paused_event(run: SyncRun, message: str) -> SyncEvent:
    return SyncEvent(
        type=SyncEventType.PAUSED,
        run_id=run.id,
        message=f"{message}. Synced {run.entries_merged} annotations",
        data=run.to_dict(),
    )


async def run_annotation_sync(
    run: SyncRun,
    store: SettingsStore,
    vault: Vault,
    open_source: OpenAnnotationSource,
    *,
    clock: Callable[[], int] = now_ms,
) -> AsyncIterator[SyncEvent]:
    """Run (or resume) an annotation sync, yielding events.

    Args:
        run: SyncRun to drive; must be IDLE
        store: persistence for the settings/checkpoint record
        vault: document store receiving the notes
        open_source: access_token -> async context manager yielding an AnnotationSource
        clock: epoch-ms clock, captured as continuation_time on a fresh sync

    Yields:
        SyncEvent; the last one is COMPLETED or PAUSED
    """
    settings = store.load()

    missing = missing_credentials_message(settings)
    if missing:
        run.pause(PauseReason.CONFIG_MISSING, missing)
        yield _paused_event(run, missing)
        return

    if settings.continuation_token is None:
        # Anchor the next lower bound before touching the network
        settings.continuation_time = clock()
        _checkpoint(store, settings)
    else:
        run.resumed = True
        if settings.continuation_time is None:
            logger.warning("Resuming sync without continuation_time; anchoring to now")
            settings.continuation_time = clock()
            _checkpoint(store, settings)

    folder = settings.annotations_folder or DEFAULT_ANNOTATIONS_FOLDER
    newer_than = settings.last_sync or 0
    token = settings.continuation_token

    yield SyncEvent(
        type=SyncEventType.STARTED,
        run_id=run.id,
        message=(
            "Resuming download of Feedly annotations"
            if run.resumed
            else "Beginning to download Feedly annotations"
        ),
        data={"newer_than": newer_than, **run.to_dict()},
    )

    try:
        if not vault.folder_exists(folder):
            vault.create_folder(folder)

        async with open_source(settings.access_token) as source:
            while True:
                run.transition(SyncState.FETCHING_PAGE)
                page = await source.fetch_annotations(newer_than, token)
                run.pages_fetched += 1

                run.transition(SyncState.MERGING)
                for item in page.entries:
                    merge_entry(item, folder, vault, run)

                # Also final: a full page with no continuation token has no next page
                if page.count < ANNOTATIONS_PAGE_SIZE or not page.continuation:
                    logger.debug(f"Last page: only got {page.count} entries")
                    run.transition(SyncState.COMPLETING)
                    settings.continuation_token = None
                    settings.last_sync = settings.continuation_time
                    _checkpoint(store, settings)
                    run.transition(SyncState.COMPLETED)
                    logger.info(
                        f"Sync {run.id} completed: {run.entries_merged} annotations, "
                        f"{run.pages_fetched} pages"
                    )
                    yield SyncEvent(
                        type=SyncEventType.COMPLETED,
                        run_id=run.id,
                        message=(
                            "All Feedly annotations synced. "
                            f"Synced {run.entries_merged} annotations"
                        ),
                        data=run.to_dict(),
                    )
                    return

                token = page.continuation
                settings.continuation_token = token
                _checkpoint(store, settings)
                yield SyncEvent(
                    type=SyncEventType.PAGE_MERGED,
                    run_id=run.id,
                    data={"page_count": page.count, **run.to_dict()},
                )

    except FeedlyAuthError as e:
        logger.error(f"Sync {run.id}: access token expired")
        run.pause(PauseReason.AUTH_EXPIRED, str(e))
        yield _paused_event(run, "Access token expired, request a new one")

    except FeedlyRateLimitError as e:
        logger.warning(f"Sync {run.id}: rate limited after {run.pages_fetched} pages")
        run.pause(PauseReason.RATE_LIMITED, str(e))
        yield _paused_event(run, "The Feedly API rate limit has been reached, continue later")

    except FeedlyError as e:
        logger.error(f"Sync {run.id}: Feedly API error: {e}")
        run.pause(PauseReason.API_ERROR, str(e))
        yield _paused_event(run, str(e))

    except Exception as e:
        logger.exception(f"Sync {run.id} failed")
        run.pause(PauseReason.UNEXPECTED, str(e))
        yield _paused_event(run, f"Sync failed: {e}")
