"""Article export: unread + saved Feedly articles bundled into one EPUB.

Phases:
1. FETCH_UNREAD: page through the unread stream (continuation kept in memory)
2. FETCH_SAVED: resolve the saved tag and batch-fetch its entries
3. ASSEMBLE: render one section per article and build the EPUB
4. WRITE: store the archive in the vault

Nothing is persisted until WRITE, so a failed export is simply re-run.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncContextManager, AsyncIterator, Callable, Iterable, Protocol

from jinja2 import Environment, FileSystemLoader

from feedsync.core.epub import (
    DEFAULT_CSS,
    TEMPLATES_DIR,
    EpubAssemblyError,
    EpubMetadata,
    EpubSection,
    assemble_epub,
)
from feedsync.core.notes import date_to_journal, sanitize_frontmatter
from feedsync.core.sync_job import missing_credentials_message, now_ms
from feedsync.providers.feedly import (
    STREAM_PAGE_SIZE,
    FeedlyAuthError,
    FeedlyError,
    FeedlyRateLimitError,
    entry_permalink,
)

if TYPE_CHECKING:
    from feedsync.core.checkpoint import SettingsStore
    from feedsync.core.vault import Vault
    from feedsync.providers.content_types import StreamEntry, StreamPage, TagMarkers

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "FeedlySync"
ARCHIVE_EXTENSION = "epub"
SAVED_TAG_FRAGMENT = "global.saved"

BOOK_PUBLISHER = "Quillcast"
BOOK_AUTHOR = "Evening Discourse"

_jinja = Environment(loader=FileSystemLoader(str(TEMPLATES_DIR)), autoescape=True)


class ExportPhase(str, Enum):
    """Phases of an article export."""

    IDLE = "idle"
    FETCH_UNREAD = "fetch_unread"
    FETCH_SAVED = "fetch_saved"
    ASSEMBLE = "assemble"
    WRITE = "write"
    DONE = "done"


class ExportStatus(str, Enum):
    """Status of an export run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportEventType(str, Enum):
    """Types of events emitted during an export."""

    STARTED = "started"
    PHASE = "phase"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExportRun:
    """Tracks one invocation of the export command."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExportStatus = ExportStatus.PENDING
    phase: ExportPhase = ExportPhase.IDLE
    unread_pages: int = 0
    unread_count: int = 0
    saved_count: int = 0
    exported_count: int = 0
    file_path: str | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "phase": self.phase.value,
            "unread_pages": self.unread_pages,
            "unread_count": self.unread_count,
            "saved_count": self.saved_count,
            "exported_count": self.exported_count,
            "file_path": self.file_path,
            "started_at": self.started_at.isoformat(),
            "error": self.error,
        }


@dataclass
class ExportEvent:
    """Event emitted during an export. ``message`` is the user-facing notice."""

    type: ExportEventType
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


class ArticleSource(Protocol):
    """Stream, tag and entry access (FeedlyClient, or a fake)."""

    async def fetch_unread(self, user_id: str, continuation: str | None = None) -> StreamPage: ...

    async def fetch_tag_markers(self) -> TagMarkers: ...

    async def fetch_entries(self, entry_ids: Iterable[str]) -> list[StreamEntry]: ...


OpenArticleSource = Callable[[str], AsyncContextManager[ArticleSource]]


def archive_name(ms: int) -> str:
    return f"{ARCHIVE_PREFIX}-{ms}.{ARCHIVE_EXTENSION}"


def book_title(when: datetime) -> str:
    # e.g. "Wed Nov 15 2023"
    return f"Your Evening Discourse for {when.strftime('%a %b %d %Y')}"


def render_article(article: StreamEntry) -> str:
    """HTML body of one section: metadata block, then the article content."""
    return _jinja.get_template("article.html.j2").render(
        article=article,
        permalink=entry_permalink(article.id),
        pub_date=date_to_journal(article.pub_time),
        author=sanitize_frontmatter(article.author or article.origin_title),
        publisher=sanitize_frontmatter(article.origin_title),
        body=article.resolved_content,
    )


async def fetch_unread_articles(source: ArticleSource, user_id: str, run: ExportRun) -> list[StreamEntry]:
    """Page through the unread stream until a short page."""
    articles: list[StreamEntry] = []
    continuation: str | None = None
    while True:
        page = await source.fetch_unread(user_id, continuation)
        run.unread_pages += 1
        articles.extend(page.items)
        if page.count < STREAM_PAGE_SIZE or not page.continuation:
            break
        continuation = page.continuation
    run.unread_count = len(articles)
    logger.info(f"Export {run.id}: {len(articles)} unread articles in {run.unread_pages} pages")
    return articles


async def fetch_saved_articles(source: ArticleSource, run: ExportRun) -> list[StreamEntry]:
    """Entries under the first tag whose id contains ``global.saved``."""
    markers = await source.fetch_tag_markers()
    tag_id = markers.find_tag(SAVED_TAG_FRAGMENT)
    if tag_id is None:
        logger.info(f"Export {run.id}: no saved tag found")
        return []
    articles = await source.fetch_entries(markers.entries_for(tag_id))
    run.saved_count = len(articles)
    logger.info(f"Export {run.id}: {len(articles)} saved articles")
    return articles


async def run_article_export(
    run: ExportRun,
    store: SettingsStore,
    vault: Vault,
    open_source: OpenArticleSource,
    *,
    clock: Callable[[], int] = now_ms,
) -> AsyncIterator[ExportEvent]:
    """Build the unread + saved EPUB, yielding events.

    Args:
        run: ExportRun to drive
        store: settings record (credentials only; nothing is saved)
        vault: document store receiving the archive
        open_source: access_token -> async context manager yielding an ArticleSource
        clock: epoch-ms clock used for the archive name

    Yields:
        ExportEvent; the last one is COMPLETED or FAILED
    """
    settings = store.load()
    missing = missing_credentials_message(settings)
    if missing:
        run.status = ExportStatus.FAILED
        run.error = missing
        yield ExportEvent(type=ExportEventType.FAILED, run_id=run.id, message=missing, data=run.to_dict())
        return

    started_ms = clock()
    file_name = archive_name(started_ms)
    run.status = ExportStatus.RUNNING
    logger.info(f"Export {run.id}: starting {file_name}")
    yield ExportEvent(
        type=ExportEventType.STARTED,
        run_id=run.id,
        message=f"Generating {file_name}",
        data=run.to_dict(),
    )

    try:
        async with open_source(settings.access_token) as source:
            run.phase = ExportPhase.FETCH_UNREAD
            yield ExportEvent(type=ExportEventType.PHASE, run_id=run.id, data=run.to_dict())
            articles = await fetch_unread_articles(source, settings.user_id, run)

            run.phase = ExportPhase.FETCH_SAVED
            yield ExportEvent(type=ExportEventType.PHASE, run_id=run.id, data=run.to_dict())
            articles.extend(await fetch_saved_articles(source, run))

        to_export = [a for a in articles if a.resolved_content]
        run.exported_count = len(to_export)
        if not to_export:
            run.phase = ExportPhase.DONE
            run.status = ExportStatus.COMPLETED
            yield ExportEvent(
                type=ExportEventType.COMPLETED,
                run_id=run.id,
                message="No unread or saved articles to export",
                data=run.to_dict(),
            )
            return

        run.phase = ExportPhase.ASSEMBLE
        yield ExportEvent(type=ExportEventType.PHASE, run_id=run.id, data=run.to_dict())
        started = datetime.fromtimestamp(started_ms / 1000)
        metadata = EpubMetadata(
            id=f"feedsync-{started_ms}",
            title=book_title(started),
            publisher=BOOK_PUBLISHER,
            author=BOOK_AUTHOR,
            modified=started.astimezone(timezone.utc),
        )
        sections = [EpubSection(title=a.title, html_body=render_article(a)) for a in to_export]
        data = assemble_epub(metadata, sections, css=DEFAULT_CSS)

        run.phase = ExportPhase.WRITE
        run.file_path = vault.write_binary(file_name, data)

        run.phase = ExportPhase.DONE
        run.status = ExportStatus.COMPLETED
        logger.info(f"Export {run.id}: wrote {run.file_path} ({len(data)} bytes)")
        yield ExportEvent(
            type=ExportEventType.COMPLETED,
            run_id=run.id,
            message=f"Generated {file_name} with {run.exported_count} articles",
            data=run.to_dict(),
        )

    except FeedlyAuthError as e:
        yield _failed(run, "Access token expired, request a new one", e)

    except FeedlyRateLimitError as e:
        yield _failed(run, "The Feedly API rate limit has been reached, try again later", e)

    except FeedlyError as e:
        yield _failed(run, str(e), e)

    except EpubAssemblyError as e:
        yield _failed(run, str(e), e)

    except Exception as e:
        logger.exception(f"Export {run.id} failed")
        yield _failed(run, f"Export failed: {e}", e)


def _failed(run: ExportRun, message: str, error: Exception) -> ExportEvent:
    logger.error(f"Export {run.id} aborted in phase {run.phase.value}: {error}")
    run.status = ExportStatus.FAILED
    run.error = str(error)
    return ExportEvent(type=ExportEventType.FAILED, run_id=run.id, message=message, data=run.to_dict())


def is_generated_archive(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    base, _, ext = name.rpartition(".")
    return ext == ARCHIVE_EXTENSION and base.startswith(ARCHIVE_PREFIX)


def delete_generated_archives(vault: Vault) -> list[str]:
    """Move every generated archive to the trash. Returns the paths removed."""
    removed = []
    for path in vault.list_files():
        if is_generated_archive(path):
            vault.trash(path)
            removed.append(path)
    logger.info(f"Deleted {len(removed)} generated archives")
    return removed
