from __future__ import annotations

import logging
from typing import AsyncIterator

from fastapi import FastAPI, Form
from fastapi.responses import JSONResponse, StreamingResponse

from feedsync.core.checkpoint import get_settings_store
from feedsync.core.export_job import ExportRun, delete_generated_archives, run_article_export
from feedsync.core.settings import Settings
from feedsync.core.storage import init_db
from feedsync.core.sync_job import SyncRun, run_annotation_sync
from feedsync.core.vault import Vault
from feedsync.providers.feedly import FeedlyClient

logger = logging.getLogger(__name__)

app = FastAPI(title="feedsync")

# Commands currently in flight; each command runs at most once at a time
_running: set[str] = set()

_vault: Vault | None = None


@app.on_event("startup")
def _startup() -> None:
    global _vault
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    _vault = Vault(s.vault_dir)
    _vault.root.mkdir(parents=True, exist_ok=True)


def get_vault() -> Vault:
    assert _vault is not None, "Vault not initialized"
    return _vault


def open_feedly(access_token: str) -> FeedlyClient:
    s = Settings.from_env()
    return FeedlyClient(
        access_token,
        base_url=s.feedly_api_base_url,
        timeout=s.feedly_http_timeout,
    )


class CommandStream(StreamingResponse):
    """SSE response holding a command slot until the response is over.

    The slot is released even if the client goes away before the event
    generator is first advanced.
    """

    def __init__(self, command: str, events: AsyncIterator[str]) -> None:
        super().__init__(
            events,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        self.command = command

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            _running.discard(self.command)


def _busy(command: str) -> JSONResponse:
    return JSONResponse({"error": f"{command} already running"}, status_code=409)


# ==================== Settings ====================


@app.get("/settings")
def settings_show():
    """Current settings and sync checkpoint, access token masked."""
    return get_settings_store().load().redacted()


@app.post("/settings")
def settings_update(
    user_id: str | None = Form(None),
    access_token: str | None = Form(None),
    annotations_folder: str | None = Form(None),
):
    """Update credentials and target folder. Checkpoint fields are left alone."""
    store = get_settings_store()
    store.update_preferences(
        user_id=user_id.strip() if user_id is not None else None,
        access_token=access_token.strip() if access_token is not None else None,
        annotations_folder=(annotations_folder or "").strip() or None,
    )
    return store.load().redacted()


# ==================== Commands ====================


@app.post("/commands/sync")
async def command_sync():
    """Sync annotated articles into Markdown notes. Streams SSE events."""
    if "sync" in _running:
        return _busy("sync")
    _running.add("sync")
    run = SyncRun()

    async def event_generator():
        async for event in run_annotation_sync(run, get_settings_store(), get_vault(), open_feedly):
            if event.message:
                logger.info(event.message)
            yield event.to_sse()

    return CommandStream("sync", event_generator())


@app.post("/commands/export")
async def command_export():
    """Generate the unread + saved EPUB. Streams SSE events."""
    if "export" in _running:
        return _busy("export")
    _running.add("export")
    run = ExportRun()

    async def event_generator():
        async for event in run_article_export(run, get_settings_store(), get_vault(), open_feedly):
            if event.message:
                logger.info(event.message)
            yield event.to_sse()

    return CommandStream("export", event_generator())


@app.post("/commands/cleanup")
def command_cleanup():
    """Delete all generated Feedly EPUB files."""
    removed = delete_generated_archives(get_vault())
    return {"deleted": len(removed), "files": removed}
