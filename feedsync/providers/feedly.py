"""Feedly cloud API client."""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from feedsync.providers.content_types import (
    AnnotatedEntry,
    AnnotatedEntryRef,
    Annotation,
    AnnotationPage,
    StreamEntry,
    StreamPage,
    TagMarkers,
)

logger = logging.getLogger(__name__)

FEEDLY_BASE_URL = "https://cloud.feedly.com/v3"
FEEDLY_ENTRY_URL = "https://feedly.com/i/entry/"

ANNOTATIONS_PAGE_SIZE = 100
STREAM_PAGE_SIZE = 250


class FeedlyError(Exception):
    """Base exception for Feedly API errors."""


class FeedlyAuthError(FeedlyError):
    """Access token missing, invalid or expired (HTTP 401)."""


class FeedlyRateLimitError(FeedlyError):
    """API rate limit reached (HTTP 429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class FeedlyApiError(FeedlyError):
    """Non-success status, or a 200 response carrying an errorCode."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: int | str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class FeedlyDecodeError(FeedlyError):
    """Response payload is missing a required field or has the wrong shape."""


def entry_permalink(entry_id: str) -> str:
    return f"{FEEDLY_ENTRY_URL}{entry_id}"


def unread_stream_id(user_id: str) -> str:
    return f"user/{user_id}/category/global.all"


class FeedlyClient:
    """Async client for the Feedly v3 API.

    Every call is a single request: no retries. Callers decide what to do
    with FeedlyAuthError / FeedlyRateLimitError.
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = FEEDLY_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("Feedly access token is required")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "FeedlyClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def call(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        *,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON payload.

        Raises:
            FeedlyAuthError: on HTTP 401
            FeedlyRateLimitError: on HTTP 429
            FeedlyApiError: on any other error status or an embedded errorCode
            FeedlyDecodeError: if the body is not JSON
        """
        logger.debug(f"{method} {path} params={params}")
        kwargs: dict[str, Any] = {"params": params}
        if body is not None:
            kwargs["json"] = body
        resp = await self._client.request(method, path, **kwargs)

        if resp.status_code == 401:
            raise FeedlyAuthError("Access token expired, request a new one")

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            try:
                wait = float(retry_after) if retry_after else None
            except ValueError:
                wait = None
            raise FeedlyRateLimitError("API rate limit reached", retry_after=wait)

        if resp.is_error:
            raise FeedlyApiError(
                f"Feedly request {method} {path} failed with status {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise FeedlyDecodeError(f"Invalid JSON from {path}: {e}") from e

        if isinstance(payload, dict) and payload.get("errorCode"):
            message = payload.get("errorMessage") or f"error code {payload['errorCode']}"
            raise FeedlyApiError(
                f"Feedly API error: {message}",
                status_code=resp.status_code,
                error_code=payload["errorCode"],
            )
        return payload

    # --- Endpoints ---

    async def fetch_annotations(
        self,
        newer_than: int,
        continuation: str | None = None,
    ) -> AnnotationPage:
        """Fetch one page of the annotations journal, entries included."""
        params = {
            "newerThan": str(newer_than),
            "withEntries": "true",
            "count": str(ANNOTATIONS_PAGE_SIZE),
        }
        if continuation:
            params["continuation"] = continuation
        data = await self.call("annotations/journal", params=params)
        return parse_annotation_page(data)

    async def fetch_unread(
        self,
        user_id: str,
        continuation: str | None = None,
    ) -> StreamPage:
        """Fetch one page of unread articles across all categories."""
        params = {
            "streamId": unread_stream_id(user_id),
            "unreadOnly": "true",
            "count": str(STREAM_PAGE_SIZE),
        }
        if continuation:
            params["continuation"] = continuation
        data = await self.call("streams/contents", params=params)
        return parse_stream_page(data)

    async def fetch_tag_markers(self) -> TagMarkers:
        data = await self.call("markers/tags")
        return parse_tag_markers(data)

    async def fetch_entries(self, entry_ids: Iterable[str]) -> list[StreamEntry]:
        """Batch-fetch full entries by id."""
        ids = list(entry_ids)
        if not ids:
            return []
        data = await self.call("entries/.mget", "POST", ids)
        if not isinstance(data, list):
            raise FeedlyDecodeError("entries/.mget did not return a list")
        return [parse_stream_entry(item) for item in data]


# --- Decoding ---


def _require(obj: Any, key: str, kind: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(obj, dict):
        raise FeedlyDecodeError(f"{where}: expected an object, got {type(obj).__name__}")
    if key not in obj or obj[key] is None:
        raise FeedlyDecodeError(f"{where}: missing required field '{key}'")
    value = obj[key]
    if isinstance(value, bool) or not isinstance(value, kind):
        raise FeedlyDecodeError(f"{where}: field '{key}' has unexpected type {type(value).__name__}")
    return value


def _optional(obj: dict, key: str, kind: type | tuple[type, ...], where: str) -> Any:
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, kind):
        raise FeedlyDecodeError(f"{where}: field '{key}' has unexpected type {type(value).__name__}")
    return value


def _nested_text(obj: dict, key: str, field_name: str, where: str) -> str | None:
    """Read obj[key][field_name] where obj[key] is an optional object."""
    inner = obj.get(key)
    if inner is None:
        return None
    if not isinstance(inner, dict):
        raise FeedlyDecodeError(f"{where}: field '{key}' must be an object")
    return _optional(inner, field_name, str, f"{where}.{key}")


def _ms(value: int | float) -> int:
    return int(value)


def parse_annotated_entry(item: Any) -> AnnotatedEntry:
    where = "annotation"
    annotation = _require(item, "annotation", dict, where)
    entry = _require(item, "entry", dict, where)
    created = _require(item, "created", (int, float), where)

    highlight = _nested_text(annotation, "highlight", "text", f"{where}.annotation")
    comment = _optional(annotation, "comment", str, f"{where}.annotation")

    ew = f"{where}.entry"
    published = _optional(entry, "published", (int, float), ew)
    ref = AnnotatedEntryRef(
        id=_require(entry, "id", str, ew),
        title=_require(entry, "title", str, ew),
        crawled=_ms(_require(entry, "crawled", (int, float), ew)),
        canonical_url=_optional(entry, "canonicalUrl", str, ew),
        published=_ms(published) if published is not None else None,
        author=_optional(entry, "author", str, ew) or "",
        origin_title=_nested_text(entry, "origin", "title", ew),
    )

    return AnnotatedEntry(
        annotation=Annotation(highlight=highlight, comment=comment),
        entry=ref,
        created=_ms(created),
    )


def parse_annotation_page(data: Any) -> AnnotationPage:
    entries = _require(data, "entries", list, "annotations/journal")
    return AnnotationPage(
        entries=tuple(parse_annotated_entry(e) for e in entries),
        continuation=_optional(data, "continuation", str, "annotations/journal"),
    )


def parse_stream_entry(item: Any) -> StreamEntry:
    where = "entry"
    if not isinstance(item, dict):
        raise FeedlyDecodeError(f"{where}: expected an object, got {type(item).__name__}")
    published = _optional(item, "published", (int, float), where)
    return StreamEntry(
        id=_require(item, "id", str, where),
        title=_optional(item, "title", str, where) or "Untitled",
        crawled=_ms(_require(item, "crawled", (int, float), where)),
        canonical_url=_optional(item, "canonicalUrl", str, where),
        published=_ms(published) if published is not None else None,
        author=_optional(item, "author", str, where),
        origin_title=_nested_text(item, "origin", "title", where),
        content_html=_nested_text(item, "content", "content", where),
        summary_html=_nested_text(item, "summary", "content", where),
        full_content=_optional(item, "fullContent", str, where),
    )


def parse_stream_page(data: Any) -> StreamPage:
    items = _require(data, "items", list, "streams/contents")
    return StreamPage(
        items=tuple(parse_stream_entry(i) for i in items),
        continuation=_optional(data, "continuation", str, "streams/contents"),
    )


def parse_tag_markers(data: Any) -> TagMarkers:
    tagged = _require(data, "taggedEntries", dict, "markers/tags")
    result: dict[str, list[str]] = {}
    for tag_id, entry_ids in tagged.items():
        if not isinstance(entry_ids, list) or not all(isinstance(x, str) for x in entry_ids):
            raise FeedlyDecodeError(f"markers/tags: entries of '{tag_id}' must be a list of ids")
        result[tag_id] = entry_ids
    return TagMarkers(tagged_entries=result)
