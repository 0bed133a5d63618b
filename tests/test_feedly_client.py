"""Tests for providers/feedly.py"""

import json

import httpx
import pytest

from feedsync.providers.feedly import (
    FeedlyApiError,
    FeedlyAuthError,
    FeedlyClient,
    FeedlyDecodeError,
    FeedlyRateLimitError,
    parse_annotation_page,
    parse_stream_entry,
    parse_tag_markers,
)


def make_client(handler, token="tok-123"):
    return FeedlyClient(
        token,
        base_url="https://cloud.feedly.com/v3",
        transport=httpx.MockTransport(handler),
    )


ANNOTATION_ITEM = {
    "annotation": {"highlight": {"text": "A quote"}},
    "entry": {
        "id": "entry/1",
        "title": "AI & Chips",
        "crawled": 1700049600000,
        "published": 1699963200000,
        "canonicalUrl": "https://example.com/ai",
        "author": "Jane",
        "origin": {"title": "Example News"},
    },
    "created": 1700049600000,
}


class TestCall:
    """Tests for FeedlyClient.call."""

    @pytest.mark.asyncio
    async def test_sends_bearer_and_accept_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["accept"] = request.headers.get("Accept")
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"ok": True})

        async with make_client(handler) as client:
            data = await client.call("markers/tags")

        assert data == {"ok": True}
        assert seen["auth"] == "Bearer tok-123"
        assert seen["accept"] == "application/json"
        assert seen["url"] == "https://cloud.feedly.com/v3/markers/tags"

    @pytest.mark.asyncio
    async def test_serializes_body_as_json(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=[])

        async with make_client(handler) as client:
            await client.call("entries/.mget", "POST", ["a", "b"])

        assert seen["method"] == "POST"
        assert seen["body"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_401_raises_auth_error(self):
        async with make_client(lambda r: httpx.Response(401)) as client:
            with pytest.raises(FeedlyAuthError):
                await client.call("markers/tags")

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit_error(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "120"})

        async with make_client(handler) as client:
            with pytest.raises(FeedlyRateLimitError) as exc_info:
                await client.call("markers/tags")
        assert exc_info.value.retry_after == 120.0

    @pytest.mark.asyncio
    async def test_other_status_raises_api_error(self):
        async with make_client(lambda r: httpx.Response(503)) as client:
            with pytest.raises(FeedlyApiError) as exc_info:
                await client.call("markers/tags")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_embedded_error_code_raises_api_error(self):
        def handler(request):
            return httpx.Response(200, json={"errorCode": 400, "errorMessage": "bad stream"})

        async with make_client(handler) as client:
            with pytest.raises(FeedlyApiError) as exc_info:
                await client.call("streams/contents")
        assert exc_info.value.error_code == 400
        assert "bad stream" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_json_raises_decode_error(self):
        async with make_client(lambda r: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(FeedlyDecodeError):
                await client.call("markers/tags")

    @pytest.mark.asyncio
    async def test_no_retry_on_rate_limit(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429)

        async with make_client(handler) as client:
            with pytest.raises(FeedlyRateLimitError):
                await client.call("markers/tags")
        assert len(calls) == 1

    def test_empty_token_rejected(self):
        with pytest.raises(ValueError):
            FeedlyClient("")


class TestEndpoints:
    """Tests for the endpoint helpers."""

    @pytest.mark.asyncio
    async def test_fetch_annotations_query(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"entries": [ANNOTATION_ITEM], "continuation": "c2"})

        async with make_client(handler) as client:
            page = await client.fetch_annotations(1234, "c1")

        assert seen["path"] == "/v3/annotations/journal"
        assert seen["params"] == {
            "newerThan": "1234",
            "withEntries": "true",
            "count": "100",
            "continuation": "c1",
        }
        assert page.count == 1
        assert page.continuation == "c2"
        assert page.entries[0].annotation.highlight == "A quote"

    @pytest.mark.asyncio
    async def test_fetch_annotations_without_continuation(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"entries": []})

        async with make_client(handler) as client:
            page = await client.fetch_annotations(0)

        assert "continuation" not in seen["params"]
        assert page.count == 0
        assert page.continuation is None

    @pytest.mark.asyncio
    async def test_fetch_unread_query(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"items": []})

        async with make_client(handler) as client:
            await client.fetch_unread("user-1")

        assert seen["params"]["streamId"] == "user/user-1/category/global.all"
        assert seen["params"]["unreadOnly"] == "true"
        assert seen["params"]["count"] == "250"

    @pytest.mark.asyncio
    async def test_fetch_entries_empty_makes_no_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[])

        async with make_client(handler) as client:
            assert await client.fetch_entries([]) == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_fetch_entries_decodes_list(self):
        def handler(request):
            return httpx.Response(
                200,
                json=[{"id": "e1", "title": "T", "crawled": 1, "summary": {"content": "<p>s</p>"}}],
            )

        async with make_client(handler) as client:
            entries = await client.fetch_entries(["e1"])
        assert entries[0].resolved_content == "<p>s</p>"


class TestDecoding:
    """Tests for payload decoding."""

    def test_annotated_entry_fields(self):
        page = parse_annotation_page({"entries": [ANNOTATION_ITEM]})
        item = page.entries[0]
        assert item.created == 1700049600000
        assert item.entry.id == "entry/1"
        assert item.entry.canonical_url == "https://example.com/ai"
        assert item.entry.origin_title == "Example News"
        assert item.entry.pub_time == 1699963200000

    def test_comment_annotation(self):
        raw = {**ANNOTATION_ITEM, "annotation": {"comment": "Nice"}}
        item = parse_annotation_page({"entries": [raw]}).entries[0]
        assert item.annotation.highlight is None
        assert item.annotation.comment == "Nice"

    def test_missing_required_field(self):
        raw = {**ANNOTATION_ITEM, "entry": {"id": "x", "title": "No crawled"}}
        with pytest.raises(FeedlyDecodeError, match="crawled"):
            parse_annotation_page({"entries": [raw]})

    def test_missing_entries_list(self):
        with pytest.raises(FeedlyDecodeError):
            parse_annotation_page({"continuation": "x"})

    def test_wrong_type(self):
        raw = {**ANNOTATION_ITEM, "created": "yesterday"}
        with pytest.raises(FeedlyDecodeError):
            parse_annotation_page({"entries": [raw]})

    def test_stream_entry_content_precedence(self):
        entry = parse_stream_entry({
            "id": "e",
            "crawled": 5,
            "content": {"content": ""},
            "summary": {"content": "summary"},
            "fullContent": "full",
        })
        assert entry.resolved_content == "summary"
        assert entry.title == "Untitled"
        assert entry.pub_time == 5

    def test_stream_entry_without_content(self):
        entry = parse_stream_entry({"id": "e", "title": "T", "crawled": 5})
        assert entry.resolved_content == ""

    def test_tag_markers_first_saved_match(self):
        markers = parse_tag_markers({
            "taggedEntries": {
                "user/u/tag/reading": ["a"],
                "user/u/tag/global.saved": ["b", "c"],
                "user/u/tag/global.saved.extra": ["d"],
            }
        })
        tag = markers.find_tag("global.saved")
        assert tag == "user/u/tag/global.saved"
        assert markers.entries_for(tag) == ["b", "c"]
        assert markers.find_tag("nope") is None

    def test_tag_markers_bad_shape(self):
        with pytest.raises(FeedlyDecodeError):
            parse_tag_markers({"taggedEntries": {"t": "not-a-list"}})
