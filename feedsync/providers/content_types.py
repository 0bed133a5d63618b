"""Decoded Feedly records: annotations, stream entries and tag markers."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Annotation:
    """A highlight or a free-text comment. Feedly sends one or the other."""

    highlight: str | None = None
    comment: str | None = None


@dataclass(frozen=True)
class AnnotatedEntryRef:
    """The article an annotation is attached to."""

    id: str
    title: str
    crawled: int  # epoch ms
    canonical_url: str | None = None
    published: int | None = None  # epoch ms
    author: str = ""
    origin_title: str | None = None

    @property
    def pub_time(self) -> int:
        return self.published if self.published is not None else self.crawled


@dataclass(frozen=True)
class AnnotatedEntry:
    """One record of the annotations journal."""

    annotation: Annotation
    entry: AnnotatedEntryRef
    created: int  # epoch ms, when the annotation was made


@dataclass(frozen=True)
class AnnotationPage:
    entries: tuple[AnnotatedEntry, ...]
    continuation: str | None = None

    @property
    def count(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class StreamEntry:
    """A full article from a stream or from entries/.mget."""

    id: str
    title: str
    crawled: int
    canonical_url: str | None = None
    published: int | None = None
    author: str | None = None
    origin_title: str | None = None
    content_html: str | None = None
    summary_html: str | None = None
    full_content: str | None = None

    @property
    def pub_time(self) -> int:
        return self.published if self.published is not None else self.crawled

    @property
    def resolved_content(self) -> str:
        """First non-empty of rendered content, summary, full content."""
        for candidate in (self.content_html, self.summary_html, self.full_content):
            if candidate and candidate.strip():
                return candidate
        return ""


@dataclass(frozen=True)
class StreamPage:
    items: tuple[StreamEntry, ...]
    continuation: str | None = None

    @property
    def count(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class TagMarkers:
    """Entry ids grouped by tag id, as returned by markers/tags."""

    tagged_entries: dict[str, list[str]] = field(default_factory=dict)

    def find_tag(self, fragment: str) -> str | None:
        """Return the first tag id containing ``fragment``, if any."""
        for tag_id in self.tagged_entries:
            if fragment in tag_id:
                return tag_id
        return None

    def entries_for(self, tag_id: str) -> list[str]:
        return list(self.tagged_entries.get(tag_id, []))
