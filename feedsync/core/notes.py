"""Markdown rendering for annotation notes."""

from __future__ import annotations

import logging
import re
from datetime import datetime

from feedsync.core.vault import normalize_path
from feedsync.providers.content_types import AnnotatedEntry
from feedsync.providers.feedly import entry_permalink

logger = logging.getLogger(__name__)

# Characters not allowed in note file names: * " \ / < > : | ?
_FORBIDDEN_CHARS = re.compile(r'[*"\\/<>:|?]')

# Most filesystems cap a name at 255 bytes; leave room for ".md"
MAX_NAME_BYTES = 200


def _truncate_utf8(name: str, limit: int) -> str:
    encoded = name.encode("utf-8")
    if len(encoded) <= limit:
        return name
    return encoded[:limit].decode("utf-8", errors="ignore").rstrip()


def sanitize_file_name(title: str) -> str:
    name = _truncate_utf8(_FORBIDDEN_CHARS.sub("", title).strip(), MAX_NAME_BYTES)
    return name or "Untitled"


def note_path(folder: str, title: str) -> str:
    return normalize_path(f"{folder}/{sanitize_file_name(title)}.md")


def sanitize_frontmatter(value: str | None) -> str:
    return (value or "").replace(":", " - ")


def date_to_journal(ms: int) -> str:
    """Epoch milliseconds -> YYYY-MM-DD in local time."""
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d")


def render_frontmatter(item: AnnotatedEntry) -> str:
    """Initial content of a new note."""
    entry = item.entry
    lines = ["---"]
    if entry.canonical_url:
        lines.append(f"url: {entry.canonical_url}")
    lines.append(f"feedlyUrl: {entry_permalink(entry.id)}")
    lines.append(f"date: {date_to_journal(item.created)}")
    lines.append(f"pubDate: {date_to_journal(entry.pub_time)}")
    lines.append(f"author: {sanitize_frontmatter(entry.author)}")
    if entry.origin_title:
        lines.append(f"publisher: {sanitize_frontmatter(entry.origin_title)}")
    lines.append("---")
    return "\n".join(lines) + "\n"


def render_annotation(item: AnnotatedEntry) -> str:
    """Text appended to the note for one annotation.

    Highlights become a blockquote, line breaks turning into quoted
    paragraph breaks. Comments become a plain paragraph.
    """
    annotation = item.annotation
    if annotation.highlight:
        quoted = annotation.highlight.replace("\n", "\n>\n> ")
        return f"\n\n> {quoted}"
    if annotation.comment:
        return f"\n\n{annotation.comment}"
    logger.warning(f"No append content for {item.entry.title!r}")
    return ""
