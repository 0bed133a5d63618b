"""Tests for notes.py and vault.py"""

import pytest

from feedsync.core.notes import (
    date_to_journal,
    note_path,
    render_annotation,
    render_frontmatter,
    sanitize_file_name,
    sanitize_frontmatter,
)
from feedsync.core.vault import Vault, normalize_path
from feedsync.providers.content_types import AnnotatedEntry, AnnotatedEntryRef, Annotation

# 2023-11-15 12:00 UTC: the same calendar day in every common timezone
NOON_MS = 1700049600000
DAY_BEFORE_MS = NOON_MS - 86_400_000


def make_item(highlight=None, comment=None, **entry_kwargs):
    entry = {
        "id": "entry/1",
        "title": "AI & Chips",
        "crawled": NOON_MS,
        **entry_kwargs,
    }
    return AnnotatedEntry(
        annotation=Annotation(highlight=highlight, comment=comment),
        entry=AnnotatedEntryRef(**entry),
        created=NOON_MS,
    )


class TestFileNames:
    """Tests for note path construction."""

    def test_forbidden_characters_removed(self):
        assert sanitize_file_name('a*b"c/d\\e<f>g:h|i?j') == "abcdefghij"

    def test_ampersand_kept(self):
        assert sanitize_file_name("AI & Chips") == "AI & Chips"

    def test_blank_title(self):
        assert sanitize_file_name("???") == "Untitled"

    def test_long_title_truncated(self):
        name = sanitize_file_name("x" * 300)
        assert name == "x" * 200

    def test_long_multibyte_title_cut_on_character_boundary(self):
        name = sanitize_file_name("漢" * 100)
        assert len(name.encode("utf-8")) <= 200
        assert name == "漢" * 66

    def test_note_path(self):
        assert note_path("Feedly Annotations", "What? Why: now") == "Feedly Annotations/What Why now.md"

    def test_note_path_normalizes_folder(self):
        assert note_path("/notes//feedly/", "T") == "notes/feedly/T.md"


class TestFrontmatter:
    """Tests for the initial note content."""

    def test_full_frontmatter(self):
        item = make_item(
            highlight="x",
            canonical_url="https://example.com/a",
            published=DAY_BEFORE_MS,
            author="Jane: Doe",
            origin_title="Example: News",
        )
        assert render_frontmatter(item) == (
            "---\n"
            "url: https://example.com/a\n"
            "feedlyUrl: https://feedly.com/i/entry/entry/1\n"
            "date: 2023-11-15\n"
            "pubDate: 2023-11-14\n"
            "author: Jane -  Doe\n"
            "publisher: Example -  News\n"
            "---\n"
        )

    def test_optional_lines_omitted(self):
        text = render_frontmatter(make_item(highlight="x"))
        assert "url: " not in text.replace("feedlyUrl: ", "")
        assert "publisher:" not in text
        assert "pubDate: 2023-11-15" in text  # falls back to crawled
        assert "author: \n" in text

    def test_sanitize_frontmatter(self):
        assert sanitize_frontmatter("a:b") == "a - b"
        assert sanitize_frontmatter(None) == ""

    def test_date_to_journal(self):
        assert date_to_journal(NOON_MS) == "2023-11-15"


class TestAnnotationContent:
    """Tests for appended annotation content."""

    def test_highlight_is_blockquote(self):
        assert render_annotation(make_item(highlight="One line")) == "\n\n> One line"

    def test_highlight_line_breaks_become_quoted_paragraphs(self):
        assert render_annotation(make_item(highlight="first\nsecond")) == "\n\n> first\n>\n> second"

    def test_comment_is_paragraph(self):
        assert render_annotation(make_item(comment="My thought")) == "\n\nMy thought"

    def test_highlight_wins_over_comment(self):
        assert render_annotation(make_item(highlight="h", comment="c")) == "\n\n> h"

    def test_neither_gives_nothing(self):
        assert render_annotation(make_item()) == ""


class TestVault:
    """Tests for the filesystem document store."""

    @pytest.fixture
    def vault(self, tmp_path):
        return Vault(tmp_path)

    def test_normalize_path(self):
        assert normalize_path("//a\\b//c.md/") == "a/b/c.md"

    def test_folder_lifecycle(self, vault):
        assert vault.folder_exists("Notes") is False
        vault.create_folder("Notes")
        assert vault.folder_exists("Notes") is True

    def test_create_and_append(self, vault):
        vault.create("Notes/a.md", "---\n")
        vault.append("Notes/a.md", "\n\n> q")
        assert vault.file_exists("Notes/a.md")
        assert vault.read("Notes/a.md") == "---\n\n\n> q"

    def test_create_refuses_overwrite(self, vault):
        vault.create("a.md", "one")
        with pytest.raises(FileExistsError):
            vault.create("a.md", "two")

    def test_append_missing_file(self, vault):
        with pytest.raises(FileNotFoundError):
            vault.append("missing.md", "x")

    def test_path_escape_rejected(self, vault):
        with pytest.raises(ValueError):
            vault.create("../outside.md", "x")

    def test_write_binary_and_list(self, vault):
        vault.write_binary("book.epub", b"PK")
        vault.create("Notes/a.md", "x")
        assert vault.list_files() == ["Notes/a.md", "book.epub"]

    def test_trash_moves_file_out_of_listing(self, vault, tmp_path):
        vault.write_binary("book.epub", b"PK")
        new_path = vault.trash("book.epub")
        assert new_path == ".trash/book.epub"
        assert (tmp_path / ".trash" / "book.epub").exists()
        assert vault.list_files() == []

    def test_trash_name_collision(self, vault):
        vault.write_binary("book.epub", b"1")
        vault.trash("book.epub")
        vault.write_binary("book.epub", b"2")
        second = vault.trash("book.epub")
        assert second != ".trash/book.epub"
        assert second.startswith(".trash/book-")
