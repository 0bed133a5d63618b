"""EPUB container assembly.

build_epub_files() renders every file of the package; package_epub() zips
them. A reader only accepts the archive if ``mimetype`` is the first entry and
is stored uncompressed, and every other file lives under its declared folder.
"""

from __future__ import annotations

import html
import io
import logging
import re
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from html.parser import HTMLParser
from pathlib import Path
from typing import Sequence

from jinja2 import Environment, FileSystemLoader, TemplateError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "epub"

MIMETYPE = "application/epub+zip"
CONTENT_DIR = "OEBPF"
PACKAGE_FOLDERS = (
    "META-INF",
    CONTENT_DIR,
    f"{CONTENT_DIR}/css",
    f"{CONTENT_DIR}/content",
    f"{CONTENT_DIR}/images",
)

DEFAULT_CSS = "img { display: none; width: 0px; height: 0px; }\n"

_jinja = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=True,
)


class EpubAssemblyError(Exception):
    """The container could not be built or packaged."""


@dataclass(frozen=True)
class EpubMetadata:
    id: str
    title: str
    publisher: str
    author: str
    cover: bytes | None = None
    language: str = "en"
    modified: datetime | None = None


@dataclass(frozen=True)
class EpubSection:
    title: str
    html_body: str


@dataclass(frozen=True)
class EpubFile:
    """One generated file. ``folder`` is "" only for the mimetype entry."""

    folder: str
    name: str
    content: str | bytes
    compress: bool = True

    @property
    def path(self) -> str:
        return f"{self.folder}/{self.name}" if self.folder else self.name

    @property
    def data(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")


# --- HTML -> XHTML ---

VOID_ELEMENTS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"}
)
DROPPED_ELEMENTS = frozenset({"script", "style", "noscript", "iframe", "object"})
_TAG_NAME = re.compile(r"^[a-z][a-z0-9-]*$")
_ATTR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
# Code points XML 1.0 does not allow in a document
_XML_ILLEGAL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


def _xml_escape(text: str, quote: bool) -> str:
    return html.escape(_XML_ILLEGAL.sub("", text), quote=quote)


class _XhtmlWriter(HTMLParser):
    """Re-serializes tag soup as well-formed XHTML."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.out: list[str] = []
        self.stack: list[str] = []
        self.skip_depth = 0

    def _attrs(self, attrs: list[tuple[str, str | None]]) -> str:
        seen: set[str] = set()
        parts = []
        for name, value in attrs:
            if name in seen or not _ATTR_NAME.match(name):
                continue
            seen.add(name)
            text = value if value is not None else name
            parts.append(f' {name}="{_xml_escape(text, quote=True)}"')
        return "".join(parts)

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROPPED_ELEMENTS:
            self.skip_depth += 1
            return
        if self.skip_depth or not _TAG_NAME.match(tag):
            return
        if tag in VOID_ELEMENTS:
            self.out.append(f"<{tag}{self._attrs(attrs)} />")
        else:
            self.out.append(f"<{tag}{self._attrs(attrs)}>")
            self.stack.append(tag)

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if self.skip_depth or tag in DROPPED_ELEMENTS or not _TAG_NAME.match(tag):
            return
        self.out.append(f"<{tag}{self._attrs(attrs)} />")

    def handle_endtag(self, tag: str) -> None:
        if tag in DROPPED_ELEMENTS:
            if self.skip_depth:
                self.skip_depth -= 1
            return
        if self.skip_depth or tag in VOID_ELEMENTS or tag not in self.stack:
            return
        while self.stack:
            open_tag = self.stack.pop()
            self.out.append(f"</{open_tag}>")
            if open_tag == tag:
                break

    def handle_data(self, data: str) -> None:
        if not self.skip_depth:
            self.out.append(_xml_escape(data, quote=False))

    def result(self) -> str:
        self.close()
        while self.stack:
            self.out.append(f"</{self.stack.pop()}>")
        return "".join(self.out)


def to_xhtml(markup: str) -> str:
    """Convert an HTML fragment into a well-formed XHTML fragment."""
    writer = _XhtmlWriter()
    writer.feed(markup)
    return writer.result()


# --- Build ---


def _cover_image(data: bytes) -> tuple[str, str]:
    """(extension, media type) of a cover image."""
    if data.startswith(b"\x89PNG"):
        return "png", "image/png"
    if data.startswith(b"\xff\xd8"):
        return "jpg", "image/jpeg"
    if data.startswith(b"GIF8"):
        return "gif", "image/gif"
    raise EpubAssemblyError("Unsupported cover image format")


def build_epub_files(
    metadata: EpubMetadata,
    sections: Sequence[EpubSection],
    css: str = DEFAULT_CSS,
) -> list[EpubFile]:
    """Render all files of the package, mimetype first."""
    if not sections:
        raise EpubAssemblyError("An EPUB needs at least one section")

    modified = (metadata.modified or datetime.now(timezone.utc)).astimezone(timezone.utc)
    css_href = "css/ebook.css"
    files = [
        EpubFile("", "mimetype", MIMETYPE, compress=False),
        EpubFile(
            "META-INF",
            "container.xml",
            _jinja.get_template("container.xml.j2").render(package_path=f"{CONTENT_DIR}/content.opf"),
        ),
        EpubFile(f"{CONTENT_DIR}/css", "ebook.css", css),
    ]

    cover = None
    if metadata.cover:
        ext, media_type = _cover_image(metadata.cover)
        cover = {
            "href": f"images/cover.{ext}",
            "media_type": media_type,
            "page_href": "content/cover.xhtml",
        }
        files.append(EpubFile(f"{CONTENT_DIR}/images", f"cover.{ext}", metadata.cover))
        files.append(
            EpubFile(
                f"{CONTENT_DIR}/content",
                "cover.xhtml",
                _jinja.get_template("cover.xhtml.j2").render(
                    title=metadata.title,
                    language=metadata.language,
                    image_href=cover["href"],
                ),
            )
        )

    section_tpl = _jinja.get_template("section.xhtml.j2")
    pages = []
    for i, section in enumerate(sections, start=1):
        page_id = f"s{i:04d}"
        title = f"{i}. {section.title}"
        pages.append({"id": page_id, "href": f"content/{page_id}.xhtml", "title": title})
        files.append(
            EpubFile(
                f"{CONTENT_DIR}/content",
                f"{page_id}.xhtml",
                section_tpl.render(
                    title=title,
                    language=metadata.language,
                    css_href=css_href,
                    body=to_xhtml(section.html_body),
                ),
            )
        )

    ctx = {
        "meta": metadata,
        "pages": pages,
        "cover": cover,
        "css_href": css_href,
        "modified": modified.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    files.append(EpubFile(CONTENT_DIR, "content.opf", _jinja.get_template("content.opf.j2").render(**ctx)))
    files.append(EpubFile(CONTENT_DIR, "toc.ncx", _jinja.get_template("toc.ncx.j2").render(**ctx)))
    files.append(EpubFile(CONTENT_DIR, "nav.xhtml", _jinja.get_template("nav.xhtml.j2").render(**ctx)))
    return files


# --- Package ---


def package_epub(files: Sequence[EpubFile], date_time: tuple[int, ...] | None = None) -> bytes:
    """Zip generated files into an EPUB byte string.

    ``mimetype`` goes first, stored; then the folder entries; then every
    other file under its folder, deflated.
    """
    mimetype = next((f for f in files if f.folder == "" and f.name == "mimetype"), None)
    if mimetype is None:
        raise EpubAssemblyError("mimetype entry missing")

    others = [f for f in files if f is not mimetype]
    stray = [f.path for f in others if f.folder not in PACKAGE_FOLDERS]
    if stray:
        raise EpubAssemblyError(f"Files outside the package folders: {', '.join(stray)}")

    stamp = tuple(date_time or (1980, 1, 1, 0, 0, 0))
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        info = zipfile.ZipInfo("mimetype", date_time=stamp)
        info.compress_type = zipfile.ZIP_STORED
        zf.writestr(info, mimetype.data)

        for folder in PACKAGE_FOLDERS:
            info = zipfile.ZipInfo(f"{folder}/", date_time=stamp)
            info.external_attr = (0o40755 << 16) | 0x10
            zf.writestr(info, b"")

        for f in others:
            info = zipfile.ZipInfo(f.path, date_time=stamp)
            info.compress_type = zipfile.ZIP_DEFLATED if f.compress else zipfile.ZIP_STORED
            zf.writestr(info, f.data)

    logger.debug(f"Packaged {len(files)} files into EPUB")
    return buf.getvalue()


def assemble_epub(
    metadata: EpubMetadata,
    sections: Sequence[EpubSection],
    css: str = DEFAULT_CSS,
) -> bytes:
    """Build and package an EPUB. All failures surface as EpubAssemblyError."""
    try:
        files = build_epub_files(metadata, sections, css)
        stamp = None
        if metadata.modified:
            stamp = metadata.modified.timetuple()[:6]
        return package_epub(files, date_time=stamp)
    except EpubAssemblyError:
        raise
    except (TemplateError, OSError, ValueError, zipfile.BadZipFile) as e:
        raise EpubAssemblyError(f"EPUB assembly failed: {e}") from e
