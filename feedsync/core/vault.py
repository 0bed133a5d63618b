"""Filesystem-backed document store.

Paths are vault-relative POSIX strings ("Feedly Annotations/Title.md").
Trashed files are moved under ``.trash/`` at the vault root.
"""

from __future__ import annotations

import logging
import re
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)

TRASH_DIR = ".trash"


def normalize_path(path: str) -> str:
    """Collapse duplicate and back slashes, strip leading/trailing slashes."""
    path = path.replace("\\", "/")
    path = re.sub(r"/+", "/", path)
    return path.strip("/").strip()


class Vault:
    """Folder/file operations rooted at a local directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        rel = normalize_path(path)
        if not rel:
            raise ValueError("Empty vault path")
        full = (self.root / rel).resolve()
        root = self.root.resolve()
        if full != root and root not in full.parents:
            raise ValueError(f"Path escapes vault: {path}")
        return full

    def folder_exists(self, path: str) -> bool:
        return self._resolve(path).is_dir()

    def create_folder(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)
        logger.info(f"Created folder {normalize_path(path)}")

    def file_exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def create(self, path: str, text: str) -> str:
        """Create a new text file. Fails if it already exists."""
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        with full.open("x", encoding="utf-8", newline="") as f:
            f.write(text)
        return normalize_path(path)

    def append(self, path: str, text: str) -> None:
        full = self._resolve(path)
        if not full.is_file():
            raise FileNotFoundError(f"No such vault file: {path}")
        with full.open("a", encoding="utf-8", newline="") as f:
            f.write(text)

    def read(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write_binary(self, path: str, data: bytes) -> str:
        """Create a new binary file. Fails if it already exists."""
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        with full.open("xb") as f:
            f.write(data)
        return normalize_path(path)

    def list_files(self) -> list[str]:
        """All files in the vault (trash excluded), sorted."""
        if not self.root.exists():
            return []
        files = []
        for p in self.root.rglob("*"):
            if not p.is_file():
                continue
            rel = p.relative_to(self.root)
            if rel.parts and rel.parts[0] == TRASH_DIR:
                continue
            files.append(rel.as_posix())
        return sorted(files)

    def trash(self, path: str) -> str:
        """Move a file into the vault trash and return its new path."""
        full = self._resolve(path)
        if not full.is_file():
            raise FileNotFoundError(f"No such vault file: {path}")
        trash_dir = self.root / TRASH_DIR
        trash_dir.mkdir(parents=True, exist_ok=True)
        target = trash_dir / full.name
        if target.exists():
            target = trash_dir / f"{full.stem}-{int(time.time() * 1000)}{full.suffix}"
        shutil.move(str(full), str(target))
        logger.info(f"Moved {normalize_path(path)} to trash")
        return target.relative_to(self.root).as_posix()
