from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

import pdfplumber

from .errors import NotADirectory, NotFound
from .models import FileNode


logger = logging.getLogger(__name__)


TEXT_EXTENSIONS = frozenset(
    {
        ".txt", ".md", ".markdown", ".rst", ".log", ".csv", ".json", ".yaml",
        ".yml", ".toml", ".html", ".htm", ".xml", ".py", ".rs", ".js", ".ts",
        ".css",
    }
)
PDF_EXTENSIONS = frozenset({".pdf"})
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | PDF_EXTENSIONS


@dataclass
class LoadedDocument:
    file: FileNode
    text: str


def validate_directory(directory: str | Path) -> Path:
    root = Path(directory).expanduser()
    if not root.exists():
        raise NotFound(f"Path does not exist: {root}")
    if not root.is_dir():
        raise NotADirectory(f"Path is not a directory: {root}")
    return root.resolve()


def discover_files(root: Path) -> Tuple[List[Path], List[Path]]:
    """
    Walk ``root`` recursively and split files into (supported, unsupported).

    Hidden files and directories are ignored. Both lists are sorted so the
    ingestion order is the same on every run.
    """
    root = validate_directory(root)
    supported: List[Path] = []
    unsupported: List[Path] = []

    def _raise(err: OSError) -> None:
        raise err

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(dirpath) / name
            if path.suffix.lower() in SUPPORTED_EXTENSIONS:
                supported.append(path)
            else:
                unsupported.append(path)

    logger.info(
        "Discovered %d supported and %d unsupported file(s) under %s",
        len(supported),
        len(unsupported),
        root,
    )
    return supported, unsupported


def _extract_text_from_pdf(path: Path) -> str:
    """
    Extract plain text from a PDF file, page by page.
    """
    text_chunks: List[str] = []
    with pdfplumber.open(path) as pdf:
        logger.debug("PDF %s opened, pages=%d", path, len(pdf.pages))
        for i, page in enumerate(pdf.pages, start=1):
            page_text = page.extract_text() or ""
            if page_text.strip():
                text_chunks.append(page_text)
            else:
                logger.debug("Page %d of %s has no extractable text.", i, path)
    return "\n\n".join(text_chunks)


def read_text(path: Path) -> str:
    """
    Read a supported file as text. PDF pages are joined by blank lines.

    Raises OSError on read failures and ValueError for unsupported types;
    pdfplumber parsing errors propagate as raised by the library.
    """
    suffix = path.suffix.lower()
    if suffix in PDF_EXTENSIONS:
        return _extract_text_from_pdf(path)
    if suffix in TEXT_EXTENSIONS:
        return path.read_text(encoding="utf-8", errors="replace")
    raise ValueError(f"Unsupported file type: {path}")


def describe_file(path: Path) -> FileNode:
    stat = path.stat()
    mime_type, _ = mimetypes.guess_type(path.name)
    return FileNode(
        path=str(path.resolve()),
        filename=path.name,
        size_bytes=stat.st_size,
        modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        mime_type=mime_type,
        extension=path.suffix.lower().lstrip("."),
    )


def load_document(path: Path) -> LoadedDocument:
    file_node = describe_file(path)
    text = read_text(path).replace("\x00", "")
    return LoadedDocument(file=file_node, text=text)


__all__ = [
    "TEXT_EXTENSIONS",
    "PDF_EXTENSIONS",
    "SUPPORTED_EXTENSIONS",
    "LoadedDocument",
    "validate_directory",
    "discover_files",
    "read_text",
    "describe_file",
    "load_document",
]
