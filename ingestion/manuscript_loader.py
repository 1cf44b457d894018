# ingestion/manuscript_loader.py
"""Read a manuscript from disk and reject input the analysis cannot use."""

from __future__ import annotations

import os
from dataclasses import dataclass

import structlog
from config import settings
from core.exceptions import UnsupportedInputError

logger = structlog.get_logger(__name__)

SUPPORTED_EXTENSIONS = {".txt": "Text", ".md": "Markdown"}


@dataclass(frozen=True)
class Manuscript:
    content: str
    word_count: int
    size_bytes: int
    file_type: str
    path: str

    @property
    def size_label(self) -> str:
        return f"{self.size_bytes / (1024 * 1024):.2f} MB"


def load_manuscript(path: str, min_chars: int | None = None) -> Manuscript:
    """Load a UTF-8 ``.txt``/``.md`` manuscript.

    Raises:
        UnsupportedInputError: unsupported extension, undecodable file, or
            fewer than ``MIN_MANUSCRIPT_CHARS`` characters of text.
    """
    min_chars = settings.MIN_MANUSCRIPT_CHARS if min_chars is None else min_chars
    extension = os.path.splitext(path)[1].lower()
    file_type = SUPPORTED_EXTENSIONS.get(extension)
    if file_type is None:
        raise UnsupportedInputError(
            f"Unsupported manuscript type '{extension or path}'. Use a .txt or .md file."
        )

    try:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    except UnicodeDecodeError as exc:
        raise UnsupportedInputError(f"Manuscript {path} is not valid UTF-8 text") from exc
    except OSError as exc:
        raise UnsupportedInputError(f"Could not read manuscript {path}: {exc}") from exc

    content = raw.strip()
    if len(content) < min_chars:
        raise UnsupportedInputError(
            f"Manuscript {path} contains too little text ({len(content)} < {min_chars} characters)"
        )

    manuscript = Manuscript(
        content=content,
        word_count=len(content.split()),
        size_bytes=os.path.getsize(path),
        file_type=file_type,
        path=path,
    )
    logger.info(
        f"Loaded manuscript '{path}'",
        words=manuscript.word_count,
        size=manuscript.size_label,
    )
    return manuscript
