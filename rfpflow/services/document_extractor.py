from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

_PLAIN_TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".csv", ".tsv", ".json"}


@dataclass(slots=True)
class ExtractedDocument:
    name: str
    text: str
    method: str
    placeholder: bool = False


def placeholder_text(name: str, size: int | None = None) -> str:
    size_note = f" ({size / 1024:.1f}KB)" if size else ""
    return f"[Document: {name}{size_note} - content could not be extracted]"


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _convert_with_markitdown(path: Path) -> str:
    from markitdown import MarkItDown

    result = MarkItDown().convert(str(path))
    text_content = getattr(result, "text_content", "")
    if not isinstance(text_content, str):
        return ""
    # Drop inline images, they carry no retrievable text.
    return re.sub(r"!\[[^\]]*\]\([^)]*\)", "", text_content)


def extract_document_sync(path: str | Path, name: str | None = None) -> ExtractedDocument:
    """Extract text by file type; a failed conversion yields a placeholder description."""
    file_path = Path(path)
    display_name = name or file_path.name
    suffix = file_path.suffix.lower()

    if suffix in _PLAIN_TEXT_SUFFIXES:
        text = file_path.read_text(encoding="utf-8", errors="replace")
        return ExtractedDocument(name=display_name, text=_normalize_text(text), method="text")

    try:
        text = _normalize_text(_convert_with_markitdown(file_path))
    except ImportError:
        raise
    except Exception as exc:
        logger.warning(f"markitdown failed for {display_name}: {exc}")
        text = ""

    if not text:
        size = file_path.stat().st_size if file_path.exists() else None
        return ExtractedDocument(
            name=display_name,
            text=placeholder_text(display_name, size),
            method="placeholder",
            placeholder=True,
        )
    return ExtractedDocument(name=display_name, text=text, method="markitdown")


async def extract_document(path: str | Path, name: str | None = None) -> ExtractedDocument:
    return await asyncio.to_thread(extract_document_sync, path, name)
