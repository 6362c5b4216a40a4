from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import PurePath

from .config import CHUNK_SIZE

ALLOWED_EXTENSIONS = (".txt", ".pdf", ".doc", ".docx")


class DocumentError(ValueError):
    pass


@dataclass(frozen=True)
class PreparedDocument:
    filename: str
    original_filename: str
    file_type: str
    file_size: int
    extracted_text: str
    chunks: list[str]


def file_extension(filename: str) -> str:
    return PurePath(filename or "").suffix.lower()


def extract_text(filename: str, data: bytes) -> str:
    # Only plain text is parsed; binary formats get a placeholder until extraction lands.
    if file_extension(filename) == ".txt":
        return data.decode("utf-8-sig", errors="replace")
    return f"[Document content extraction pending - {filename}]"


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE) -> list[str]:
    if chunk_size <= 0:
        raise DocumentError("chunk_size must be > 0")
    return [text[i : i + chunk_size] for i in range(0, len(text or ""), chunk_size)]


def prepare_document(original_filename: str, data: bytes, *, chunk_size: int = CHUNK_SIZE) -> PreparedDocument:
    name = str(original_filename or "").strip()
    if not name:
        raise DocumentError("file name is required")
    ext = file_extension(name)
    if ext not in ALLOWED_EXTENSIONS:
        raise DocumentError("Unsupported file type. Allowed: " + ", ".join(ALLOWED_EXTENSIONS))

    text = extract_text(name, data)
    return PreparedDocument(
        filename=f"{uuid.uuid4()}{ext}",
        original_filename=name,
        file_type=ext[1:],
        file_size=len(data),
        extracted_text=text,
        chunks=chunk_text(text, chunk_size),
    )
