from __future__ import annotations

import io

from pypdf import PdfReader
from pypdf.errors import DependencyError, PyPdfError

PDF_MAGIC = b"%PDF-"


def is_pdf(data: bytes) -> bool:
    return len(data) >= 5 and data[:5] == PDF_MAGIC


def extract_text(data: bytes) -> str:
    """Plain text of every page, joined with newlines.

    Raises ValueError with a classifiable message for unreadable input.
    """
    if not is_pdf(data):
        raise ValueError("Invalid PDF format: not a PDF")
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            # Empty user password still opens some "protected" files
            try:
                if not reader.decrypt(""):
                    raise ValueError("PDF is encrypted and password protected")
            except (NotImplementedError, DependencyError) as e:
                raise ValueError("PDF is encrypted and password protected") from e
        pages = [p.extract_text() or "" for p in reader.pages]
    except PyPdfError as e:
        raise ValueError(f"Corrupt PDF: cannot parse PDF ({e})") from e
    return "\n".join(pages)


def head_tail_window(text: str, head_chars: int, tail_chars: int) -> str:
    """Keep the start (contact details) and the end (trailing sections) of long text."""
    if len(text) <= head_chars + tail_chars:
        return text
    return text[:head_chars] + "\n...\n" + text[-tail_chars:]
