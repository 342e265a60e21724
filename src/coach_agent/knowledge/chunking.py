"""
Document chunking for embedding.
"""

import re

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")


def _tail_overlap(text: str, overlap: int) -> str:
    """Last ``overlap`` characters of ``text``, starting on a word boundary."""
    if overlap <= 0 or not text:
        return ""
    if len(text) <= overlap:
        return text.strip()
    tail = text[-overlap:]
    # Drop the partial word cut by the slice
    if not text[-overlap - 1].isspace() and not tail[0].isspace():
        parts = tail.split(None, 1)
        tail = parts[1] if len(parts) > 1 else ""
    return tail.strip()


def split_into_chunks(content: str, chunk_size: int = 800, overlap: int = 100) -> list[str]:
    """Split a document on paragraph boundaries into ~``chunk_size`` chunks.

    The tail of each chunk (about ``overlap`` characters) is carried into
    the next one so context survives the boundary. Paragraphs are never
    split, so a single long paragraph becomes its own oversized chunk.
    """
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(content) if p.strip()]

    chunks: list[str] = []
    current = ""

    for paragraph in paragraphs:
        if current and len(current) + len(paragraph) > chunk_size:
            chunks.append(current.strip())
            carried = _tail_overlap(current, overlap)
            current = f"{carried}\n\n{paragraph}" if carried else paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph

    if current.strip():
        chunks.append(current.strip())

    return chunks
