"""Stateless text chunking and truncation utilities."""

from __future__ import annotations

TRUNCATION_MARKER = "\n... [truncated]"
SNIPPET_LINES = 10


def chunk_text(
    text: str, max_lines: int = 100, overlap: int = 10
) -> list[tuple[int, int, int, str]]:
    """Split text into overlapping chunks with line tracking.

    Returns ``(chunk_index, start_line, end_line, text)`` tuples with
    1-indexed inclusive line numbers.
    """
    lines = text.splitlines()
    chunks = []
    i = 0
    chunk_idx = 0
    step = max(1, max_lines - overlap)

    while i < len(lines):
        start = i
        end = min(i + max_lines, len(lines))
        if start >= end:
            break

        chunks.append((chunk_idx, start + 1, end, "\n".join(lines[start:end])))
        chunk_idx += 1
        if end == len(lines):
            break
        i += step

    return chunks


def hard_wrap(text: str, *, window: int, overlap: int = 0) -> list[str]:
    """Char-based windowing for text with no usable line structure."""
    if window <= 0:
        return [text]
    step = max(1, window - overlap)
    return [text[i : i + window] for i in range(0, len(text), step)]


def truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars`` characters, marking the cut."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return text[:keep] + TRUNCATION_MARKER


def make_snippet(text: str, max_lines: int = SNIPPET_LINES) -> str:
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines]) + "\n..."


def format_embedding_text(doc_type: str, name: str, text: str, max_chars: int) -> str:
    """Text handed to the embedder for one document."""
    return truncate_text(f"{doc_type}: {name}\n\n{text}", max_chars)


def count_lines(text: str) -> int:
    return len(text.splitlines())
