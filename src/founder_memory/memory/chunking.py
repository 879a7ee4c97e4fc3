"""Sliding-window chunking and content hashing."""

import hashlib

DEFAULT_CHUNK_SIZE = 800
DEFAULT_CHUNK_OVERLAP = 80


def chunk(
    text: str,
    size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """Split text into overlapping fixed-size windows.

    Windows start every ``size - overlap`` characters. The last window may be
    shorter than ``size``. A window is only emitted while it reaches past the
    end of the previous one, so the tail is never repeated.

    Args:
        text: Text to split
        size: Window length in characters
        overlap: Characters shared by adjacent windows

    Returns:
        Windows in document order; empty for empty or whitespace-only text

    Raises:
        ValueError: If size <= overlap or overlap < 0

    Example:
        >>> chunk("abcdefghij", size=4, overlap=1)
        ['abcd', 'defg', 'ghij']
    """
    if overlap < 0:
        raise ValueError(f"overlap must be non-negative, got {overlap}")
    if size <= overlap:
        raise ValueError(f"size ({size}) must be greater than overlap ({overlap})")

    if not text or not text.strip():
        return []

    step = size - overlap
    windows: list[str] = []
    start = 0
    while True:
        windows.append(text[start : start + size])
        if start + size >= len(text):
            break
        start += step
    return windows


def reassemble(windows: list[str], overlap: int) -> str:
    """Rebuild the original text from windows produced by ``chunk``."""
    if not windows:
        return ""
    return windows[0] + "".join(w[overlap:] for w in windows[1:])


def content_hash(content: str) -> str:
    """SHA-256 hex digest of trimmed, lower-cased content.

    Chunks that differ only in case or surrounding whitespace hash equal,
    so restating a fact verbatim never creates a second active chunk.
    """
    return hashlib.sha256(content.strip().lower().encode("utf-8")).hexdigest()
