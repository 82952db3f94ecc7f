"""
Sliding-window text chunking.
"""


def chunk_text(text: str, max_chunk_size: int = 1000, overlap: int = 100) -> list[str]:
    """
    Split text into windows of at most max_chunk_size characters.

    Adjacent windows share `overlap` characters. Text that already fits is
    returned as a single chunk; empty text yields no chunks.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if not 0 <= overlap < max_chunk_size:
        raise ValueError("overlap must be in [0, max_chunk_size)")

    if not text:
        return []
    if len(text) <= max_chunk_size:
        return [text]

    chunks = []
    start = 0
    while start < len(text):
        end = min(start + max_chunk_size, len(text))
        chunks.append(text[start:end])
        if end >= len(text):
            break
        start = end - overlap

    return chunks
