"""Split ASIN lists into batches that fit the report request's ASIN field."""

from dataclasses import dataclass
from typing import Iterable, List

MAX_ASIN_CHARS = 200
SEPARATOR = " "


@dataclass(frozen=True)
class AsinChunk:
    asins: List[str]

    @property
    def asin_string(self) -> str:
        return SEPARATOR.join(self.asins)


def split_asins_into_chunks(asins: Iterable[str], max_chars: int = MAX_ASIN_CHARS) -> List[AsinChunk]:
    """
    Greedily pack ASINs into space-joined batches of at most max_chars.

    Identifiers are stripped and blanks dropped. Order is preserved and every
    identifier lands in exactly one chunk. An identifier longer than the limit
    on its own is emitted as a single-item chunk.

    Args:
        asins: ASIN identifiers in priority order
        max_chars: Character budget of a joined chunk

    Returns:
        List of AsinChunk
    """
    chunks: List[AsinChunk] = []
    current: List[str] = []
    current_length = 0

    for raw in asins:
        asin = (raw or "").strip()
        if not asin:
            continue
        add_length = len(asin) if not current else len(SEPARATOR) + len(asin)
        if current and current_length + add_length > max_chars:
            chunks.append(AsinChunk(current))
            current, current_length = [], 0
            add_length = len(asin)
        current.append(asin)
        current_length += add_length

    if current:
        chunks.append(AsinChunk(current))
    return chunks
