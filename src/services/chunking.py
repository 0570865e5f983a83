"""Split long text into provider-sized chunks on paragraph and sentence boundaries."""

import re
from dataclasses import dataclass
from typing import Optional, Sequence

PARAGRAPH_SEPARATOR = "\n\n"
SENTENCE_SEPARATOR = " "

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class SegmentGroup:
    """Consecutive skeleton segments sent to the provider as one chunk."""

    first_ordinal: int
    count: int
    text: str


@dataclass(frozen=True)
class TextPiece:
    """A chunk of plain text and the paragraph block it starts in."""

    text: str
    block: int


def split_blocks(text: str, max_chunk_chars: int) -> list[TextPiece]:
    """
    Split text into chunks of at most ``max_chunk_chars`` characters.

    Paragraphs are packed together until the next one would overflow the
    limit. A paragraph that is too long on its own is packed sentence by
    sentence instead. A single sentence longer than the limit is returned
    whole.

    Every chunk that starts on a paragraph boundary opens a new block; the
    later sentence chunks of a long paragraph share the block of its first
    chunk, so the paragraph can be put back together with spaces.
    """
    if max_chunk_chars < 1:
        raise ValueError("max_chunk_chars must be at least 1")

    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(text) if p.strip()]

    pieces: list[TextPiece] = []
    buffer = ""

    def _flush():
        pieces.append(TextPiece(buffer, pieces[-1].block + 1 if pieces else 0))

    for paragraph in paragraphs:
        if len(paragraph) > max_chunk_chars:
            if buffer:
                _flush()
                buffer = ""
            sentences = [s for s in _SENTENCE_BREAK.split(paragraph) if s]
            block = pieces[-1].block + 1 if pieces else 0
            for part in _accumulate(sentences, max_chunk_chars, SENTENCE_SEPARATOR):
                pieces.append(TextPiece(part, block))
            continue

        candidate = f"{buffer}{PARAGRAPH_SEPARATOR}{paragraph}" if buffer else paragraph
        if buffer and len(candidate) > max_chunk_chars:
            _flush()
            buffer = paragraph
        else:
            buffer = candidate

    if buffer:
        _flush()
    return pieces


def split_text(text: str, max_chunk_chars: int) -> list[str]:
    return [piece.text for piece in split_blocks(text, max_chunk_chars)]


def join_chunks(chunks: Sequence[str]) -> str:
    return PARAGRAPH_SEPARATOR.join(chunks)


def join_blocks(pieces: Sequence[tuple[Optional[int], str]]) -> str:
    """
    Join ``(block, text)`` pairs in order.

    Consecutive pieces of the same block are one paragraph and are joined
    with a space; a new block starts a new paragraph. Pieces without a block
    are always their own paragraph.
    """
    paragraphs: list[str] = []
    previous: Optional[int] = None
    for block, text in pieces:
        if paragraphs and block is not None and block == previous:
            paragraphs[-1] = f"{paragraphs[-1]}{SENTENCE_SEPARATOR}{text}"
        else:
            paragraphs.append(text)
        previous = block
    return PARAGRAPH_SEPARATOR.join(paragraphs)


def group_segments(segments: Sequence[str], max_chars: int, delimiter: str) -> list[SegmentGroup]:
    """
    Pack skeleton segments into delimiter-wrapped chunks.

    Segments are never split, so every chunk translates back into a whole
    number of runs.
    """
    if max_chars < 1:
        raise ValueError("max_chars must be at least 1")

    groups: list[SegmentGroup] = []
    current: list[str] = []
    first_ordinal = 1

    def _flush():
        groups.append(
            SegmentGroup(
                first_ordinal=first_ordinal,
                count=len(current),
                text=delimiter + delimiter.join(current) + delimiter,
            )
        )

    for ordinal, segment in enumerate(segments, start=1):
        projected = sum(len(s) + 1 for s in current) + len(segment) + 2
        if current and projected > max_chars:
            _flush()
            current = []
            first_ordinal = ordinal
        current.append(segment)

    if current:
        _flush()
    return groups


def _accumulate(units: Sequence[str], max_chars: int, separator: str) -> list[str]:
    chunks: list[str] = []
    buffer = ""
    for unit in units:
        candidate = f"{buffer}{separator}{unit}" if buffer else unit
        if buffer and len(candidate) > max_chars:
            chunks.append(buffer)
            buffer = unit
        else:
            buffer = candidate
    if buffer:
        chunks.append(buffer)
    return chunks
