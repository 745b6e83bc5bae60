"""
Sentence-aware text chunking.

Splits text into ordered, contiguous ``[start, end)`` character ranges of
at most ``max_chars`` characters each. The ranges cover the input exactly:
nothing is dropped, stripped or duplicated, so a chunk index together with
the content hash identifies the same audio for every voice and reader.

Algorithm:
    Walk the text window by window. For a window starting at ``start``,
    consider cut points ``p`` from ``start + max_chars`` down to just past
    ``start + max_chars // 2``. A cut is good when the character before it
    ends a sentence (``.``, ``!`` or ``?``) and the character at ``p`` is
    whitespace, or when the character before it is a newline. The last
    good cut wins; without one the window is hard-cut at
    ``start + max_chars``, possibly mid-word.

    Whitespace following a sentence terminal therefore opens the next
    range, and the final range ends at ``len(text)``.

Example:
    >>> result = chunk_ranges("One. Two. Three.", max_chars=10)
    >>> result.ranges
    [ChunkRange(index=0, start=0, end=9), ChunkRange(index=1, start=9, end=16)]
    >>> chunk_texts("One. Two. Three.", result.ranges)
    ['One. Two.', ' Three.']
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from tts_stream.core.logging import get_logger, verbose
from tts_stream.utils.timeit import timeit

_LOG = get_logger("tts-stream.chunker")

SENTENCE_TERMINALS = frozenset(".!?")


@dataclass(frozen=True)
class ChunkRange:
    """Half-open character range ``[start, end)`` of chunk ``index``."""
    index: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass
class ChunkResult:
    """
    Result of a chunking run.

    Attributes:
        ranges: Ordered chunk ranges covering the whole text.
        timings_s: Timing measurements in seconds.
    """
    ranges: List[ChunkRange]
    timings_s: Dict[str, float]

    def __len__(self) -> int:
        return len(self.ranges)


def _is_boundary(text: str, cut: int) -> bool:
    """True when cutting before ``text[cut]`` ends a sentence or a line."""
    prev = text[cut - 1]
    if prev == "\n":
        return True
    return prev in SENTENCE_TERMINALS and text[cut].isspace()


def _find_cut(text: str, start: int, max_chars: int) -> int:
    limit = start + max_chars
    floor = start + max_chars // 2
    for cut in range(limit, floor, -1):
        if _is_boundary(text, cut):
            return cut
    return limit


def chunk_ranges(text: str, max_chars: int = 800) -> ChunkResult:
    """
    Split ``text`` into sentence-aware ranges of at most ``max_chars``.

    Args:
        text: Input text. Not stripped or normalized here.
        max_chars: Upper bound on a single range (>= 2).

    Returns:
        ChunkResult; empty text gives no ranges.

    Raises:
        ValueError: If max_chars is below 2.
    """
    if max_chars < 2:
        raise ValueError(f"max_chars must be at least 2, got {max_chars}")

    ranges: List[ChunkRange] = []
    with timeit("chunk") as t:
        n = len(text)
        start = 0
        while start < n:
            if n - start <= max_chars:
                end = n
            else:
                end = _find_cut(text, start, max_chars)
            ranges.append(ChunkRange(index=len(ranges), start=start, end=end))
            start = end

    timings = {"chunk": t.timing.seconds if t.timing else -1.0}
    verbose(_LOG, "chunked", chars=len(text), chunks=len(ranges), max_chars=max_chars,
            seconds=round(timings["chunk"], 4))
    return ChunkResult(ranges=ranges, timings_s=timings)


def chunk_texts(text: str, ranges: List[ChunkRange]) -> List[str]:
    """Substrings of ``text`` for each range, in order."""
    return [text[r.start:r.end] for r in ranges]


def ranges_from_boundaries(boundaries: List[Dict[str, int]]) -> List[ChunkRange]:
    """Rebuild ChunkRange objects from a stored ``[{start, end}, ...]`` plan."""
    return [ChunkRange(index=i, start=int(b["start"]), end=int(b["end"])) for i, b in enumerate(boundaries)]
