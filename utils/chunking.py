# utils/chunking.py

"""
Text segmentation for the ingestion pipeline.

Two variants live here:
- `ChunkingService.chunk`: sliding window that cuts at the best separator near the window end
- `ChunkingService.chunk_fixed`: fixed character offsets, no separator search (script sources)

Offsets are always relative to the *normalized* text returned by `normalize_text`,
which is the same normalization the document loaders apply, so page spans reported
by a loader line up with chunk offsets.
"""

import math
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

# ——— Defaults ————————————————————————————————————————————————————————————————————

DEFAULT_CHUNK_SIZE = 2400
DEFAULT_CHUNK_OVERLAP = 450
DEFAULT_MIN_CHUNK_SIZE = 200

# Ordered by priority: paragraph breaks first, then sentence terminators (CJK + latin), then a space
DEFAULT_SEPARATORS: List[str] = [
    "\n\n\n",
    "\n\n",
    "\n",
    "。",
    ".",
    "！",
    "!",
    "？",
    "?",
    "；",
    ";",
    "，",
    ",",
    " ",
]

# Separators at or above this priority end the backward scan immediately
NEWLINE_PRIORITY_CUTOFF = 2

# Wide-script code point ranges (CJK unified + ext A + compatibility, kana, hangul)
_WIDE_RANGES = (
    (0x4E00, 0x9FFF),
    (0x3400, 0x4DBF),
    (0xF900, 0xFAFF),
    (0x3040, 0x309F),
    (0x30A0, 0x30FF),
    (0xAC00, 0xD7AF),
)

_MANY_NEWLINES = re.compile(r"\n{4,}")


@dataclass
class ChunkResult:
    content: str
    index: int
    start_offset: int
    end_offset: int
    token_count: int


def normalize_text(text: Optional[str]) -> str:
    """Unify line endings, collapse 4+ newlines to 3 and trim."""
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _MANY_NEWLINES.sub("\n\n\n", cleaned)
    return cleaned.strip()


def _is_wide(char: str) -> bool:
    code = ord(char)
    for low, high in _WIDE_RANGES:
        if low <= code <= high:
            return True
    return False


def estimate_tokens(text: str) -> int:
    """
    Language-aware token estimate.

    Wide-script characters carry roughly 1.5 chars/token under subword tokenizers,
    everything else roughly 4 chars/token.
    """
    if not text:
        return 0
    wide = 0
    other = 0
    for char in text:
        if _is_wide(char):
            wide += 1
        else:
            other += 1
    return math.ceil(wide / 1.5 + other / 4)


class ChunkingService:
    """Splits normalized document text into overlapping, separator-aligned chunks"""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
        separators: Optional[Sequence[str]] = None,
    ):
        self.chunk_size = max(1, chunk_size)
        self.chunk_overlap = max(0, chunk_overlap)
        self.min_chunk_size = max(0, min_chunk_size)
        self.separators = list(separators) if separators else list(DEFAULT_SEPARATORS)

    def chunk(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        min_chunk_size: Optional[int] = None,
    ) -> List[ChunkResult]:
        """
        Sliding-window chunking with separator search.

        Args:
            text: Raw or normalized text
            chunk_size: Window size in characters (defaults to the service setting)
            chunk_overlap: Characters shared between consecutive windows
            min_chunk_size: Trimmed slices shorter than this are dropped

        Returns:
            Ordered chunks with contiguous indices starting at 0
        """
        size = max(1, chunk_size if chunk_size is not None else self.chunk_size)
        overlap = max(0, chunk_overlap if chunk_overlap is not None else self.chunk_overlap)
        min_size = max(0, min_chunk_size if min_chunk_size is not None else self.min_chunk_size)

        cleaned = normalize_text(text)
        if not cleaned:
            return []

        text_len = len(cleaned)
        if text_len <= min_size:
            return [ChunkResult(cleaned, 0, 0, text_len, estimate_tokens(cleaned))]

        chunks: List[ChunkResult] = []
        current_start = 0

        while current_start < text_len:
            current_end = min(current_start + size, text_len)

            if current_end < text_len:
                split_pos = self._find_split_position(cleaned, current_start, current_end, size)
                if split_pos > current_start:
                    current_end = split_pos

            content = cleaned[current_start:current_end].strip()
            reached_end = current_end >= text_len

            if len(content) >= min_size:
                chunks.append(ChunkResult(
                    content=content,
                    index=len(chunks),
                    start_offset=current_start,
                    end_offset=current_end,
                    token_count=estimate_tokens(content),
                ))
            elif reached_end and chunks:
                # Trailing fragment too short to stand alone: fold it into the previous chunk
                last = chunks[-1]
                merged = cleaned[last.start_offset:text_len].strip()
                chunks[-1] = ChunkResult(
                    content=merged,
                    index=last.index,
                    start_offset=last.start_offset,
                    end_offset=text_len,
                    token_count=estimate_tokens(merged),
                )

            if reached_end:
                break

            current_start = max(current_end - overlap, current_start + 1)

        return chunks

    def _find_split_position(self, text: str, start: int, end: int, size: int) -> int:
        """
        Scan backward from `end` to `start + size/2` for the highest-priority separator.

        At each position only the first matching separator counts. Returns the offset
        just after the chosen separator, or -1 when none matched.
        """
        search_start = max(start + math.floor(size * 0.5), start)
        best_pos = -1
        best_priority = len(self.separators)

        for i in range(end, search_start - 1, -1):
            for priority, sep in enumerate(self.separators):
                if text.startswith(sep, i):
                    if priority < best_priority:
                        best_pos = i + len(sep)
                        best_priority = priority
                    break
            if best_priority <= NEWLINE_PRIORITY_CUTOFF:
                break

        return best_pos

    def chunk_fixed(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: int = 0,
    ) -> List[ChunkResult]:
        """
        Fixed-offset chunking without separator search.

        Slices are kept verbatim (no trimming) so that overlap-free chunks concatenate
        back to the normalized text exactly.
        """
        size = max(1, chunk_size if chunk_size is not None else self.chunk_size)
        overlap = min(max(0, chunk_overlap), size - 1)

        cleaned = normalize_text(text)
        if not cleaned:
            return []

        text_len = len(cleaned)
        step = max(1, size - overlap)
        chunks: List[ChunkResult] = []

        for start in range(0, text_len, step):
            end = min(start + size, text_len)
            content = cleaned[start:end]
            if content.strip():
                chunks.append(ChunkResult(
                    content=content,
                    index=len(chunks),
                    start_offset=start,
                    end_offset=end,
                    token_count=estimate_tokens(content),
                ))
            if end >= text_len:
                break

        return chunks
