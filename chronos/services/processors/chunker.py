"""
Transcript Chunking Service

Splits a transcript into ordered, overlapping, time-bounded chunks sized for
embedding and retrieval.

Algorithm:
----------
1. Tokenize on whitespace. Words are never split.
2. Plan non-overlapping "body" spans over the word list. Each span takes up
   to max_words, cutting at the sentence end nearest the max boundary
   (searching back at most sentence_lookback_words) and at the word boundary
   otherwise. A span never leaves fewer than min_words behind it, so the
   last chunk is never a runt; if one still appears it is merged into the
   previous span.
3. Each chunk after the first is prefixed with the last overlap_words words
   of the previous chunk's body.
4. Times come from the supplied segments (first/last body word mapped onto
   the segment that contains it) or are interpolated from the duration.

Guarantees:
-----------
- chunk indices are contiguous from 0
- body spans partition the transcript: sum of body word counts == word count
- 1 <= word_count <= max_words + overlap_words
- end_time_seconds >= start_time_seconds, non-decreasing across chunks
- deterministic for identical input

Configuration from settings:
- CHUNK_MIN_WORDS: 500 (default)
- CHUNK_MAX_WORDS: 1000 (default)
- CHUNK_OVERLAP_WORDS: 100 (default)
- CHUNK_SENTENCE_LOOKBACK_WORDS: 200 (default)
"""

import bisect
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from chronos.core.config import Settings, settings as default_settings
from chronos.schemas.transcripts import TimedSegment, TranscriptChunk


# Sentence-final punctuation, optionally followed by closing quotes/brackets
SENTENCE_END_RE = re.compile(r'[.!?]+["\'\)\]”’]*$')

# Tokens that end in a period without ending a sentence
ABBREVIATIONS = frozenset({
    "dr.", "mr.", "mrs.", "ms.", "prof.", "sr.", "jr.", "vs.",
    "etc.", "e.g.", "i.e.", "st.", "mt.",
})


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk sizing, in words."""

    min_words: int = 500
    max_words: int = 1000
    overlap_words: int = 100
    sentence_lookback_words: int = 200

    def __post_init__(self) -> None:
        if self.min_words < 1:
            raise ValueError("min_words must be >= 1")
        if self.max_words < self.min_words:
            raise ValueError("max_words must be >= min_words")
        if not 0 <= self.overlap_words < self.max_words:
            raise ValueError("overlap_words must be in [0, max_words)")
        if self.sentence_lookback_words < 0:
            raise ValueError("sentence_lookback_words must be >= 0")

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "ChunkingConfig":
        cfg = cfg or default_settings
        return cls(
            min_words=cfg.CHUNK_MIN_WORDS,
            max_words=cfg.CHUNK_MAX_WORDS,
            overlap_words=cfg.CHUNK_OVERLAP_WORDS,
            sentence_lookback_words=cfg.CHUNK_SENTENCE_LOOKBACK_WORDS,
        )


def ends_sentence(word: str) -> bool:
    """True if ``word`` closes a sentence (abbreviation-aware)."""
    if not SENTENCE_END_RE.search(word):
        return False
    return word.lower().strip("\"'()[]“”‘’") not in ABBREVIATIONS


class _SegmentTimeline:
    """Maps transcript word positions onto segment time bounds."""

    def __init__(self, segments: Sequence[TimedSegment], word_count: int):
        self.segments = list(segments)
        self.word_count = word_count

        # cumulative[i] = number of segment words before segment i
        self.cumulative: list[int] = []
        total = 0
        for seg in self.segments:
            self.cumulative.append(total)
            total += len(seg.text.split())
        self.total_segment_words = total

    def segment_index(self, word_index: int) -> int:
        # Transcript and segment word streams can differ slightly (cleaning),
        # so positions are mapped proportionally.
        position = word_index * self.total_segment_words / self.word_count
        idx = bisect.bisect_right(self.cumulative, position) - 1
        return max(0, min(idx, len(self.segments) - 1))

    def bounds(self, first_word: int, last_word: int) -> tuple[float, float, int]:
        first_seg = self.segment_index(first_word)
        last_seg = self.segment_index(last_word)
        start = self.segments[first_seg].start
        end = max(self.segments[last_seg].end, start)
        return start, end, last_seg - first_seg + 1


class TranscriptChunker:
    """
    Word-based, sentence-aware transcript chunker.

    The chunker is a pure function of its input and configuration; it holds
    no state between calls.

    Usage:
    ------
    chunker = TranscriptChunker(ChunkingConfig(min_words=500, max_words=1000))
    chunks = chunker.chunk(transcript, segments=segments, duration_seconds=1800)
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig.from_settings()

    # ----------------------------------------
    # Public API
    # ----------------------------------------

    def chunk(
        self,
        transcript: str,
        segments: Optional[Sequence[TimedSegment]] = None,
        duration_seconds: Optional[float] = None,
    ) -> list[TranscriptChunk]:
        """
        Split a transcript into chunks.

        Args:
            transcript: Full transcript text
            segments: Optional time-aligned segments
            duration_seconds: Total duration, used when no segments are given

        Returns:
            Ordered list of TranscriptChunk (empty for an empty transcript)
        """
        words = transcript.split()
        if not words:
            return []

        spans = self.plan_spans(words)

        timeline = None
        usable_segments = [s for s in (segments or []) if s.text.strip()]
        if usable_segments:
            timeline = _SegmentTimeline(usable_segments, len(words))
        duration = float(duration_seconds or 0.0)

        chunks: list[TranscriptChunk] = []
        previous_start = 0
        for index, (start, end) in enumerate(spans):
            overlap_start = max(previous_start, start - self.config.overlap_words) if index else start
            overlap_count = start - overlap_start
            text = " ".join(words[overlap_start:end])

            if timeline is not None:
                start_time, end_time, segment_count = timeline.bounds(start, end - 1)
            else:
                start_time = duration * start / len(words)
                end_time = duration * end / len(words)
                segment_count = 0

            chunks.append(TranscriptChunk(
                chunk_index=index,
                chunk_text=text,
                start_time_seconds=round(start_time, 3),
                end_time_seconds=round(max(end_time, start_time), 3),
                word_count=end - overlap_start,
                metadata={
                    "has_overlap": overlap_count > 0,
                    "overlap_word_count": overlap_count,
                    "body_start_word": start,
                    "body_end_word": end,
                    "ends_at_sentence": ends_sentence(words[end - 1]),
                    "segment_count": segment_count,
                },
            ))
            previous_start = start

        return chunks

    def plan_spans(self, words: Sequence[str]) -> list[tuple[int, int]]:
        """
        Plan the non-overlapping body spans as [start, end) word ranges.

        The spans are contiguous and cover every word exactly once.
        """
        cfg = self.config
        n = len(words)
        spans: list[tuple[int, int]] = []
        start = 0

        while start < n:
            remaining = n - start
            if remaining <= cfg.max_words:
                spans.append((start, n))
                break

            hard_max = start + cfg.max_words
            if n - hard_max < cfg.min_words:
                # Leave at least min_words for the final chunk
                hard_max = n - cfg.min_words
                if hard_max - start < cfg.min_words:
                    hard_max = start + (remaining + 1) // 2

            floor = min(start + cfg.min_words, hard_max)
            window_start = max(floor, hard_max - cfg.sentence_lookback_words)

            cut = hard_max
            for end in range(hard_max, window_start - 1, -1):
                if ends_sentence(words[end - 1]):
                    cut = end
                    break

            spans.append((start, cut))
            start = cut

        return self._merge_trailing(spans)

    def _merge_trailing(self, spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
        """Fold a final span shorter than min_words into its predecessor."""
        cfg = self.config
        if len(spans) < 2:
            return spans

        last_start, last_end = spans[-1]
        if last_end - last_start >= cfg.min_words:
            return spans

        prev_start, _ = spans[-2]
        prev_overlap = 0
        if len(spans) > 2:
            prev_overlap = min(cfg.overlap_words, prev_start - spans[-3][0])

        if (last_end - prev_start) + prev_overlap <= cfg.max_words + cfg.overlap_words:
            return spans[:-2] + [(prev_start, last_end)]
        return spans


# ========================================
# Validation & Stats
# ========================================

def validate_chunks(
    chunks: Sequence[TranscriptChunk],
    transcript_word_count: int,
    config: Optional[ChunkingConfig] = None,
) -> list[str]:
    """
    Check a chunk set against the chunker guarantees.

    Returns:
        List of human-readable issues (empty if the set is valid)
    """
    config = config or ChunkingConfig.from_settings()
    issues: list[str] = []

    if transcript_word_count and not chunks:
        issues.append("no chunks produced for a non-empty transcript")
        return issues

    body_total = 0
    previous_start = 0.0
    for expected_index, chunk in enumerate(chunks):
        if chunk.chunk_index != expected_index:
            issues.append(f"chunk index {chunk.chunk_index} at position {expected_index}")
        if chunk.end_time_seconds < chunk.start_time_seconds:
            issues.append(f"chunk {chunk.chunk_index} ends before it starts")
        if chunk.start_time_seconds < previous_start:
            issues.append(f"chunk {chunk.chunk_index} starts before the previous chunk")
        if not 1 <= chunk.word_count <= config.max_words + config.overlap_words:
            issues.append(f"chunk {chunk.chunk_index} has {chunk.word_count} words")
        if len(chunks) > 1 and chunk.body_word_count < config.min_words:
            issues.append(
                f"chunk {chunk.chunk_index} is small ({chunk.body_word_count} words < {config.min_words})"
            )
        body_total += chunk.body_word_count
        previous_start = chunk.start_time_seconds

    if body_total != transcript_word_count:
        issues.append(
            f"chunk bodies cover {body_total} words, transcript has {transcript_word_count}"
        )

    return issues


def chunking_stats(chunks: Sequence[TranscriptChunk]) -> dict[str, Any]:
    """Summary numbers stored in the item's stage metadata."""
    if not chunks:
        return {
            "chunk_count": 0,
            "total_words": 0,
            "avg_words": 0,
            "min_words": 0,
            "max_words": 0,
            "total_duration_seconds": 0.0,
        }

    counts = [c.word_count for c in chunks]
    return {
        "chunk_count": len(chunks),
        "total_words": sum(c.body_word_count for c in chunks),
        "avg_words": round(sum(counts) / len(counts)),
        "min_words": min(counts),
        "max_words": max(counts),
        "total_duration_seconds": round(
            chunks[-1].end_time_seconds - chunks[0].start_time_seconds, 3
        ),
    }
