"""Pipeline configuration: chunk/search enums and the ChunkingConfig dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fireflies_rag.config import Settings


class ChunkType(StrEnum):
    """The three independent chunk sets produced for every meeting."""

    FULL = "full"
    TIME_SEGMENT = "time_segment"
    SPEAKER_TURN = "speaker_turn"


class SearchMode(StrEnum):
    """Available retrieval modes."""

    VECTOR = "vector"
    LEXICAL = "lexical"


@dataclass(frozen=True)
class ChunkingConfig:
    """Immutable chunking parameters.

    Re-chunking with an equal config must give byte-identical output.
    """

    time_segment_seconds: int = 300
    time_segment_overlap_seconds: int = 60
    speaker_turn_min_words: int = 8
    speaker_turn_max_words: int = 500
    full_chunk_max_chars: int = 24_000

    def __post_init__(self) -> None:
        if self.time_segment_seconds <= 0:
            raise ValueError("time_segment_seconds must be positive")
        if not 0 <= self.time_segment_overlap_seconds < self.time_segment_seconds:
            raise ValueError("time_segment_overlap_seconds must be in [0, time_segment_seconds)")
        if self.speaker_turn_max_words < max(1, self.speaker_turn_min_words):
            raise ValueError("speaker_turn_max_words must be >= speaker_turn_min_words")

    @classmethod
    def from_settings(cls, settings: Settings) -> ChunkingConfig:
        return cls(
            time_segment_seconds=settings.time_segment_seconds,
            time_segment_overlap_seconds=settings.time_segment_overlap_seconds,
            speaker_turn_min_words=settings.speaker_turn_min_words,
            speaker_turn_max_words=settings.speaker_turn_max_words,
            full_chunk_max_chars=settings.full_chunk_max_chars,
        )
