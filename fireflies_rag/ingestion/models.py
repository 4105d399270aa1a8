"""Data models for the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from fireflies_rag.errors import DataIntegrityWarning
from fireflies_rag.pipeline_config import ChunkType

UNKNOWN_SPEAKER = "Unknown"


@dataclass
class TranscriptSentence:
    """One speaker-tagged sentence with timing in seconds from meeting start."""

    speaker: str
    text: str
    start_time: float | None = None
    end_time: float | None = None


@dataclass
class TranscriptSummary:
    """A transcript as listed by the provider, without sentences."""

    id: str
    title: str
    date: datetime
    duration: int = 0
    participants: list[str] = field(default_factory=list)
    warnings: list[DataIntegrityWarning] = field(default_factory=list)


@dataclass
class TranscriptDetail:
    """The strict internal shape every provider response is normalised into."""

    id: str
    title: str
    date: datetime
    duration: int = 0
    participants: list[str] = field(default_factory=list)
    sentences: list[TranscriptSentence] = field(default_factory=list)
    summary_text: str | None = None
    category: str = "general"
    warnings: list[DataIntegrityWarning] = field(default_factory=list)

    @property
    def speakers(self) -> list[str]:
        """Distinct speakers in order of first appearance."""
        seen: dict[str, None] = {}
        for sentence in self.sentences:
            seen.setdefault(sentence.speaker, None)
        return list(seen)


@dataclass
class Meeting:
    """One row of the metadata index, also the implicit work-queue item."""

    id: str
    title: str
    date: datetime
    duration: int = 0
    participants: list[str] = field(default_factory=list)
    category: str = "general"
    blob_key: str | None = None
    downloaded: bool = False
    chunked: bool = False
    vectorized: bool = False
    preview: str | None = None
    word_count: int = 0
    content_hash: str | None = None
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    chunk_count: int = 0


@dataclass
class Chunk:
    """A chunk ready for embedding and storage."""

    meeting_id: str
    chunk_index: int
    chunk_type: ChunkType
    content: str
    speaker: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    embedding: bytes | None = None
    embedding_model: str | None = None

    @property
    def id(self) -> str:
        """Deterministic id: re-chunking overwrites rather than duplicates."""
        return f"{self.meeting_id}:{self.chunk_type.value}:{self.chunk_index}"


@dataclass(frozen=True)
class SearchFilters:
    """Candidate pre-filters shared by vector and lexical search."""

    date_from: datetime | None = None
    date_to: datetime | None = None
    category: str | None = None
    speaker: str | None = None


@dataclass
class SearchEntry:
    """Denormalised listing row for a chunk; rebuildable, never authoritative."""

    chunk_id: str
    meeting_id: str
    meeting_title: str
    meeting_date: datetime
    chunk_preview: str
    relevance_score: float = 0.0


def build_search_entries(meeting: Meeting, chunks: list[Chunk]) -> list[SearchEntry]:
    """Project a meeting's chunks into search-listing entries."""
    return [
        SearchEntry(
            chunk_id=chunk.id,
            meeting_id=meeting.id,
            meeting_title=meeting.title,
            meeting_date=meeting.date,
            chunk_preview=chunk.content[:200],
        )
        for chunk in chunks
    ]
