"""Shared fixtures: settings and in-memory stand-ins for the storage and provider seams."""

from __future__ import annotations

import copy
import hashlib
import math
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from fireflies_rag.config import Settings
from fireflies_rag.errors import MalformedTranscriptError, StorageError, UpstreamUnavailable
from fireflies_rag.ingestion.models import (
    Chunk,
    Meeting,
    SearchEntry,
    SearchFilters,
    TranscriptDetail,
    TranscriptSentence,
    TranscriptSummary,
)
from fireflies_rag.ingestion.pipeline import IngestionPipeline
from fireflies_rag.retrieval.search import word_pattern
from fireflies_rag.sync.orchestrator import SyncOrchestrator

SPEAKERS = ["Ana", "Ben", "Cleo"]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "fireflies_api_key": "ff-test",
        "openai_api_key": "sk-test",
        "max_retries": 1,
        "retry_max_wait": 0.0,
        "embedding_dimensions": 64,
        "embedding_requests_per_minute": 60_000,
        "vector_min_similarity": 0.3,
        "webhook_secret": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


def make_detail(
    transcript_id: str = "T1",
    title: str = "Weekly Planning",
    date: datetime | None = None,
    duration: int = 1845,
    sentences: int = 40,
) -> TranscriptDetail:
    """A realistic transcript: evenly spaced sentences, speakers rotating every few lines."""
    step = duration / max(sentences, 1)
    items = []
    for i in range(sentences):
        speaker = SPEAKERS[(i // 3) % len(SPEAKERS)]
        start = round(i * step, 3)
        items.append(
            TranscriptSentence(
                speaker=speaker,
                text=f"Point {i} about the roadmap budget and hiring plan for next quarter.",
                start_time=start,
                end_time=round(start + step * 0.9, 3),
            )
        )
    return TranscriptDetail(
        id=transcript_id,
        title=title,
        date=date or datetime(2025, 3, 4, 15, 0, tzinfo=UTC),
        duration=duration,
        participants=["ana@example.com", "ben@example.com", "cleo@example.com"],
        sentences=items,
        summary_text="Roadmap and hiring discussion.",
        category="planning",
    )


def summary_of(detail: TranscriptDetail) -> TranscriptSummary:
    return TranscriptSummary(
        id=detail.id,
        title=detail.title,
        date=detail.date,
        duration=detail.duration,
        participants=list(detail.participants),
    )


class FakeSource:
    """Stands in for FirefliesClient."""

    def __init__(self, details: list[TranscriptDetail] | None = None) -> None:
        self.details = {d.id: d for d in details or []}
        self.failures: dict[str, Exception] = {}
        self.list_error: Exception | None = None
        self.full_calls: list[str] = []
        self.recent_calls: list[dict[str, Any]] = []

    def fetch_recent(self, limit, since=None, deadline=None, until=None):
        self.recent_calls.append({"limit": limit, "since": since, "until": until})
        if self.list_error is not None:
            raise self.list_error
        ordered = sorted(self.details.values(), key=lambda d: d.date, reverse=True)
        selected = [
            d for d in ordered if (since is None or d.date >= since) and (until is None or d.date <= until)
        ]
        return [summary_of(d) for d in selected[:limit]]

    def fetch_full(self, transcript_id, deadline=None):
        self.full_calls.append(transcript_id)
        if transcript_id in self.failures:
            raise self.failures[transcript_id]
        if transcript_id not in self.details:
            raise MalformedTranscriptError("Transcript not found", item_id=transcript_id)
        return copy.deepcopy(self.details[transcript_id])


class FakeTranscriptStore:
    def __init__(self) -> None:
        self.blobs: dict[str, str] = {}
        self.fail_put = False

    def put(self, meeting_id: str, rendered_text: str) -> str:
        if self.fail_put:
            raise StorageError("bucket unavailable", item_id=meeting_id)
        key = f"transcripts/{meeting_id}.md"
        self.blobs[key] = rendered_text
        return key

    def get(self, blob_key: str) -> str:
        if blob_key not in self.blobs:
            raise StorageError(f"missing blob {blob_key}")
        return self.blobs[blob_key]


class FakeIndex:
    """Stands in for MeetingIndex, with the same claim and backoff semantics."""

    def __init__(self) -> None:
        self.meetings: dict[str, Meeting] = {}
        self.metadata: dict[str, Any] = {}
        self.webhook_events: list[dict[str, Any]] = []
        self.claims: dict[str, str] = {}
        self.fail_writes = False

    def _check(self) -> None:
        if self.fail_writes:
            raise StorageError("database unavailable")

    def upsert(self, meeting: Meeting) -> None:
        self._check()
        self.meetings[meeting.id] = copy.deepcopy(meeting)

    def get(self, meeting_id: str) -> Meeting | None:
        meeting = self.meetings.get(meeting_id)
        return copy.deepcopy(meeting) if meeting else None

    def list(self, limit: int = 20, offset: int = 0) -> list[Meeting]:
        ordered = sorted(self.meetings.values(), key=lambda m: (-m.date.timestamp(), m.id))
        return [copy.deepcopy(m) for m in ordered[offset : offset + limit]]

    def count(self) -> int:
        return len(self.meetings)

    def _due(self, meeting: Meeting) -> bool:
        return meeting.next_attempt_at is None or meeting.next_attempt_at <= datetime.now(UTC)

    def find_missing_download(self, limit: int) -> list[Meeting]:
        rows = [m for m in self.meetings.values() if not m.downloaded and self._due(m)]
        return [copy.deepcopy(m) for m in sorted(rows, key=lambda m: (m.date, m.id))[:limit]]

    def find_unvectorized(self, limit: int) -> list[Meeting]:
        rows = [m for m in self.meetings.values() if m.downloaded and not m.vectorized and self._due(m)]
        return [copy.deepcopy(m) for m in sorted(rows, key=lambda m: (m.date, m.id))[:limit]]

    def claim(self, meeting_id: str, worker_id: str, ttl_seconds: int) -> bool:
        holder = self.claims.get(meeting_id)
        if holder is not None and holder != worker_id:
            return False
        self.claims[meeting_id] = worker_id
        return True

    def release(self, meeting_id: str, worker_id: str) -> None:
        if self.claims.get(meeting_id) == worker_id:
            del self.claims[meeting_id]

    def mark_chunked(self, meeting_id: str, chunk_count: int, content_hash: str | None) -> bool:
        self._check()
        meeting = self.meetings[meeting_id]
        if meeting.content_hash != content_hash:
            return False
        meeting.chunked, meeting.vectorized, meeting.chunk_count = True, False, chunk_count
        return True

    def mark_vectorized(self, meeting_id: str, content_hash: str | None) -> bool:
        self._check()
        meeting = self.meetings[meeting_id]
        if not meeting.chunked or meeting.content_hash != content_hash:
            return False
        meeting.vectorized, meeting.attempts, meeting.last_error, meeting.next_attempt_at = True, 0, None, None
        return True

    def record_failure(self, meeting_id: str, error: str, backoff_seconds: int) -> None:
        self._check()
        if meeting_id not in self.meetings:
            return
        meeting = self.meetings[meeting_id]
        meeting.attempts += 1
        meeting.last_error = error
        meeting.next_attempt_at = datetime.now(UTC) + timedelta(seconds=backoff_seconds)

    def reset_failures(self, meeting_id: str) -> None:
        meeting = self.meetings[meeting_id]
        meeting.attempts, meeting.last_error, meeting.next_attempt_at = 0, None, None

    def get_metadata(self, key: str) -> Any | None:
        return copy.deepcopy(self.metadata.get(key))

    def set_metadata(self, key: str, value: Any) -> None:
        self._check()
        self.metadata[key] = copy.deepcopy(value)

    def log_webhook_event(self, event: str, transcript_id: str | None, payload: dict[str, Any]) -> None:
        self.webhook_events.append({"event": event, "transcript_id": transcript_id, "payload": payload})

    def stats(self) -> dict[str, int]:
        rows = list(self.meetings.values())
        return {
            "total_meetings": len(rows),
            "downloaded": sum(m.downloaded for m in rows),
            "chunked": sum(m.chunked for m in rows),
            "vectorized": sum(m.vectorized for m in rows),
            "failing": sum(m.last_error is not None for m in rows),
        }


class FakeChunkStore:
    """Stands in for ChunkStore; filters mirror the PostgREST query."""

    def __init__(self, index: FakeIndex) -> None:
        self.index = index
        self.chunks: dict[str, Chunk] = {}
        self.entries: dict[str, list[SearchEntry]] = {}

    def replace_chunks(self, meeting_id: str, chunks: list[Chunk]) -> None:
        self.chunks = {k: v for k, v in self.chunks.items() if v.meeting_id != meeting_id}
        for chunk in chunks:
            self.chunks[chunk.id] = copy.deepcopy(chunk)

    def _ordered(self, meeting_id: str) -> list[Chunk]:
        rows = [c for c in self.chunks.values() if c.meeting_id == meeting_id]
        return sorted(rows, key=lambda c: (c.chunk_type.value, c.chunk_index))

    def list_chunks(self, meeting_id: str) -> list[Chunk]:
        return [copy.deepcopy(c) for c in self._ordered(meeting_id)]

    def pending_chunks(self, meeting_id: str) -> list[Chunk]:
        return [copy.deepcopy(c) for c in self._ordered(meeting_id) if c.embedding is None]

    def save_embeddings(self, chunks: list[Chunk]) -> None:
        for chunk in chunks:
            self.chunks[chunk.id] = copy.deepcopy(chunk)

    def count_unembedded(self, meeting_id: str) -> int:
        return sum(1 for c in self._ordered(meeting_id) if c.embedding is None)

    def _matches(self, meeting: Meeting, chunk: Chunk, filters: SearchFilters | None) -> bool:
        if filters is None:
            return True
        if filters.date_from and meeting.date < filters.date_from:
            return False
        if filters.date_to and meeting.date > filters.date_to:
            return False
        if filters.category and meeting.category != filters.category:
            return False
        if filters.speaker and (chunk.speaker or "").lower() != filters.speaker.lower():
            return False
        return True

    def _pairs(self, filters: SearchFilters | None) -> list[tuple[Meeting, Chunk]]:
        pairs = []
        for chunk in sorted(self.chunks.values(), key=lambda c: c.id):
            meeting = self.index.meetings.get(chunk.meeting_id)
            if meeting is not None and self._matches(meeting, chunk, filters):
                pairs.append((copy.deepcopy(meeting), copy.deepcopy(chunk)))
        return pairs

    def vector_candidates(self, model, filters=None, limit=2000):
        pairs = [(m, c) for m, c in self._pairs(filters) if c.embedding is not None and c.embedding_model == model]
        return pairs[:limit]

    def lexical_candidates(self, terms, filters=None, limit=2000):
        patterns = [word_pattern([t]) for t in terms]
        pairs = [(m, c) for m, c in self._pairs(filters) if all(p.search(c.content) for p in patterns)]
        return pairs[:limit]

    def replace_search_entries(self, meeting_id: str, entries: list[SearchEntry]) -> None:
        self.entries[meeting_id] = list(entries)

    def filter_options(self) -> dict[str, list[str]]:
        return {
            "categories": sorted({m.category for m in self.index.meetings.values()}),
            "speakers": sorted({c.speaker for c in self.chunks.values() if c.speaker}),
        }


def _bag_of_words(text: str, dims: int) -> list[float]:
    vector = [0.0] * dims
    for word in text.lower().split():
        word = word.strip(".,!?:;*")
        if not word:
            continue
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dims
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / norm for v in vector]


class FakeEmbedder:
    """Deterministic bag-of-words embedder."""

    def __init__(self, model: str = "text-embedding-3-small", dims: int = 64, batch_size: int = 10) -> None:
        self._model = model
        self.dims = dims
        self.batch_size = batch_size
        self.fail = False
        self.fail_after_batches: int | None = None
        self.batch_calls = 0

    @property
    def model(self) -> str:
        return self._model

    def batches(self, texts: list[str]):
        for i in range(0, len(texts), self.batch_size):
            yield texts[i : i + self.batch_size]

    def embed_batch(self, batch: list[str]) -> list[list[float]]:
        if self.fail or (self.fail_after_batches is not None and self.batch_calls >= self.fail_after_batches):
            raise UpstreamUnavailable("embedding provider down")
        self.batch_calls += 1
        return [_bag_of_words(text, self.dims) for text in batch]

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [v for batch in self.batches(texts) for v in self.embed_batch(batch)]

    def embed_query(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource([make_detail()])


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def chunk_store(index: FakeIndex) -> FakeChunkStore:
    return FakeChunkStore(index)


@pytest.fixture
def transcript_store() -> FakeTranscriptStore:
    return FakeTranscriptStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def pipeline(settings, source, transcript_store, index, chunk_store, embedder) -> IngestionPipeline:
    return IngestionPipeline(settings, source, transcript_store, index, chunk_store, embedder)


@pytest.fixture
def orchestrator(settings, pipeline, source, index) -> SyncOrchestrator:
    return SyncOrchestrator(settings, pipeline, source, index, worker_id="worker-test")
