"""Per-meeting ingestion stages: download -> chunk -> embed."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fireflies_rag.errors import DataIntegrityWarning, Deadline, PipelineError
from fireflies_rag.ingestion.chunking import chunk_transcript
from fireflies_rag.ingestion.models import Chunk, Meeting, TranscriptSummary, build_search_entries
from fireflies_rag.ingestion.transcript_store import render_transcript
from fireflies_rag.ingestion.vectors import encode_embedding
from fireflies_rag.pipeline_config import ChunkingConfig
from fireflies_rag.retrying import provider_retry

if TYPE_CHECKING:
    from fireflies_rag.config import Settings
    from fireflies_rag.ingestion.embeddings import Embedder
    from fireflies_rag.ingestion.fireflies import FirefliesClient
    from fireflies_rag.ingestion.storage import ChunkStore, MeetingIndex
    from fireflies_rag.ingestion.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500


@dataclass
class DownloadResult:
    meeting: Meeting
    changed: bool
    warnings: list[DataIntegrityWarning] = field(default_factory=list)


@dataclass
class VectorizeResult:
    meeting_id: str
    chunks_created: int = 0
    chunks_embedded: int = 0
    vectorized: bool = False
    skipped: bool = False


class IngestionPipeline:
    """Moves one meeting through ``Downloaded -> Chunked -> Vectorized``.

    Each stage is idempotent: re-downloading identical content keeps the
    downstream flags, and re-chunking overwrites the previous chunk set.
    """

    def __init__(
        self,
        settings: Settings,
        source: FirefliesClient,
        store: TranscriptStore,
        index: MeetingIndex,
        chunks: ChunkStore,
        embedder: Embedder,
    ) -> None:
        self.settings = settings
        self.source = source
        self.store = store
        self.index = index
        self.chunks = chunks
        self.embedder = embedder
        self.chunking = ChunkingConfig.from_settings(settings)

    def download(
        self,
        transcript_id: str,
        summary: TranscriptSummary | None = None,
        deadline: Deadline | None = None,
        force: bool = False,
    ) -> DownloadResult:
        """Fetch, render and store one transcript, then upsert its meeting row.

        A failed attempt still leaves a ``downloaded=False`` row carrying the
        error, so the transcript is retried later instead of forgotten.
        """
        previous = self.index.get(transcript_id)
        try:
            detail = provider_retry(self.settings, logger, deadline)(
                self.source.fetch_full, transcript_id, deadline
            )
            rendered = render_transcript(detail)
            blob_key = self.store.put(transcript_id, rendered)
        except PipelineError as exc:
            exc.item_id = exc.item_id or transcript_id
            exc.failure_recorded = self._record_download_failure(transcript_id, summary, previous, exc)
            raise

        content_hash = hashlib.sha256(rendered.encode("utf-8")).hexdigest()
        changed = force or previous is None or previous.content_hash != content_hash
        keep = previous is not None and not changed

        body_lines = [f"{s.speaker}: {s.text}" for s in detail.sentences]
        meeting = Meeting(
            id=transcript_id,
            title=detail.title,
            date=detail.date,
            duration=detail.duration,
            participants=detail.participants,
            category=detail.category,
            blob_key=blob_key,
            downloaded=True,
            chunked=previous.chunked if keep else False,
            vectorized=previous.vectorized if keep else False,
            preview="\n".join(body_lines)[:PREVIEW_CHARS] or detail.summary_text,
            word_count=sum(len(s.text.split()) for s in detail.sentences),
            content_hash=content_hash,
            chunk_count=previous.chunk_count if keep else 0,
        )
        self.index.upsert(meeting)

        for warning in detail.warnings:
            logger.warning("Transcript %s: %s (%s)", warning.item_id, warning.message, warning.field)
        logger.info("Downloaded transcript %s (%s)", transcript_id, "changed" if changed else "unchanged")
        return DownloadResult(meeting=meeting, changed=changed, warnings=list(detail.warnings))

    def _record_download_failure(
        self,
        transcript_id: str,
        summary: TranscriptSummary | None,
        previous: Meeting | None,
        exc: PipelineError,
    ) -> bool:
        """Persist the failure on the meeting row; False if even that fails."""
        try:
            if previous is None:
                self.index.upsert(
                    Meeting(
                        id=transcript_id,
                        title=summary.title if summary else "Untitled Meeting",
                        date=summary.date if summary else datetime.fromtimestamp(0, tz=UTC),
                        duration=summary.duration if summary else 0,
                        participants=summary.participants if summary else [],
                        downloaded=False,
                    )
                )
            self.index.record_failure(transcript_id, str(exc), self.settings.failure_backoff_seconds)
        except PipelineError:
            logger.exception("Could not record download failure for %s", transcript_id)
            return False
        return True

    def chunk(self, meeting: Meeting) -> list[Chunk]:
        """Re-chunk a downloaded meeting from its stored transcript."""
        if not meeting.downloaded or not meeting.blob_key:
            raise PipelineError("Meeting has not been downloaded", item_id=meeting.id)

        rendered = self.store.get(meeting.blob_key)
        chunks = chunk_transcript(meeting.id, rendered, meeting.duration, self.chunking)
        self.chunks.replace_chunks(meeting.id, chunks)
        if not self.index.mark_chunked(meeting.id, len(chunks), meeting.content_hash):
            logger.info("Meeting %s changed while chunking; leaving it for the next pass", meeting.id)
            return chunks

        meeting.chunked = True
        meeting.vectorized = False
        meeting.chunk_count = len(chunks)
        logger.info("Chunked meeting %s into %d chunks", meeting.id, len(chunks))
        return chunks

    def embed(self, meeting: Meeting, deadline: Deadline | None = None) -> int:
        """Embed the meeting's pending chunks batch by batch.

        Every successful batch is saved immediately; the meeting is marked
        vectorized only once no chunk is left without an embedding.
        """
        if not meeting.chunked:
            raise PipelineError("Meeting has not been chunked", item_id=meeting.id)

        pending = self.chunks.pending_chunks(meeting.id)
        embedded = 0
        offset = 0
        for texts in self.embedder.batches([c.content for c in pending]):
            if deadline is not None:
                deadline.check(meeting.id)
            group = pending[offset : offset + len(texts)]
            offset += len(texts)
            vectors = self.embedder.embed_batch(texts)
            for chunk, vector in zip(group, vectors, strict=True):
                chunk.embedding = encode_embedding(vector)
                chunk.embedding_model = self.embedder.model
            self.chunks.save_embeddings(group)
            embedded += len(group)

        if self.chunks.count_unembedded(meeting.id) > 0:
            return embedded
        if not self.index.mark_vectorized(meeting.id, meeting.content_hash):
            logger.info("Meeting %s changed while embedding; leaving it for the next pass", meeting.id)
            return embedded
        meeting.vectorized = True
        entries = build_search_entries(meeting, self.chunks.list_chunks(meeting.id))
        self.chunks.replace_search_entries(meeting.id, entries)
        logger.info("Vectorized meeting %s (%d new embeddings)", meeting.id, embedded)
        return embedded

    def vectorize(self, meeting_id: str, worker_id: str, deadline: Deadline | None = None) -> VectorizeResult:
        """Chunk (if needed) and embed one meeting under a processing lease."""
        if not self.index.claim(meeting_id, worker_id, self.settings.claim_ttl_seconds):
            return VectorizeResult(meeting_id=meeting_id, skipped=True)

        try:
            meeting = self.index.get(meeting_id)
            if meeting is None:
                raise PipelineError("Meeting not found", item_id=meeting_id)
            result = VectorizeResult(meeting_id=meeting_id)
            if not meeting.chunked:
                result.chunks_created = len(self.chunk(meeting))
            if meeting.chunked and not meeting.vectorized:
                result.chunks_embedded = self.embed(meeting, deadline)
            result.vectorized = meeting.vectorized
            return result
        except PipelineError as exc:
            exc.item_id = exc.item_id or meeting_id
            try:
                self.index.record_failure(meeting_id, str(exc), self.settings.failure_backoff_seconds)
                exc.failure_recorded = True
            except PipelineError:
                logger.exception("Could not record vectorize failure for %s", meeting_id)
            raise
        finally:
            try:
                self.index.release(meeting_id, worker_id)
            except PipelineError:
                logger.warning("Could not release claim on %s; it expires on its own", meeting_id)
