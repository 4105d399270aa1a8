"""Supabase-backed metadata index and chunk (vector) store."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, cast

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from fireflies_rag.errors import StorageError
from fireflies_rag.ingestion.models import Chunk, Meeting, SearchEntry, SearchFilters
from fireflies_rag.ingestion.vectors import from_pg_bytea, to_pg_bytea
from fireflies_rag.pipeline_config import ChunkType

if TYPE_CHECKING:
    from fireflies_rag.config import Settings

logger = logging.getLogger(__name__)

MEETINGS_TABLE = "meetings"
CHUNKS_TABLE = "meeting_chunks"
SEARCH_TABLE = "vector_index"
WEBHOOK_TABLE = "webhook_events"
METADATA_TABLE = "system_metadata"

_INSERT_BATCH = 50
_MAX_BACKOFF = timedelta(hours=24)


def get_supabase_client(settings: Settings) -> Client:
    """Create a Supabase client with bounded PostgREST and storage timeouts."""
    options = ClientOptions(
        postgrest_client_timeout=settings.db_timeout_seconds,
        storage_client_timeout=settings.db_timeout_seconds,
    )
    return create_client(settings.supabase_url, settings.supabase_key, options=options)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime) -> str:
    """UTC timestamp without ``+`` so it survives PostgREST filter strings."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _execute(query: Any, action: str, item_id: str | None = None) -> Any:
    """Run a PostgREST query, translating backend failures into StorageError."""
    try:
        return query.execute()
    except (APIError, httpx.HTTPError) as exc:
        raise StorageError(f"{action} failed: {exc}", item_id=item_id) from exc


def _rows(result: Any) -> list[dict[str, Any]]:
    # Supabase .data is typed as JSON (broad union); cast to concrete type.
    return cast(list[dict[str, Any]], result.data or [])


def _same_content(query: Any, content_hash: str | None) -> Any:
    if content_hash is None:
        return query.is_("content_hash", "null")
    return query.eq("content_hash", content_hash)


def meeting_to_row(meeting: Meeting) -> dict[str, Any]:
    return {
        "id": meeting.id,
        "title": meeting.title,
        "date": _iso(meeting.date),
        "duration": meeting.duration,
        "participants": meeting.participants,
        "category": meeting.category,
        "blob_key": meeting.blob_key,
        "downloaded": meeting.downloaded,
        "chunked": meeting.chunked,
        "vectorized": meeting.vectorized,
        "preview": meeting.preview,
        "word_count": meeting.word_count,
        "content_hash": meeting.content_hash,
        "attempts": meeting.attempts,
        "last_error": meeting.last_error,
        "next_attempt_at": _iso(meeting.next_attempt_at) if meeting.next_attempt_at else None,
        "chunk_count": meeting.chunk_count,
        "updated_at": _iso(_utcnow()),
    }


def row_to_meeting(row: dict[str, Any]) -> Meeting:
    return Meeting(
        id=row["id"],
        title=row.get("title") or "Untitled Meeting",
        date=_parse_dt(row.get("date")) or datetime.fromtimestamp(0, tz=UTC),
        duration=row.get("duration") or 0,
        participants=list(row.get("participants") or []),
        category=row.get("category") or "general",
        blob_key=row.get("blob_key"),
        downloaded=bool(row.get("downloaded")),
        chunked=bool(row.get("chunked")),
        vectorized=bool(row.get("vectorized")),
        preview=row.get("preview"),
        word_count=row.get("word_count") or 0,
        content_hash=row.get("content_hash"),
        attempts=row.get("attempts") or 0,
        last_error=row.get("last_error"),
        next_attempt_at=_parse_dt(row.get("next_attempt_at")),
        chunk_count=row.get("chunk_count") or 0,
    )


def chunk_to_row(chunk: Chunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "meeting_id": chunk.meeting_id,
        "chunk_index": chunk.chunk_index,
        "chunk_type": chunk.chunk_type.value,
        "content": chunk.content,
        "speaker": chunk.speaker,
        "start_time": chunk.start_time,
        "end_time": chunk.end_time,
        "embedding": to_pg_bytea(chunk.embedding),
        "embedding_model": chunk.embedding_model,
    }


def row_to_chunk(row: dict[str, Any]) -> Chunk:
    return Chunk(
        meeting_id=row["meeting_id"],
        chunk_index=row["chunk_index"],
        chunk_type=ChunkType(row["chunk_type"]),
        content=row.get("content") or "",
        speaker=row.get("speaker"),
        start_time=row.get("start_time"),
        end_time=row.get("end_time"),
        embedding=from_pg_bytea(row.get("embedding")),
        embedding_model=row.get("embedding_model"),
    )


class MeetingIndex:
    """The ``meetings`` table: per-meeting metadata and processing flags.

    The flags double as the work queue. ``claim`` and ``record_failure``
    add a lease and per-item backoff on top so concurrent workers never
    process the same meeting and a poisoned item cannot starve the rest.
    """

    def __init__(self, client: Client) -> None:
        self._client = client

    def _table(self) -> Any:
        return self._client.table(MEETINGS_TABLE)

    def upsert(self, meeting: Meeting) -> None:
        _execute(
            self._table().upsert(meeting_to_row(meeting), on_conflict="id"),
            "Upsert meeting",
            meeting.id,
        )

    def get(self, meeting_id: str) -> Meeting | None:
        result = _execute(self._table().select("*").eq("id", meeting_id).limit(1), "Get meeting", meeting_id)
        rows = _rows(result)
        return row_to_meeting(rows[0]) if rows else None

    def list(self, limit: int = 20, offset: int = 0) -> list[Meeting]:
        query = self._table().select("*").order("date", desc=True).order("id").range(offset, offset + limit - 1)
        return [row_to_meeting(r) for r in _rows(_execute(query, "List meetings"))]

    def count(self) -> int:
        result = _execute(self._table().select("id", count="exact").limit(1), "Count meetings")
        return result.count or 0

    def _due(self, query: Any) -> Any:
        """Exclude items still backing off after a failure; oldest first."""
        now = _iso(_utcnow())
        return query.or_(f"next_attempt_at.is.null,next_attempt_at.lte.{now}").order("date").order("id")

    def find_missing_download(self, limit: int) -> list[Meeting]:
        query = self._due(self._table().select("*").eq("downloaded", False)).limit(limit)
        return [row_to_meeting(r) for r in _rows(_execute(query, "Find missing downloads"))]

    def find_unvectorized(self, limit: int) -> list[Meeting]:
        query = self._due(
            self._table().select("*").eq("downloaded", True).eq("vectorized", False)
        ).limit(limit)
        return [row_to_meeting(r) for r in _rows(_execute(query, "Find unvectorized meetings"))]

    def claim(self, meeting_id: str, worker_id: str, ttl_seconds: int) -> bool:
        """Take the processing lease; succeeds only when it is free, expired, or already ours."""
        now = _utcnow()
        query = (
            self._table()
            .update({"claimed_by": worker_id, "claim_expires_at": _iso(now + timedelta(seconds=ttl_seconds))})
            .eq("id", meeting_id)
            .or_(f"claimed_by.is.null,claim_expires_at.lt.{_iso(now)},claimed_by.eq.{worker_id}")
        )
        claimed = bool(_rows(_execute(query, "Claim meeting", meeting_id)))
        if not claimed:
            logger.info("Meeting %s is claimed by another worker", meeting_id)
        return claimed

    def release(self, meeting_id: str, worker_id: str) -> None:
        query = (
            self._table()
            .update({"claimed_by": None, "claim_expires_at": None})
            .eq("id", meeting_id)
            .eq("claimed_by", worker_id)
        )
        _execute(query, "Release meeting", meeting_id)

    def mark_chunked(self, meeting_id: str, chunk_count: int, content_hash: str | None) -> bool:
        """Flag the meeting chunked unless its content changed meanwhile; False if it did."""
        query = _same_content(
            self._table().update(
                {"chunked": True, "vectorized": False, "chunk_count": chunk_count, "updated_at": _iso(_utcnow())}
            ).eq("id", meeting_id),
            content_hash,
        )
        return bool(_rows(_execute(query, "Mark chunked", meeting_id)))

    def mark_vectorized(self, meeting_id: str, content_hash: str | None) -> bool:
        """Flag the meeting vectorized only while it is still chunked from *content_hash*."""
        query = self._table().update(
            {
                "vectorized": True,
                "attempts": 0,
                "last_error": None,
                "next_attempt_at": None,
                "updated_at": _iso(_utcnow()),
            }
        )
        query = _same_content(query.eq("id", meeting_id).eq("chunked", True), content_hash)
        return bool(_rows(_execute(query, "Mark vectorized", meeting_id)))

    def record_failure(self, meeting_id: str, error: str, backoff_seconds: int) -> None:
        """Bump the attempt counter and push the next attempt out exponentially."""
        current = self.get(meeting_id)
        attempts = (current.attempts if current else 0) + 1
        delay = min(timedelta(seconds=backoff_seconds * 2 ** (attempts - 1)), _MAX_BACKOFF)
        query = self._table().update(
            {
                "attempts": attempts,
                "last_error": error[:1000],
                "next_attempt_at": _iso(_utcnow() + delay),
                "updated_at": _iso(_utcnow()),
            }
        ).eq("id", meeting_id)
        _execute(query, "Record failure", meeting_id)
        logger.warning("Meeting %s failed (attempt %d), next try in %s: %s", meeting_id, attempts, delay, error)

    def reset_failures(self, meeting_id: str) -> None:
        query = self._table().update({"attempts": 0, "last_error": None, "next_attempt_at": None}).eq(
            "id", meeting_id
        )
        _execute(query, "Reset failures", meeting_id)

    def get_metadata(self, key: str) -> Any | None:
        query = self._client.table(METADATA_TABLE).select("value").eq("key", key).limit(1)
        rows = _rows(_execute(query, f"Read metadata {key}"))
        return rows[0]["value"] if rows else None

    def set_metadata(self, key: str, value: Any) -> None:
        query = self._client.table(METADATA_TABLE).upsert(
            {"key": key, "value": value, "updated_at": _iso(_utcnow())}, on_conflict="key"
        )
        _execute(query, f"Write metadata {key}")

    def log_webhook_event(self, event: str, transcript_id: str | None, payload: dict[str, Any]) -> None:
        query = self._client.table(WEBHOOK_TABLE).insert(
            {"event_type": event, "transcript_id": transcript_id, "payload": payload}
        )
        _execute(query, "Log webhook event", transcript_id)

    def _count_where(self, table: str, **filters: Any) -> int:
        query = self._client.table(table).select("id", count="exact")
        for column, value in filters.items():
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        return _execute(query.limit(1), f"Count {table}").count or 0

    def stats(self) -> dict[str, int]:
        """Pipeline counters for the analytics endpoint."""
        total = self.count()
        failing = _execute(
            self._table().select("id", count="exact").not_.is_("last_error", "null").limit(1),
            "Count failing meetings",
        )
        total_chunks = _execute(
            self._client.table(CHUNKS_TABLE).select("id", count="exact").limit(1), "Count chunks"
        )
        unembedded = self._count_where(CHUNKS_TABLE, embedding=None)
        return {
            "total_meetings": total,
            "downloaded": self._count_where(MEETINGS_TABLE, downloaded=True),
            "chunked": self._count_where(MEETINGS_TABLE, chunked=True),
            "vectorized": self._count_where(MEETINGS_TABLE, vectorized=True),
            "failing": failing.count or 0,
            "total_chunks": total_chunks.count or 0,
            "embedded_chunks": (total_chunks.count or 0) - unembedded,
        }


class ChunkStore:
    """The ``meeting_chunks`` table plus its ``vector_index`` listing projection."""

    def __init__(self, client: Client) -> None:
        self._client = client

    def _table(self) -> Any:
        return self._client.table(CHUNKS_TABLE)

    def replace_chunks(self, meeting_id: str, chunks: list[Chunk]) -> None:
        """Swap a meeting's chunk set for a new one (insert in batches of 50)."""
        _execute(self._table().delete().eq("meeting_id", meeting_id), "Delete chunks", meeting_id)
        rows = [chunk_to_row(c) for c in chunks]
        for i in range(0, len(rows), _INSERT_BATCH):
            _execute(self._table().insert(rows[i : i + _INSERT_BATCH]), "Insert chunks", meeting_id)
        logger.debug("Stored %d chunks for meeting %s", len(rows), meeting_id)

    def list_chunks(self, meeting_id: str) -> list[Chunk]:
        query = self._table().select("*").eq("meeting_id", meeting_id).order("chunk_type").order("chunk_index")
        return [row_to_chunk(r) for r in _rows(_execute(query, "List chunks", meeting_id))]

    def pending_chunks(self, meeting_id: str) -> list[Chunk]:
        query = (
            self._table()
            .select("*")
            .eq("meeting_id", meeting_id)
            .is_("embedding", "null")
            .order("chunk_type")
            .order("chunk_index")
        )
        return [row_to_chunk(r) for r in _rows(_execute(query, "List pending chunks", meeting_id))]

    def save_embeddings(self, chunks: list[Chunk]) -> None:
        """Persist embedded chunks; every chunk must carry its embedding model."""
        if not chunks:
            return
        for chunk in chunks:
            if chunk.embedding is not None and not chunk.embedding_model:
                raise ValueError(f"Chunk {chunk.id} has an embedding but no embedding_model")
        rows = [chunk_to_row(c) for c in chunks]
        for i in range(0, len(rows), _INSERT_BATCH):
            _execute(
                self._table().upsert(rows[i : i + _INSERT_BATCH], on_conflict="id"),
                "Save embeddings",
                chunks[0].meeting_id,
            )

    def count_unembedded(self, meeting_id: str) -> int:
        query = self._table().select("id", count="exact").eq("meeting_id", meeting_id).is_("embedding", "null")
        return _execute(query.limit(1), "Count unembedded chunks", meeting_id).count or 0

    def _filtered(self, filters: SearchFilters | None) -> Any:
        query = self._table().select("*, meetings!inner(id, title, date, category, participants, duration)")
        if filters is None:
            return query
        if filters.date_from:
            query = query.gte("meetings.date", _iso(filters.date_from))
        if filters.date_to:
            query = query.lte("meetings.date", _iso(filters.date_to))
        if filters.category:
            query = query.eq("meetings.category", filters.category)
        if filters.speaker:
            query = query.filter("speaker", "imatch", f"^{re.escape(filters.speaker)}$")
        return query

    @staticmethod
    def _with_meeting(rows: list[dict[str, Any]]) -> list[tuple[Meeting, Chunk]]:
        pairs = []
        for row in rows:
            meeting_row = row.pop("meetings", None) or {"id": row["meeting_id"]}
            pairs.append((row_to_meeting(meeting_row), row_to_chunk(row)))
        return pairs

    def vector_candidates(
        self, model: str, filters: SearchFilters | None = None, limit: int = 2000
    ) -> list[tuple[Meeting, Chunk]]:
        """Embedded chunks for *model* only, with their meeting, after pre-filters."""
        query = (
            self._filtered(filters)
            .eq("embedding_model", model)
            .not_.is_("embedding", "null")
            .order("id")
            .limit(limit)
        )
        return self._with_meeting(_rows(_execute(query, "Fetch vector candidates")))

    def lexical_candidates(
        self, terms: list[str], filters: SearchFilters | None = None, limit: int = 2000
    ) -> list[tuple[Meeting, Chunk]]:
        """Chunks containing every one of *terms* as a whole word (case-insensitive)."""
        if not terms:
            return []
        query = self._filtered(filters)
        for term in terms:
            query = query.filter("content", "imatch", rf"\m{re.escape(term)}\M")
        query = query.order("id").limit(limit)
        return self._with_meeting(_rows(_execute(query, "Fetch lexical candidates")))

    def replace_search_entries(self, meeting_id: str, entries: list[SearchEntry]) -> None:
        table = self._client.table(SEARCH_TABLE)
        _execute(table.delete().eq("meeting_id", meeting_id), "Delete search entries", meeting_id)
        rows = [
            {
                "chunk_id": e.chunk_id,
                "meeting_id": e.meeting_id,
                "meeting_title": e.meeting_title,
                "meeting_date": _iso(e.meeting_date),
                "chunk_preview": e.chunk_preview,
                "relevance_score": e.relevance_score,
            }
            for e in entries
        ]
        for i in range(0, len(rows), _INSERT_BATCH):
            _execute(table.insert(rows[i : i + _INSERT_BATCH]), "Insert search entries", meeting_id)

    def filter_options(self) -> dict[str, list[str]]:
        """Distinct categories and speakers available for search filters."""
        categories = _rows(
            _execute(self._client.table(MEETINGS_TABLE).select("category"), "List categories")
        )
        speakers = _rows(
            _execute(
                self._table().select("speaker").eq("chunk_type", ChunkType.SPEAKER_TURN.value),
                "List speakers",
            )
        )
        return {
            "categories": sorted({r["category"] for r in categories if r.get("category")}),
            "speakers": sorted({r["speaker"] for r in speakers if r.get("speaker")}),
        }
