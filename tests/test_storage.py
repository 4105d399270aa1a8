"""Tests for the Supabase-backed MeetingIndex and ChunkStore with a mocked client."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from fireflies_rag.errors import StorageError
from fireflies_rag.ingestion.models import Chunk, Meeting, SearchFilters
from fireflies_rag.ingestion.storage import (
    ChunkStore,
    MeetingIndex,
    chunk_to_row,
    meeting_to_row,
    row_to_chunk,
    row_to_meeting,
)
from fireflies_rag.ingestion.vectors import encode_embedding
from fireflies_rag.pipeline_config import ChunkType

_CHAIN = (
    "select", "eq", "limit", "order", "range", "or_", "update",
    "upsert", "insert", "delete", "is_", "gte", "lte", "ilike", "filter",
)


def _query(data=None, count=None) -> MagicMock:
    """A PostgREST builder stand-in: every filter returns the builder itself."""
    query = MagicMock()
    for name in _CHAIN:
        getattr(query, name).return_value = query
    query.not_ = query
    query.execute.return_value = SimpleNamespace(data=data or [], count=count)
    return query


def _client(query: MagicMock) -> MagicMock:
    client = MagicMock()
    client.table.return_value = query
    return client


def _meeting(**overrides) -> Meeting:
    values = {
        "id": "T1",
        "title": "Weekly Planning",
        "date": datetime(2025, 3, 4, 15, 0, tzinfo=UTC),
        "participants": ["ana@example.com"],
        "category": "planning",
        "downloaded": True,
    }
    values.update(overrides)
    return Meeting(**values)


class TestRowMapping:
    def test_meeting_round_trip(self) -> None:
        meeting = _meeting(next_attempt_at=datetime(2025, 3, 5, tzinfo=UTC), attempts=2, last_error="boom")
        row = meeting_to_row(meeting)

        assert row["date"] == "2025-03-04T15:00:00.000000Z"
        assert row_to_meeting(row) == meeting

    def test_meeting_defaults_for_sparse_row(self) -> None:
        meeting = row_to_meeting({"id": "T2"})
        assert meeting.title == "Untitled Meeting"
        assert meeting.date == datetime.fromtimestamp(0, tz=UTC)
        assert not meeting.downloaded

    def test_chunk_round_trip_with_embedding(self) -> None:
        chunk = Chunk(
            meeting_id="T1",
            chunk_index=3,
            chunk_type=ChunkType.SPEAKER_TURN,
            content="Ana: hello",
            speaker="Ana",
            start_time=1.5,
            end_time=4.0,
            embedding=encode_embedding([0.5, -1.0]),
            embedding_model="text-embedding-3-small",
        )
        row = chunk_to_row(chunk)

        assert row["id"] == "T1:speaker_turn:3"
        assert row["embedding"].startswith("\\x")
        assert row_to_chunk(row) == chunk


class TestMeetingIndex:
    def test_upsert_on_id(self) -> None:
        query = _query()
        MeetingIndex(_client(query)).upsert(_meeting())

        row = query.upsert.call_args.args[0]
        assert row["id"] == "T1"
        assert query.upsert.call_args.kwargs == {"on_conflict": "id"}

    def test_get_missing(self) -> None:
        assert MeetingIndex(_client(_query())).get("nope") is None

    def test_get_found(self) -> None:
        query = _query(data=[meeting_to_row(_meeting())])
        assert MeetingIndex(_client(query)).get("T1").title == "Weekly Planning"

    def test_list_pages_newest_first(self) -> None:
        query = _query()
        MeetingIndex(_client(query)).list(limit=20, offset=40)

        query.order.assert_any_call("date", desc=True)
        query.range.assert_called_once_with(40, 59)

    def test_due_queries_skip_backing_off_items(self) -> None:
        query = _query(data=[meeting_to_row(_meeting(downloaded=False))])
        pending = MeetingIndex(_client(query)).find_missing_download(10)

        assert [m.id for m in pending] == ["T1"]
        clause = query.or_.call_args.args[0]
        assert clause.startswith("next_attempt_at.is.null,next_attempt_at.lte.")
        query.eq.assert_any_call("downloaded", False)

    def test_claim(self) -> None:
        query = _query(data=[{"id": "T1"}])
        assert MeetingIndex(_client(query)).claim("T1", "worker-a", 600)
        update = query.update.call_args.args[0]
        assert update["claimed_by"] == "worker-a"
        assert "claimed_by.eq.worker-a" in query.or_.call_args.args[0]

    def test_claim_held_elsewhere(self) -> None:
        assert not MeetingIndex(_client(_query(data=[]))).claim("T1", "worker-a", 600)

    def test_record_failure_backs_off_exponentially(self) -> None:
        query = _query(data=[meeting_to_row(_meeting(attempts=2))])
        before = datetime.now(UTC)

        MeetingIndex(_client(query)).record_failure("T1", "timeout", backoff_seconds=300)

        update = query.update.call_args.args[0]
        assert update["attempts"] == 3
        assert update["last_error"] == "timeout"
        next_attempt = datetime.fromisoformat(update["next_attempt_at"])
        assert next_attempt - before >= timedelta(seconds=1200)
        assert next_attempt - before < timedelta(seconds=1260)

    def test_record_failure_backoff_capped(self) -> None:
        query = _query(data=[meeting_to_row(_meeting(attempts=30))])
        before = datetime.now(UTC)

        MeetingIndex(_client(query)).record_failure("T1", "x" * 5000, backoff_seconds=300)

        update = query.update.call_args.args[0]
        assert len(update["last_error"]) == 1000
        assert datetime.fromisoformat(update["next_attempt_at"]) - before <= timedelta(hours=24, seconds=5)

    def test_mark_vectorized_requires_same_chunked_content(self) -> None:
        query = _query(data=[{"id": "T1"}])

        assert MeetingIndex(_client(query)).mark_vectorized("T1", "abc")

        assert query.update.call_args.args[0]["vectorized"] is True
        query.eq.assert_any_call("chunked", True)
        query.eq.assert_any_call("content_hash", "abc")

    def test_mark_vectorized_after_content_change(self) -> None:
        assert not MeetingIndex(_client(_query(data=[]))).mark_vectorized("T1", "stale")

    def test_mark_chunked_without_hash(self) -> None:
        query = _query(data=[])

        assert not MeetingIndex(_client(query)).mark_chunked("T1", 22, None)
        query.is_.assert_called_once_with("content_hash", "null")

    def test_metadata(self) -> None:
        query = _query(data=[{"value": {"watermark": None}}])
        index = MeetingIndex(_client(query))

        assert index.get_metadata("sync_cursor") == {"watermark": None}
        index.set_metadata("sync_cursor", {"watermark": "2025-03-01T00:00:00+00:00"})
        assert query.upsert.call_args.kwargs == {"on_conflict": "key"}

    def test_stats(self) -> None:
        stats = MeetingIndex(_client(_query(count=7))).stats()
        assert stats["total_meetings"] == 7
        assert stats["embedded_chunks"] == 0

    def test_api_error_becomes_storage_error(self) -> None:
        query = _query()
        query.execute.side_effect = APIError({"message": "relation does not exist", "code": "42P01"})

        with pytest.raises(StorageError) as excinfo:
            MeetingIndex(_client(query)).mark_chunked("T1", 4, "abc")
        assert excinfo.value.item_id == "T1"
        assert excinfo.value.retryable

    def test_transport_error_becomes_storage_error(self) -> None:
        query = _query()
        query.execute.side_effect = httpx.ConnectTimeout("timed out")

        with pytest.raises(StorageError):
            MeetingIndex(_client(query)).count()


class TestChunkStore:
    def _chunks(self, n: int) -> list[Chunk]:
        return [Chunk("T1", i, ChunkType.TIME_SEGMENT, f"segment {i}") for i in range(n)]

    def test_replace_chunks_deletes_then_inserts_in_batches(self) -> None:
        query = _query()
        ChunkStore(_client(query)).replace_chunks("T1", self._chunks(120))

        query.delete.assert_called_once()
        query.eq.assert_any_call("meeting_id", "T1")
        assert [len(c.args[0]) for c in query.insert.call_args_list] == [50, 50, 20]

    def test_save_embeddings_requires_model(self) -> None:
        chunk = self._chunks(1)[0]
        chunk.embedding = encode_embedding([1.0])
        with pytest.raises(ValueError):
            ChunkStore(_client(_query())).save_embeddings([chunk])

    def test_save_embeddings_upserts(self) -> None:
        query = _query()
        chunk = self._chunks(1)[0]
        chunk.embedding = encode_embedding([1.0])
        chunk.embedding_model = "text-embedding-3-small"

        ChunkStore(_client(query)).save_embeddings([chunk])

        assert query.upsert.call_args.kwargs == {"on_conflict": "id"}

    def test_vector_candidates_scoped_to_model(self) -> None:
        row = chunk_to_row(self._chunks(1)[0])
        row["meetings"] = {"id": "T1", "title": "Weekly Planning", "date": "2025-03-04T15:00:00+00:00"}
        query = _query(data=[row])

        pairs = ChunkStore(_client(query)).vector_candidates("text-embedding-3-small")

        query.eq.assert_any_call("embedding_model", "text-embedding-3-small")
        meeting, chunk = pairs[0]
        assert meeting.title == "Weekly Planning"
        assert chunk.id == "T1:time_segment:0"

    def test_filters_applied(self) -> None:
        query = _query()
        filters = SearchFilters(
            date_from=datetime(2025, 3, 1, tzinfo=UTC),
            date_to=datetime(2025, 3, 31, tzinfo=UTC),
            category="planning",
            speaker="Ana",
        )

        ChunkStore(_client(query)).lexical_candidates(["budget", "plan"], filters)

        query.gte.assert_called_once_with("meetings.date", "2025-03-01T00:00:00.000000Z")
        query.lte.assert_called_once_with("meetings.date", "2025-03-31T00:00:00.000000Z")
        query.eq.assert_any_call("meetings.category", "planning")
        assert [c.args for c in query.filter.call_args_list] == [
            ("speaker", "imatch", "^Ana$"),
            ("content", "imatch", r"\mbudget\M"),
            ("content", "imatch", r"\mplan\M"),
        ]
        query.or_.assert_not_called()

    def test_speaker_wildcards_are_literal(self) -> None:
        query = _query()
        ChunkStore(_client(query)).vector_candidates("m", SearchFilters(speaker="A%n_a (PM)"))

        query.ilike.assert_not_called()
        query.filter.assert_called_once_with("speaker", "imatch", r"^A%n_a\ \(PM\)$")

    def test_lexical_without_terms_skips_query(self) -> None:
        query = _query()
        assert ChunkStore(_client(query)).lexical_candidates([]) == []
        query.execute.assert_not_called()

    def test_filter_options(self) -> None:
        query = _query(data=[{"category": "review", "speaker": "Ben"}, {"category": "planning", "speaker": "Ana"}])
        options = ChunkStore(_client(query)).filter_options()
        assert options == {"categories": ["planning", "review"], "speakers": ["Ana", "Ben"]}
