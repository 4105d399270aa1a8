"""Fireflies.ai GraphQL client and transcript normalisation.

Every provider response passes through :func:`normalize_transcript` (or
:func:`normalize_summary` for list entries) before anything else sees it, so
the rest of the pipeline only deals with :class:`TranscriptDetail`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from fireflies_rag.errors import (
    DataIntegrityWarning,
    Deadline,
    MalformedTranscriptError,
    UpstreamRejected,
    UpstreamUnavailable,
    effective_timeout,
)
from fireflies_rag.ingestion.models import (
    UNKNOWN_SPEAKER,
    TranscriptDetail,
    TranscriptSentence,
    TranscriptSummary,
)

if TYPE_CHECKING:
    from fireflies_rag.config import Settings

logger = logging.getLogger(__name__)

LIST_TRANSCRIPTS_QUERY = """
query Transcripts($limit: Int, $toDate: DateTime, $fromDate: DateTime) {
  transcripts(limit: $limit, toDate: $toDate, fromDate: $fromDate) {
    id
    title
    date
    duration
    participants
  }
}
"""

GET_TRANSCRIPT_QUERY = """
query Transcript($id: String!) {
  transcript(id: $id) {
    id
    title
    date
    duration
    participants
    sentences {
      index
      text
      speaker_name
      speaker_id
      start_time
      end_time
    }
    summary {
      overview
    }
  }
}
"""

_CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("standup", ("standup", "stand-up", "daily")),
    ("planning", ("planning", "sprint")),
    ("review", ("review", "retro")),
    ("one-on-one", ("1:1", "one-on-one", "1-on-1")),
]

_EPOCH = datetime.fromtimestamp(0, tz=UTC)


def categorize(title: str) -> str:
    """Derive a meeting category from keywords in its title."""
    lowered = title.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return "general"


def _parse_date(value: Any) -> datetime | None:
    """Accept epoch milliseconds (number or digit string) or an ISO-8601 string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) or (isinstance(value, str) and value.strip().isdigit()):
        return datetime.fromtimestamp(float(value) / 1000, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _normalize_participants(raw: Any) -> list[str]:
    """Participants arrive as strings, comma-joined strings, or contact objects."""
    if not raw:
        return []
    items = raw if isinstance(raw, list) else [raw]
    names: list[str] = []
    for item in items:
        if isinstance(item, dict):
            candidate = item.get("displayName") or item.get("name") or item.get("email")
            parts = [str(candidate)] if candidate else []
        else:
            parts = str(item).split(",")
        for part in parts:
            cleaned = part.strip()
            if cleaned and cleaned not in names:
                names.append(cleaned)
    return names


def _normalize_summary_text(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw.strip() or None
    if isinstance(raw, dict):
        for key in ("overview", "short_summary", "gist"):
            value = raw.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _normalize_speaker(raw: dict[str, Any]) -> str:
    for key in ("speaker_name", "speaker_id"):
        value = raw.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return UNKNOWN_SPEAKER


def _normalize_sentences(raw: Any) -> list[TranscriptSentence]:
    if not isinstance(raw, list):
        return []
    entries = [s for s in raw if isinstance(s, dict)]
    if entries and all(isinstance(s.get("index"), int) for s in entries):
        entries = sorted(entries, key=lambda s: s["index"])
    sentences = []
    for entry in entries:
        text = " ".join(str(entry.get("text") or "").split())
        if not text:
            continue
        sentences.append(
            TranscriptSentence(
                speaker=_normalize_speaker(entry),
                text=text,
                start_time=_parse_float(entry.get("start_time")),
                end_time=_parse_float(entry.get("end_time")),
            )
        )
    return sentences


def _common_fields(raw: Any) -> tuple[str, str, datetime, list[str], list[DataIntegrityWarning]]:
    if not isinstance(raw, dict):
        raise MalformedTranscriptError("Transcript record is not an object")
    transcript_id = str(raw.get("id") or "").strip()
    if not transcript_id:
        raise MalformedTranscriptError("Transcript record has no id", body=str(raw)[:500])

    warnings: list[DataIntegrityWarning] = []
    title = str(raw.get("title") or "").strip()
    if not title:
        title = "Untitled Meeting"
        warnings.append(DataIntegrityWarning(transcript_id, "title", "missing title; defaulted"))

    date = _parse_date(raw.get("date"))
    if date is None:
        date = _EPOCH
        warnings.append(DataIntegrityWarning(transcript_id, "date", "missing or unparseable date; defaulted to epoch"))

    return transcript_id, title, date, _normalize_participants(raw.get("participants")), warnings


def normalize_summary(raw: Any) -> TranscriptSummary:
    """Normalise one entry of the transcripts list."""
    transcript_id, title, date, participants, warnings = _common_fields(raw)
    duration = _parse_float(raw.get("duration"))
    return TranscriptSummary(
        id=transcript_id,
        title=title,
        date=date,
        duration=int(duration or 0),
        participants=participants,
        warnings=warnings,
    )


def normalize_transcript(raw: Any) -> TranscriptDetail:
    """Normalise a full transcript record into the strict internal shape.

    Raises:
        MalformedTranscriptError: If the record is missing or has no id.
    """
    if raw is None:
        raise MalformedTranscriptError("Transcript not found")
    transcript_id, title, date, participants, warnings = _common_fields(raw)
    sentences = _normalize_sentences(raw.get("sentences"))

    last_time = max(
        (t for s in sentences for t in (s.start_time, s.end_time) if t is not None),
        default=0.0,
    )
    duration = _parse_float(raw.get("duration"))
    if duration is None:
        duration = last_time
        warnings.append(DataIntegrityWarning(transcript_id, "duration", "missing duration; derived from sentences"))
    elif duration < last_time <= duration * 60:
        # Fireflies reports duration in minutes for some accounts.
        duration = duration * 60

    return TranscriptDetail(
        id=transcript_id,
        title=title,
        date=date,
        duration=int(round(duration)),
        participants=participants,
        sentences=sentences,
        summary_text=_normalize_summary_text(raw.get("summary")),
        category=categorize(title),
        warnings=warnings,
    )


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class FirefliesClient:
    """Thin GraphQL client for the Fireflies.ai API.

    Calls are never retried here; callers wrap them with
    :func:`fireflies_rag.retrying.provider_retry`.
    """

    def __init__(self, settings: Settings, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._url = settings.fireflies_api_url
        self._http = http_client or httpx.Client(timeout=settings.http_timeout_seconds)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> FirefliesClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        query: str,
        variables: dict[str, Any],
        deadline: Deadline | None = None,
        item_id: str | None = None,
    ) -> dict[str, Any]:
        timeout = effective_timeout(self._settings.http_timeout_seconds, deadline, item_id)
        headers = {
            "Authorization": f"Bearer {self._settings.fireflies_api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self._http.post(
                self._url,
                json={"query": query, "variables": variables},
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(f"Fireflies request timed out after {timeout:.1f}s", item_id) from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"Fireflies unreachable: {exc}", item_id) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailable(f"Fireflies returned HTTP {response.status_code}", item_id)
        if response.status_code >= 400:
            raise UpstreamRejected(
                f"Fireflies rejected the request (HTTP {response.status_code})",
                item_id=item_id,
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamRejected(
                "Fireflies returned a non-JSON body",
                item_id=item_id,
                status_code=response.status_code,
                body=response.text[:1000],
            ) from exc

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            codes = {str((e.get("extensions") or {}).get("code", "")) for e in errors if isinstance(e, dict)}
            if "too_many_requests" in codes:
                raise UpstreamUnavailable("Fireflies rate limit reached", item_id)
            raise UpstreamRejected(
                f"Fireflies GraphQL errors: {errors}",
                item_id=item_id,
                status_code=response.status_code,
                body=response.text,
            )
        data = payload.get("data") if isinstance(payload, dict) else None
        return data or {}

    def fetch_recent(
        self,
        limit: int,
        since: datetime | None = None,
        deadline: Deadline | None = None,
        until: datetime | None = None,
    ) -> list[TranscriptSummary]:
        """List up to *limit* transcripts dated in ``[since, until]``, newest first.

        Pages with a ``toDate`` cursor set to the oldest date of the previous
        page; the provider's offset parameter is never used. Records repeated
        across a page boundary are dropped by id.
        """
        page_size = max(1, self._settings.fireflies_page_size)
        results: list[TranscriptSummary] = []
        seen: set[str] = set()
        cursor: str | None = _iso(until) if until else None

        while len(results) < limit:
            requested = min(limit - len(results), page_size)
            variables: dict[str, Any] = {"limit": requested}
            if cursor:
                variables["toDate"] = cursor
            if since:
                variables["fromDate"] = _iso(since)

            page = self._request(LIST_TRANSCRIPTS_QUERY, variables, deadline).get("transcripts") or []
            oldest: datetime | None = None
            for raw in page:
                try:
                    summary = normalize_summary(raw)
                except MalformedTranscriptError as exc:
                    logger.warning("Skipping transcript list entry: %s", exc.message)
                    continue
                if oldest is None or summary.date < oldest:
                    oldest = summary.date
                if summary.id in seen:
                    continue
                seen.add(summary.id)
                results.append(summary)
                if len(results) >= limit:
                    break

            if len(page) < requested or oldest is None:
                break
            next_cursor = _iso(oldest)
            if next_cursor == cursor:
                logger.warning("Transcript cursor stuck at %s; stopping pagination", cursor)
                break
            cursor = next_cursor

        logger.info("Fetched %d transcript summaries", len(results))
        return results

    def fetch_full(self, transcript_id: str, deadline: Deadline | None = None) -> TranscriptDetail:
        """Fetch one transcript with its ordered sentences."""
        data = self._request(GET_TRANSCRIPT_QUERY, {"id": transcript_id}, deadline, item_id=transcript_id)
        try:
            return normalize_transcript(data.get("transcript"))
        except MalformedTranscriptError as exc:
            exc.item_id = exc.item_id or transcript_id
            raise
