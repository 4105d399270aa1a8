"""Canonical markdown rendering of transcripts and their blob storage.

The rendered document is the stored artifact *and* the chunker's input, so
it carries a metadata header plus one timestamped line per sentence::

    # Weekly Planning

    - **ID:** 01HXYZ
    - **Date:** 2025-03-04T15:00:00+00:00
    - **Duration:** 1845 seconds
    - **Category:** planning
    - **Participants:** ana@example.com, ben@example.com

    ---

    ## Transcript

    [00:00:01.000 - 00:00:04.250] **Ana:** Let's get started.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fireflies_rag.errors import StorageError
from fireflies_rag.ingestion.models import UNKNOWN_SPEAKER, TranscriptDetail, TranscriptSentence

if TYPE_CHECKING:
    from supabase import Client

logger = logging.getLogger(__name__)

_MISSING_TS = "--:--:--.---"

_HEADER_RE = re.compile(r"^- \*\*(?P<key>[A-Za-z]+):\*\* ?(?P<value>.*)$")
_SENTENCE_RE = re.compile(
    r"^\[(?P<start>[\d:.\-]+) - (?P<end>[\d:.\-]+)\] \*\*(?P<speaker>.*?):\*\* ?(?P<text>.*)$"
)


def _clean(text: str) -> str:
    """Collapse whitespace so every value fits on one line."""
    return " ".join(text.split())


def _clean_speaker(speaker: str | None) -> str:
    cleaned = _clean((speaker or "").replace("*", ""))
    return cleaned or UNKNOWN_SPEAKER


def format_timestamp(seconds: float | None) -> str:
    """Format seconds as ``HH:MM:SS.mmm``."""
    if seconds is None:
        return _MISSING_TS
    millis = round(max(0.0, seconds) * 1000)
    hours, rem = divmod(millis, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def parse_timestamp(ts: str) -> float | None:
    """Convert an ``HH:MM:SS.mmm`` (or ``MM:SS.mmm``) timestamp to seconds."""
    if ts == _MISSING_TS:
        return None
    parts = ts.strip().split(":")
    if len(parts) == 3:
        hours, minutes, seconds = parts
    elif len(parts) == 2:
        hours = "0"
        minutes, seconds = parts
    else:
        return None
    try:
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    except ValueError:
        return None


def render_transcript(detail: TranscriptDetail) -> str:
    """Render a transcript as the deterministic, self-describing markdown document."""
    lines = [
        f"# {_clean(detail.title) or 'Untitled Meeting'}",
        "",
        f"- **ID:** {detail.id}",
        f"- **Date:** {detail.date.isoformat()}",
        f"- **Duration:** {int(detail.duration)} seconds",
        f"- **Category:** {detail.category}",
        f"- **Participants:** {', '.join(_clean(p.replace(',', ' ')) for p in detail.participants)}",
        "",
        "---",
        "",
    ]

    if detail.summary_text and detail.summary_text.strip():
        lines += ["## Summary", "", _clean(detail.summary_text), ""]

    lines += ["## Transcript", ""]
    for sentence in detail.sentences:
        text = _clean(sentence.text)
        if not text:
            continue
        lines.append(
            f"[{format_timestamp(sentence.start_time)} - {format_timestamp(sentence.end_time)}] "
            f"**{_clean_speaker(sentence.speaker)}:** {text}"
        )

    return "\n".join(lines) + "\n"


def parse_rendered_transcript(text: str) -> TranscriptDetail:
    """Parse a document produced by :func:`render_transcript`.

    Unrecognised lines are ignored, so a hand-edited or partially written
    document still yields whatever sentences it contains.
    """
    title = "Untitled Meeting"
    header: dict[str, str] = {}
    summary_lines: list[str] = []
    sentences: list[TranscriptSentence] = []
    section = "header"

    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if section == "header" and line.startswith("# "):
            title = line[2:].strip() or title
            continue
        if line.startswith("## "):
            section = line[3:].strip().lower()
            continue

        if section == "header":
            match = _HEADER_RE.match(line)
            if match:
                header[match.group("key").lower()] = match.group("value").strip()
        elif section == "summary":
            if line.strip():
                summary_lines.append(line.strip())
        elif section == "transcript":
            match = _SENTENCE_RE.match(line)
            if match:
                sentences.append(
                    TranscriptSentence(
                        speaker=_clean_speaker(match.group("speaker")),
                        text=match.group("text").strip(),
                        start_time=parse_timestamp(match.group("start")),
                        end_time=parse_timestamp(match.group("end")),
                    )
                )

    date = _parse_header_date(header.get("date"))
    duration_match = re.match(r"(\d+)", header.get("duration", ""))
    participants = [p.strip() for p in header.get("participants", "").split(",") if p.strip()]

    return TranscriptDetail(
        id=header.get("id", ""),
        title=title,
        date=date,
        duration=int(duration_match.group(1)) if duration_match else 0,
        participants=participants,
        sentences=sentences,
        summary_text=" ".join(summary_lines) or None,
        category=header.get("category") or "general",
    )


def _parse_header_date(value: str | None) -> datetime:
    if value:
        try:
            parsed = datetime.fromisoformat(value)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        except ValueError:
            pass
    return datetime.fromtimestamp(0, tz=UTC)


def blob_key_for(meeting_id: str) -> str:
    """Deterministic blob key; the same meeting always overwrites the same object."""
    return f"transcripts/{meeting_id}.md"


class TranscriptStore:
    """Rendered transcripts in a Supabase Storage bucket."""

    def __init__(self, client: Client, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    def put(self, meeting_id: str, rendered_text: str) -> str:
        key = blob_key_for(meeting_id)
        try:
            self._client.storage.from_(self._bucket).upload(
                path=key,
                file=rendered_text.encode("utf-8"),
                file_options={"content-type": "text/markdown; charset=utf-8", "upsert": "true"},
            )
        except Exception as exc:
            raise StorageError(f"Failed to write transcript blob {key}: {exc}", item_id=meeting_id) from exc
        logger.debug("Stored transcript %s (%d bytes)", key, len(rendered_text))
        return key

    def get(self, blob_key: str) -> str:
        try:
            data = self._client.storage.from_(self._bucket).download(blob_key)
        except Exception as exc:
            raise StorageError(f"Failed to read transcript blob {blob_key}: {exc}") from exc
        return data.decode("utf-8")
