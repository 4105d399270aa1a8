"""Chunking strategies for rendered meeting transcripts.

Every meeting gets three independent chunk sets: one ``full`` chunk,
overlapping ``time_segment`` windows and ``speaker_turn`` runs. All three are
pure functions of the rendered document and the :class:`ChunkingConfig`, so
re-chunking a transcript yields byte-identical chunks with the same ids.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from fireflies_rag.ingestion.models import Chunk, TranscriptDetail, TranscriptSentence
from fireflies_rag.ingestion.transcript_store import parse_rendered_transcript
from fireflies_rag.pipeline_config import ChunkingConfig, ChunkType

_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)|\n")


def _word_count(text: str) -> int:
    return len(text.split())


def _format_clock(seconds: float) -> str:
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _speaker_lines(sentences: list[TranscriptSentence]) -> list[str]:
    """Join consecutive sentences of one speaker into ``Speaker: text`` lines."""
    lines: list[str] = []
    current: str | None = None
    buffer: list[str] = []
    for sentence in sentences:
        if sentence.speaker != current and buffer:
            lines.append(f"{current}: {' '.join(buffer)}")
            buffer = []
        current = sentence.speaker
        buffer.append(sentence.text)
    if buffer:
        lines.append(f"{current}: {' '.join(buffer)}")
    return lines


def truncate_at_sentence_boundary(text: str, max_chars: int) -> str:
    """Cut *text* to at most *max_chars* at the last sentence boundary.

    Falls back to the last whitespace when the window holds no sentence end.
    Only a single unbroken token longer than *max_chars* is cut mid-word.
    """
    if len(text) <= max_chars:
        return text

    best = 0
    for match in _SENTENCE_END_RE.finditer(text, 0, max_chars + 1):
        if match.end() <= max_chars:
            best = match.end()
    if best > 0:
        return text[:best].rstrip()

    space = max(text.rfind(" ", 0, max_chars + 1), text.rfind("\n", 0, max_chars + 1))
    if space > 0:
        return text[:space].rstrip()
    return text[:max_chars]


def _effective_duration(detail: TranscriptDetail, duration_seconds: float | None) -> float:
    """Declared duration, stretched to the last timed sentence if that runs longer."""
    last = 0.0
    for sentence in detail.sentences:
        for value in (sentence.start_time, sentence.end_time):
            if value is not None and value > last:
                last = value
    declared = float(duration_seconds or 0)
    return max(declared, last)


def full_chunk(
    meeting_id: str,
    detail: TranscriptDetail,
    duration: float,
    max_chars: int = 24_000,
) -> list[Chunk]:
    """Single chunk holding the whole conversation, capped at *max_chars*."""
    if not detail.sentences:
        return []

    header = f"Meeting: {detail.title}\nDate: {detail.date.date().isoformat()}\n"
    if detail.summary_text:
        header += f"Summary: {detail.summary_text}\n"
    content = header + "\n" + "\n".join(_speaker_lines(detail.sentences))

    return [
        Chunk(
            meeting_id=meeting_id,
            chunk_index=0,
            chunk_type=ChunkType.FULL,
            content=truncate_at_sentence_boundary(content, max_chars),
            start_time=0.0,
            end_time=duration,
        )
    ]


def _in_window(sentence: TranscriptSentence, start: float, end: float) -> bool:
    """True when the sentence's time range intersects ``[start, end)``."""
    if sentence.start_time is None:
        return False
    s_start = sentence.start_time
    s_end = sentence.end_time if sentence.end_time is not None else s_start
    return s_start < end and (s_start >= start or s_end > start)


def time_segment_chunks(
    meeting_id: str,
    detail: TranscriptDetail,
    duration: float,
    window_seconds: int = 300,
    overlap_seconds: int = 60,
) -> list[Chunk]:
    """Fixed-width windows with trailing overlap.

    Window *k* starts at ``k * window_seconds`` and extends ``overlap_seconds``
    past its nominal end (clipped to the duration), so a sentence spanning a
    boundary appears whole in the earlier window. Windows without sentences
    emit nothing; their range is absorbed by the neighbouring chunk, keeping
    ``[0, duration]`` covered.
    """
    timed = [s for s in detail.sentences if s.start_time is not None]
    if not timed or duration <= 0:
        return []

    chunks: list[Chunk] = []
    k = 0
    while k * window_seconds < duration:
        window_start = float(k * window_seconds)
        window_end = min(window_start + window_seconds + overlap_seconds, duration)
        k += 1

        members = [s for s in timed if _in_window(s, window_start, window_end)]
        if not members:
            if chunks:
                chunks[-1].end_time = max(chunks[-1].end_time or 0.0, window_end)
            continue

        nominal_end = min(window_start + window_seconds, duration)
        content = (
            f"Meeting: {detail.title}\n"
            f"Time Segment: {_format_clock(window_start)}-{_format_clock(nominal_end)}\n\n"
            + "\n".join(_speaker_lines(members))
        )
        chunks.append(
            Chunk(
                meeting_id=meeting_id,
                chunk_index=len(chunks),
                chunk_type=ChunkType.TIME_SEGMENT,
                content=content,
                # The first emitted chunk also absorbs any silent lead-in.
                start_time=0.0 if not chunks else window_start,
                end_time=window_end,
            )
        )

    return chunks


@dataclass
class _Turn:
    speaker: str
    order: int
    sentences: list[TranscriptSentence] = field(default_factory=list)

    @property
    def words(self) -> int:
        return sum(_word_count(s.text) for s in self.sentences)


def _merge_tiny_turns(turns: list[_Turn], min_words: int) -> list[_Turn]:
    """Fold turns under *min_words* into the next turn by the same speaker.

    A tiny turn with no later turn by its speaker joins that speaker's
    previous turn instead; a speaker with a single tiny turn keeps it.
    """
    emitted: list[_Turn] = []
    carry: dict[str, _Turn] = {}

    for turn in turns:
        pending = carry.pop(turn.speaker, None)
        if pending is not None:
            pending.sentences.extend(turn.sentences)
            turn = pending
        if turn.words < min_words:
            carry[turn.speaker] = turn
            continue
        emitted.append(turn)

    for leftover in sorted(carry.values(), key=lambda t: t.order):
        previous = next((t for t in reversed(emitted) if t.speaker == leftover.speaker), None)
        if previous is not None:
            previous.sentences.extend(leftover.sentences)
        else:
            emitted.append(leftover)

    return sorted(emitted, key=lambda t: t.order)


def _split_long_turn(sentences: list[TranscriptSentence], max_words: int) -> list[list[TranscriptSentence]]:
    """Split at sentence boundaries so each part stays within *max_words*."""
    parts: list[list[TranscriptSentence]] = []
    current: list[TranscriptSentence] = []
    count = 0
    for sentence in sentences:
        words = _word_count(sentence.text)
        if current and count + words > max_words:
            parts.append(current)
            current, count = [], 0
        current.append(sentence)
        count += words
    if current:
        parts.append(current)
    return parts


def speaker_turn_chunks(
    meeting_id: str,
    detail: TranscriptDetail,
    min_words: int = 8,
    max_words: int = 500,
) -> list[Chunk]:
    """One chunk per maximal same-speaker run, after merging tiny runs."""
    if not detail.sentences:
        return []

    turns: list[_Turn] = []
    for sentence in detail.sentences:
        if turns and turns[-1].speaker == sentence.speaker:
            turns[-1].sentences.append(sentence)
        else:
            turns.append(_Turn(speaker=sentence.speaker, order=len(turns), sentences=[sentence]))

    chunks: list[Chunk] = []
    for turn in _merge_tiny_turns(turns, min_words):
        for part in _split_long_turn(turn.sentences, max_words):
            first_time = part[0].start_time
            time_line = f"Time: {_format_clock(first_time)}\n" if first_time is not None else ""
            content = (
                f"Meeting: {detail.title}\nSpeaker: {turn.speaker}\n{time_line}\n"
                + " ".join(s.text for s in part)
            )
            chunks.append(
                Chunk(
                    meeting_id=meeting_id,
                    chunk_index=len(chunks),
                    chunk_type=ChunkType.SPEAKER_TURN,
                    content=content,
                    speaker=turn.speaker,
                    start_time=first_time,
                    end_time=part[-1].end_time if part[-1].end_time is not None else part[-1].start_time,
                )
            )

    return chunks


def chunk_transcript(
    meeting_id: str,
    rendered_text: str,
    duration_seconds: float | None,
    config: ChunkingConfig | None = None,
) -> list[Chunk]:
    """Apply all three strategies to a rendered transcript.

    Args:
        meeting_id: Owning meeting; becomes part of every chunk id.
        rendered_text: Document produced by ``render_transcript``.
        duration_seconds: Meeting length; derived from sentence timings when
            missing or shorter than the last sentence.
        config: Chunking parameters (defaults when omitted).

    Returns:
        Full, time-segment and speaker-turn chunks, in that order. An empty
        transcript yields an empty list.
    """
    config = config or ChunkingConfig()
    detail = parse_rendered_transcript(rendered_text)
    if not detail.sentences:
        return []

    duration = _effective_duration(detail, duration_seconds)
    return [
        *full_chunk(meeting_id, detail, duration, config.full_chunk_max_chars),
        *time_segment_chunks(
            meeting_id,
            detail,
            duration,
            config.time_segment_seconds,
            config.time_segment_overlap_seconds,
        ),
        *speaker_turn_chunks(
            meeting_id,
            detail,
            config.speaker_turn_min_words,
            config.speaker_turn_max_words,
        ),
    ]
