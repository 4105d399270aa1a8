"""Claude-powered answer generation with source attribution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from anthropic import Anthropic
from anthropic.types import TextBlock

if TYPE_CHECKING:
    from fireflies_rag.config import Settings
    from fireflies_rag.retrieval.search import SearchHit


def format_context(hits: list[SearchHit]) -> str:
    parts: list[str] = []
    for i, hit in enumerate(hits):
        speaker = hit.chunk.speaker or "Multiple speakers"
        time = hit.chunk.start_time
        time_str = f" [{time:.1f}s]" if time else ""
        date = hit.meeting.date.date().isoformat()
        parts.append(f"[Source {i + 1}] {hit.meeting.title} ({date}) {speaker}{time_str}:\n{hit.chunk.content}")
    return "\n\n".join(parts)


def generate_answer(
    question: str,
    hits: list[SearchHit],
    settings: Settings,
    client: Anthropic | None = None,
) -> dict[str, Any]:
    """Generate an answer using Claude with source attribution.

    Args:
        question: The user's question.
        hits: Retrieved chunks, best first.
        settings: Supplies the API key and model name.
        client: Optional preconfigured Anthropic client.

    Returns:
        Dictionary with answer, model, and usage info.
    """
    client = client or Anthropic(api_key=settings.anthropic_api_key)
    response = client.messages.create(
        model=settings.llm_model,
        max_tokens=1024,
        system=(
            "You are a meeting intelligence assistant. Answer questions based "
            "on the provided meeting transcript excerpts.\n\n"
            "Rules:\n"
            "- Only answer based on the provided context. If the answer isn't "
            "in the context, say so.\n"
            "- Cite your sources using [Source N] notation.\n"
            "- Mention the meeting title and speaker when relevant.\n"
            "- Be concise and direct."
        ),
        messages=[
            {
                "role": "user",
                "content": f"Context from meeting transcripts:\n\n{format_context(hits)}\n\nQuestion: {question}",
            }
        ],
    )

    # response.content is a union of block types; plain text was requested.
    block = response.content[0]
    if not isinstance(block, TextBlock):
        raise ValueError(f"Expected TextBlock from Claude, got {type(block).__name__}")

    return {
        "answer": block.text,
        "model": response.model,
        "usage": {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        },
    }
