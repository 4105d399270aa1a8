"""Embedding client built on the OpenAI embeddings API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING

from openai import (
    APIConnectionError,
    APIStatusError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)

from fireflies_rag.errors import UpstreamRejected, UpstreamUnavailable
from fireflies_rag.retrying import provider_retry

if TYPE_CHECKING:
    from fireflies_rag.config import Settings

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN + 1


class Embedder:
    """Batched, throttled, retried text embedding.

    ``model`` is stamped onto every chunk this embedder produces so vectors
    from different models are never compared against each other.
    """

    def __init__(
        self,
        settings: Settings,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        # Retries are handled by tenacity below, not by the SDK.
        self._client = client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.http_timeout_seconds,
            max_retries=0,
        )
        self._sleep = sleep
        self._clock = clock
        self._min_interval = 60.0 / max(1, settings.embedding_requests_per_minute)
        self._last_call: float | None = None

    @property
    def model(self) -> str:
        return self._settings.embedding_model

    def batches(self, texts: list[str]) -> Iterator[list[str]]:
        """Split *texts* by count and by estimated token budget."""
        batch: list[str] = []
        tokens = 0
        for text in texts:
            cost = estimate_tokens(text)
            if batch and (
                len(batch) >= self._settings.embedding_batch_size
                or tokens + cost > self._settings.embedding_batch_max_tokens
            ):
                yield batch
                batch, tokens = [], 0
            batch.append(text)
            tokens += cost
        if batch:
            yield batch

    def _throttle(self) -> None:
        now = self._clock()
        if self._last_call is not None:
            wait = self._min_interval - (now - self._last_call)
            if wait > 0:
                self._sleep(wait)
                now = self._clock()
        self._last_call = now

    def _create(self, batch: list[str]) -> list[list[float]]:
        self._throttle()
        kwargs: dict[str, int] = {}
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._settings.embedding_dimensions
        try:
            response = self._client.embeddings.create(input=batch, model=self.model, **kwargs)
        except (RateLimitError, APIConnectionError, InternalServerError) as exc:
            raise UpstreamUnavailable(f"Embedding provider unavailable: {exc}") from exc
        except APIStatusError as exc:
            if exc.status_code >= 500:
                raise UpstreamUnavailable(f"Embedding provider error {exc.status_code}") from exc
            raise UpstreamRejected(
                f"Embedding request rejected: {exc.message}",
                status_code=exc.status_code,
                body=str(exc.body),
            ) from exc

        items = sorted(response.data, key=lambda item: item.index)
        if len(items) != len(batch):
            raise UpstreamRejected(f"Embedding provider returned {len(items)} vectors for {len(batch)} inputs")
        return [list(item.embedding) for item in items]

    def embed_batch(self, batch: list[str]) -> list[list[float]]:
        """Embed one batch with retries; all-or-nothing."""
        return provider_retry(self._settings, logger)(self._create, batch)

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed all *texts*, preserving order."""
        vectors: list[list[float]] = []
        for batch in self.batches(texts):
            vectors.extend(self.embed_batch(batch))
        logger.debug("Embedded %d texts with %s", len(texts), self.model)
        return vectors

    def embed_query(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]
