"""Bounded exponential retry for calls to external providers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from fireflies_rag.errors import Deadline, PipelineError

if TYPE_CHECKING:
    from fireflies_rag.config import Settings


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PipelineError) and exc.retryable


def provider_retry(
    settings: Settings,
    logger: logging.Logger,
    deadline: Deadline | None = None,
) -> Retrying:
    """Retry retryable pipeline errors with exponential backoff.

    Gives up after ``settings.max_retries`` attempts, or as soon as the
    optional deadline has expired, and re-raises the last error.
    """
    stop = stop_after_attempt(max(1, settings.max_retries))
    if deadline is not None:
        stop = stop_any(stop, lambda _state: deadline.expired())
    return Retrying(
        stop=stop,
        wait=wait_exponential(
            multiplier=1,
            exp_base=settings.retry_backoff_base,
            max=settings.retry_max_wait,
        ),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
