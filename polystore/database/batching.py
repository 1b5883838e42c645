# ==============================================================================
# BATCH SUBMISSION - Chunking & Unprocessed-Item Resubmission
# ==============================================================================
# Splits large writes into native-size batches
# Re-submits items a backend reports as unprocessed with bounded backoff
# ==============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, List, Sequence, Tuple, TypeVar

from polystore.core.exceptions import DatabaseError
from polystore.database.results import BulkItemError
from polystore.utils.helpers import chunked

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SubmitResult:
    """
    Outcome of one native batch call.

    Positions are relative to the submitted batch.

    Attributes:
        unprocessed: Positions the backend did not process (retryable)
        failed: Positions that failed permanently, with their error
    """
    unprocessed: List[int] = field(default_factory=list)
    failed: Dict[int, BaseException] = field(default_factory=dict)


@dataclass
class BatchOutcome(Generic[T]):
    """
    Aggregated outcome over every batch.

    Attributes:
        processed: Original indices that were written
        errors: Per-item failures, including exhausted retries
    """
    processed: List[int] = field(default_factory=list)
    errors: List[BulkItemError] = field(default_factory=list)


async def submit_with_retry(
    items: Sequence[T],
    submit: Callable[[List[T]], Awaitable[SubmitResult]],
    batch_size: int,
    max_attempts: int,
    backoff: float,
    backend: str = "database",
) -> BatchOutcome[T]:
    """
    Submit items in batches, re-queueing unprocessed ones.

    Each round submits every pending item in batches of ``batch_size``.
    Items reported as unprocessed are retried in the next round after
    an exponential delay. After ``max_attempts`` rounds the remaining
    items become per-item errors.

    Args:
        items: Items to submit, in order
        submit: Coroutine writing one batch and reporting its outcome
        batch_size: Maximum items per native call
        max_attempts: Maximum submission rounds
        backoff: Base delay in seconds, doubled every round
        backend: Name used in log and error messages

    Returns:
        BatchOutcome with processed indices and per-item errors
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be positive, got {max_attempts}")

    outcome: BatchOutcome[T] = BatchOutcome()
    pending: List[Tuple[int, T]] = list(enumerate(items))
    attempt = 0

    while pending and attempt < max_attempts:
        if attempt:
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                f"[{backend}] re-submitting {len(pending)} unprocessed item(s), "
                f"round {attempt + 1}/{max_attempts} after {delay:.3f}s"
            )
            await asyncio.sleep(delay)
        attempt += 1

        retry: List[Tuple[int, T]] = []
        for batch in chunked(pending, batch_size):
            result = await submit([item for _, item in batch])
            unprocessed = set(result.unprocessed)
            for position, (index, item) in enumerate(batch):
                if position in result.failed:
                    outcome.errors.append(BulkItemError(index, result.failed[position]))
                elif position in unprocessed:
                    retry.append((index, item))
                else:
                    outcome.processed.append(index)
        pending = retry

    for index, _ in pending:
        outcome.errors.append(
            BulkItemError(
                index,
                DatabaseError(
                    f"Item left unprocessed by {backend} after {max_attempts} attempt(s)",
                    operation="bulk_create",
                    details={"index": index},
                ),
            )
        )

    outcome.processed.sort()
    outcome.errors.sort(key=lambda e: e.index)
    return outcome
