"""Chunked batch scheduling for scrape runs.

Items are split into fixed-size chunks that run strictly one after
another. Inside a chunk a small thread pool runs the worker concurrently;
the scheduler waits for the whole chunk, reports running totals through
``on_chunk_complete`` (the persistence checkpoint) and sleeps for the
inter-chunk delay before the next chunk starts.

Worker exceptions are recorded as failed items. They never abort the
remaining chunks.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from src import config

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_DUPLICATE = "duplicate"
STATUS_FAILED = "failed"

BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"


def chunk(items: Sequence[Any], size: int) -> list[list[Any]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass
class ItemOutcome:
    item: Any
    status: str
    value: Any = None
    error: Optional[str] = None


@dataclass
class ChunkReport:
    """Running totals after one chunk has fully completed."""

    index: int
    total_chunks: int
    outcomes: list[ItemOutcome]
    processed: int
    successful: int
    duplicate: int
    failed: int
    total: int


@dataclass
class BatchOutcome:
    status: str
    outcomes: list[ItemOutcome] = field(default_factory=list)
    chunks: int = 0
    processed: int = 0
    successful: int = 0
    duplicate: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return len(self.outcomes)


class BatchScheduler:
    def __init__(
        self,
        chunk_size: int | None = None,
        concurrency: int | None = None,
        inter_chunk_delay: float | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.chunk_size = max(
            1, chunk_size if chunk_size is not None else config.SCRAPE_CHUNK_SIZE
        )
        self.concurrency = max(
            1, concurrency if concurrency is not None else config.SCRAPE_CONCURRENCY
        )
        self.inter_chunk_delay = max(
            0.0,
            inter_chunk_delay
            if inter_chunk_delay is not None
            else config.SCRAPE_CHUNK_DELAY,
        )
        self._sleep = sleep

    def _run_one(self, worker: Callable[[Any], ItemOutcome], item: Any) -> ItemOutcome:
        try:
            outcome = worker(item)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Worker failed for %r", item)
            return ItemOutcome(item=item, status=STATUS_FAILED, error=str(exc))
        if not isinstance(outcome, ItemOutcome):
            return ItemOutcome(item=item, status=STATUS_SUCCESS, value=outcome)
        return outcome

    def _run_chunk(
        self, worker: Callable[[Any], ItemOutcome], items: list[Any]
    ) -> list[ItemOutcome]:
        if self.concurrency == 1 or len(items) == 1:
            return [self._run_one(worker, item) for item in items]

        # Results are re-ordered to input order once the chunk is done.
        results: dict[int, ItemOutcome] = {}
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(items))) as pool:
            futures = {
                pool.submit(self._run_one, worker, item): position
                for position, item in enumerate(items)
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return [results[position] for position in range(len(items))]

    def run(
        self,
        items: Iterable[Any],
        worker: Callable[[Any], ItemOutcome],
        on_chunk_complete: Callable[[ChunkReport], None] | None = None,
    ) -> BatchOutcome:
        items = list(items)
        chunks = chunk(items, self.chunk_size) if items else []
        outcome = BatchOutcome(status=BATCH_COMPLETED, chunks=len(chunks))

        logger.info(
            "Processing %d items in %d chunks (size=%d, concurrency=%d)",
            len(items),
            len(chunks),
            self.chunk_size,
            self.concurrency,
        )

        for index, chunk_items in enumerate(chunks, start=1):
            chunk_outcomes = self._run_chunk(worker, chunk_items)
            outcome.outcomes.extend(chunk_outcomes)
            for item_outcome in chunk_outcomes:
                outcome.processed += 1
                if item_outcome.status == STATUS_SUCCESS:
                    outcome.successful += 1
                elif item_outcome.status == STATUS_DUPLICATE:
                    outcome.duplicate += 1
                else:
                    outcome.failed += 1

            logger.info(
                "Chunk %d/%d complete: %d processed, %d ok, %d duplicate, %d failed",
                index,
                len(chunks),
                outcome.processed,
                outcome.successful,
                outcome.duplicate,
                outcome.failed,
            )
            if on_chunk_complete is not None:
                on_chunk_complete(
                    ChunkReport(
                        index=index,
                        total_chunks=len(chunks),
                        outcomes=chunk_outcomes,
                        processed=outcome.processed,
                        successful=outcome.successful,
                        duplicate=outcome.duplicate,
                        failed=outcome.failed,
                        total=len(items),
                    )
                )

            if index < len(chunks) and self.inter_chunk_delay > 0:
                self._sleep(self.inter_chunk_delay)

        if items and outcome.failed == len(items):
            outcome.status = BATCH_FAILED
        return outcome
