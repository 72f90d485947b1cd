import threading
import time

import pytest

from src.crawler.scheduling import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    STATUS_DUPLICATE,
    STATUS_FAILED,
    STATUS_SUCCESS,
    BatchScheduler,
    ItemOutcome,
    chunk,
)


def test_chunk_splits_in_order():
    assert chunk(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
    assert chunk([], 3) == []
    with pytest.raises(ValueError):
        chunk([1], 0)


def test_forty_five_items_run_in_three_chunks_with_checkpoints():
    sleeps = []
    reports = []
    scheduler = BatchScheduler(
        chunk_size=20, concurrency=3, inter_chunk_delay=2.0, sleep=sleeps.append
    )

    outcome = scheduler.run(range(45), lambda item: item * 2, reports.append)

    assert [len(report.outcomes) for report in reports] == [20, 20, 5]
    assert [report.processed for report in reports] == [20, 40, 45]
    assert all(report.total == 45 for report in reports)
    assert reports[-1].total_chunks == 3
    # Delay only between chunks, never after the last one.
    assert sleeps == [2.0, 2.0]
    assert outcome.status == BATCH_COMPLETED
    assert outcome.successful == 45
    assert [o.value for o in outcome.outcomes] == [i * 2 for i in range(45)]


def test_worker_exceptions_are_isolated():
    def worker(item):
        if item % 3 == 0:
            raise RuntimeError(f"item {item} broke")
        if item == 4:
            return ItemOutcome(item=item, status=STATUS_DUPLICATE)
        return ItemOutcome(item=item, status=STATUS_SUCCESS, value=item)

    outcome = BatchScheduler(chunk_size=4, concurrency=2, sleep=lambda _: None).run(
        range(8), worker
    )

    assert outcome.status == BATCH_COMPLETED
    assert outcome.processed == 8
    assert outcome.failed == 3
    assert outcome.duplicate == 1
    assert outcome.successful == 4
    failed = [o for o in outcome.outcomes if o.status == STATUS_FAILED]
    assert [o.item for o in failed] == [0, 3, 6]
    assert failed[0].error == "item 0 broke"


def test_all_failed_batch_is_failed():
    def worker(item):
        raise ValueError("nope")

    outcome = BatchScheduler(chunk_size=2, sleep=lambda _: None).run([1, 2, 3], worker)

    assert outcome.status == BATCH_FAILED
    assert outcome.failed == 3


def test_empty_batch_completes_without_chunks():
    outcome = BatchScheduler(sleep=lambda _: None).run([], lambda item: item)
    assert outcome.status == BATCH_COMPLETED
    assert outcome.chunks == 0
    assert outcome.total == 0


def test_concurrency_is_bounded_within_a_chunk():
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def worker(item):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.01)
        with lock:
            state["active"] -= 1
        return item

    BatchScheduler(chunk_size=6, concurrency=2, sleep=lambda _: None).run(
        range(12), worker
    )

    assert 1 <= state["peak"] <= 2
