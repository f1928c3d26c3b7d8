"""
Bounded worker pool used by every pass.

Units (a voucher block, a child row, a bulk record) run on a
ThreadPoolExecutor. At most `2 * max_workers` units are in flight, so large
inputs are consumed lazily. Results come back in input order.
"""
from __future__ import annotations
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Iterator, Optional, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def is_cancelled(cancel: Optional[threading.Event]) -> bool:
    return cancel is not None and cancel.is_set()


def map_bounded(
    fn: Callable[[T], R],
    items: Iterable[T],
    max_workers: int,
    cancel: Optional[threading.Event] = None,
) -> Iterator[R]:
    """
    Apply `fn` to each item on a bounded pool, yielding results in order.

    Once `cancel` is set no new unit is started; units already running
    finish and their results are still yielded.
    """
    max_workers = max(1, max_workers)
    window = max_workers * 2
    source = iter(items)
    pending: deque[Future] = deque()
    exhausted = False

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tally-ingest") as pool:
        while True:
            while not exhausted and len(pending) < window and not is_cancelled(cancel):
                try:
                    item = next(source)
                except StopIteration:
                    exhausted = True
                    break
                pending.append(pool.submit(fn, item))
            if not pending:
                break
            yield pending.popleft().result()
