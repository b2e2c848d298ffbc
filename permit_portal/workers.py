"""
Bounded worker pool for batch sweeps.

Each unit of work runs independently; a failure is captured and handed
back with its item so the sweep can record it and carry on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, TypeVar

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def _run_one(func: Callable[[T], R], item: T) -> tuple[Optional[R], Optional[Exception]]:
    try:
        return func(item), None
    except Exception as e:
        logger.exception("Work item %r failed", item)
        return None, e


def run_bounded(
    func: Callable[[T], R], items: Iterable[T], concurrency: int = 1
) -> Iterator[tuple[T, Optional[R], Optional[Exception]]]:
    """Apply ``func`` to every item with at most ``concurrency`` in flight.

    Yields ``(item, result, error)``; error is None on success. With
    concurrency 1 the items run inline, in order.
    """
    items = list(items)
    if concurrency <= 1 or len(items) <= 1:
        for item in items:
            result, error = _run_one(func, item)
            yield item, result, error
        return

    with ThreadPoolExecutor(max_workers=min(concurrency, len(items))) as pool:
        futures = {pool.submit(_run_one, func, item): item for item in items}
        for future in as_completed(futures):
            result, error = future.result()
            yield futures[future], result, error
