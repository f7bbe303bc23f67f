"""Bounded fan-out over upstream calls.

Revision-history lookups are one HTTP call per work item. Running them all at
once trips Azure DevOps rate limiting, so items are processed in small batches:
each batch runs concurrently and the next batch starts only when the previous
one has finished.
"""

import logging
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

logger = logging.getLogger(__name__)


def chunked(items: list[K], size: int) -> list[list[K]]:
    """Split items into consecutive chunks of at most `size` elements."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


def run_in_batches(
    items: Iterable[K],
    fn: Callable[[K], V],
    batch_size: int,
    description: str = "batch",
) -> tuple[dict[K, V], list[K]]:
    """Apply `fn` to every item with at most `batch_size` calls in flight.

    Args:
        items: Inputs (typically work item ids); duplicates are processed once
        fn: Function called with one item
        batch_size: Number of concurrent calls per batch
        description: Label used in log messages

    Returns:
        Tuple of (results keyed by item, items whose call raised)
    """
    unique = list(dict.fromkeys(items))
    batches = chunked(unique, batch_size)
    results: dict[K, V] = {}
    failed: list[K] = []

    for batch_num, batch in enumerate(batches, start=1):
        logger.info("Processing %s %d/%d (%d items)", description, batch_num, len(batches), len(batch))
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = [(item, executor.submit(fn, item)) for item in batch]
            for item, future in futures:
                try:
                    results[item] = future.result()
                except Exception as e:
                    logger.warning("%s failed for %r: %s", description, item, e)
                    failed.append(item)

    return results, failed
