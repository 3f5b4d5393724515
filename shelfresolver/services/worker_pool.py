"""
Bounded worker pool for fan-out I/O.

N workers pull the next index from a shared cursor and write each result
into a pre-sized list at that index, so output order always matches input
order regardless of completion order.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[int, T], Awaitable[R]],
    concurrency: int,
) -> list[R]:
    """
    Run `worker(index, item)` over items with at most `concurrency` in flight.

    The worker is expected to handle its own failures; an exception escaping
    a worker propagates out of this call.
    """
    if not items:
        return []

    results: list[R | None] = [None] * len(items)
    cursor = 0

    async def drain() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            results[index] = await worker(index, items[index])

    worker_count = max(1, min(concurrency, len(items)))
    await asyncio.gather(*(drain() for _ in range(worker_count)))
    return results  # type: ignore[return-value]
