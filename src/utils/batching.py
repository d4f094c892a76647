from __future__ import annotations

from collections.abc import Iterable, Iterator
from itertools import islice
from typing import TypeVar

T = TypeVar("T")


def batch(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive groups of at most ``size`` items, preserving order."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    iterator = iter(items)
    while True:
        group = list(islice(iterator, size))
        if not group:
            return
        yield group
