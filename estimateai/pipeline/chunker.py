"""
Order-preserving chunking of item sequences into bounded groups.
"""

from typing import Sequence, TypeVar

T = TypeVar("T")


def chunk(items: Sequence[T], max_size: int) -> list[list[T]]:
    """
    Split items into consecutive groups of at most max_size.

    Concatenating the result reproduces the input; there are exactly
    ceil(len(items) / max_size) groups and no empty group.
    """
    if max_size < 1:
        raise ValueError(f"max_size must be >= 1, got {max_size}")
    return [list(items[i:i + max_size]) for i in range(0, len(items), max_size)]
