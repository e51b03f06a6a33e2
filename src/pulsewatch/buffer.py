"""Buffer recombination after a failed delivery."""

from __future__ import annotations

from typing import List, Sequence, TypeVar

T = TypeVar("T")


def merge_failed_batch(failed: Sequence[T], current: Sequence[T], capacity: int) -> List[T]:
    """Put a failed batch back in front of the metrics buffered since.

    Metrics that already failed once take precedence over newer arrivals:
    the result holds the failed batch first, then as many of the most
    recent current metrics as still fit. Overflow is dropped starting with
    the oldest metric appended since the failure. A failed batch larger
    than ``capacity`` keeps only its first ``capacity`` metrics.

    Args:
        failed: The batch the reporter rejected, in delivery order.
        current: Metrics appended to the buffer after the batch was detached.
        capacity: Maximum number of metrics to keep.

    Returns:
        The new buffer contents.

    Example:
        >>> merge_failed_batch([1, 2, 3], [4, 5, 6, 7, 8], 6)
        [1, 2, 3, 6, 7, 8]
    """
    room = capacity - len(failed)
    if room <= 0:
        return list(failed[: max(capacity, 0)])
    return [*failed, *current[-room:]]
