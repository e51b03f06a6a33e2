"""Tests for failed-batch requeueing."""

from pulsewatch.buffer import merge_failed_batch


class TestMergeFailedBatch:
    """Tests for merge_failed_batch."""

    def test_failed_batch_first(self):
        """The failed batch keeps its order ahead of newer metrics."""
        assert merge_failed_batch([1, 2], [3], 10) == [1, 2, 3]

    def test_newest_current_kept_when_full(self):
        """Three failed plus five new with capacity six keeps the newest three."""
        assert merge_failed_batch([1, 2, 3], [4, 5, 6, 7, 8], 6) == [1, 2, 3, 6, 7, 8]

    def test_failed_batch_larger_than_capacity(self):
        """An oversized failed batch is cut to capacity and new metrics dropped."""
        assert merge_failed_batch([1, 2, 3, 4], [5], 3) == [1, 2, 3]

    def test_failed_batch_exactly_capacity(self):
        """No room left means current metrics are dropped."""
        assert merge_failed_batch([1, 2], [3, 4], 2) == [1, 2]

    def test_inputs_not_mutated(self):
        """The inputs are left untouched."""
        failed, current = [1], [2, 3]
        merge_failed_batch(failed, current, 2)
        assert failed == [1]
        assert current == [2, 3]
