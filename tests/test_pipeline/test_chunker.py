"""
Tests for order-preserving chunking.
"""

import pytest

from estimateai.pipeline.chunker import chunk


class TestChunk:
    """Test chunk()."""

    def test_exact_multiple(self):
        assert chunk([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_remainder_goes_last(self):
        result = chunk(list(range(25)), 10)
        assert [len(c) for c in result] == [10, 10, 5]

    def test_concatenation_reproduces_input(self):
        items = [f"code-{i}" for i in range(37)]
        result = chunk(items, 8)
        assert [x for c in result for x in c] == items

    def test_chunk_count_is_ceiling(self):
        for n in (1, 9, 10, 11, 99, 100):
            assert len(chunk(list(range(n)), 10)) == -(-n // 10)

    def test_no_chunk_exceeds_max(self):
        assert all(len(c) <= 3 for c in chunk(list(range(17)), 3))

    def test_empty_input(self):
        assert chunk([], 5) == []

    def test_max_larger_than_input(self):
        assert chunk(["a", "b"], 50) == [["a", "b"]]

    def test_max_size_one(self):
        assert chunk(["a", "b", "c"], 1) == [["a"], ["b"], ["c"]]

    @pytest.mark.parametrize("bad", [0, -1])
    def test_invalid_max_size(self, bad):
        with pytest.raises(ValueError):
            chunk([1, 2, 3], bad)

    def test_accepts_tuples(self):
        assert chunk((1, 2, 3), 2) == [[1, 2], [3]]
