"""Tests for nbody_lbvh.sort: the key-sorter capability."""

import numpy as np
import pytest

from nbody_lbvh.sort import sort_by_key_cpu, default_sorter


class TestSortByKeyCPU:

    def test_sorts_in_place(self):
        rng = np.random.default_rng(3)
        keys = rng.integers(0, 2**32, size=500, dtype=np.uint64).astype(np.uint32)
        values = np.arange(500, dtype=np.uint32)
        keys_before = keys.copy()
        keys_id = id(keys)

        sort_by_key_cpu(keys, values)

        assert id(keys) == keys_id
        assert np.all(np.diff(keys.astype(np.int64)) >= 0)
        # values are a permutation carrying their keys along
        assert sorted(values.tolist()) == list(range(500))
        np.testing.assert_array_equal(keys_before[values], keys)

    def test_ties_by_value(self):
        keys = np.array([7, 3, 7, 3, 7], dtype=np.uint32)
        values = np.array([4, 3, 2, 1, 0], dtype=np.uint32)
        sort_by_key_cpu(keys, values)
        np.testing.assert_array_equal(keys, [3, 3, 7, 7, 7])
        np.testing.assert_array_equal(values, [1, 3, 0, 2, 4])

    def test_max_key(self):
        keys = np.array([0xFFFFFFFF, 0, 0xFFFFFFFF], dtype=np.uint32)
        values = np.array([2, 1, 0], dtype=np.uint32)
        sort_by_key_cpu(keys, values)
        np.testing.assert_array_equal(values, [1, 0, 2])

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            sort_by_key_cpu(np.zeros(3, np.uint32), np.zeros(4, np.uint32))


def test_default_sorter():
    assert default_sorter(False) is sort_by_key_cpu
