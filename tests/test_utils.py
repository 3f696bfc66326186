"""
Tests for label and seeding helpers.
"""

import numpy as np

from stableclust.utils import (
    UNASSIGNED,
    chunk_ranges,
    cluster_sizes,
    filter_min_size,
    make_rng,
    normalize_labels,
    relabel_by_size,
    resolve_workers,
)


class TestLabels:
    """Test label normalization and relabelling."""

    def test_normalize_maps_negatives(self):
        """Test that every negative label becomes -1."""
        assert normalize_labels([0, -3, 2, -1]).tolist() == [0, -1, 2, -1]

    def test_cluster_sizes_skips_unassigned(self):
        """Test that -1 is not counted as a cluster."""
        assert cluster_sizes(np.array([0, 0, 1, -1, -1])) == {0: 2, 1: 1}

    def test_filter_min_size(self):
        """Test that small clusters become unassigned."""
        labels = filter_min_size(np.array([0, 0, 0, 1, 2, 2]), 2)

        assert labels.tolist() == [0, 0, 0, UNASSIGNED, 2, 2]

    def test_relabel_by_size_descending(self):
        """Test that the largest cluster gets id 0."""
        labels = relabel_by_size(np.array([5, 7, 7, 7, 5, -1]))

        assert labels.tolist() == [1, 0, 0, 0, 1, -1]

    def test_relabel_ties_by_lowest_index(self):
        """Test that equal sizes are ordered by first sample."""
        labels = relabel_by_size(np.array([3, 3, 1, 1]), tie_break="index")

        assert labels.tolist() == [0, 0, 1, 1]

    def test_relabel_ties_by_label_value(self):
        """Test that 'none' keeps ascending label order for ties."""
        labels = relabel_by_size(np.array([3, 3, 1, 1]), tie_break="none")

        assert labels.tolist() == [1, 1, 0, 0]


class TestSeeding:
    """Test deterministic random streams."""

    def test_same_key_same_stream(self):
        """Test that equal keys give equal draws."""
        a = make_rng(42, 1, 2).integers(0, 1000, 5)
        b = make_rng(42, 1, 2).integers(0, 1000, 5)

        assert np.array_equal(a, b)

    def test_different_key_different_stream(self):
        """Test that keys separate the streams."""
        a = make_rng(42, 1, 2).integers(0, 10**9, 5)
        b = make_rng(42, 1, 3).integers(0, 10**9, 5)

        assert not np.array_equal(a, b)

    def test_chunk_ranges_cover_everything(self):
        """Test that chunks tile the range without overlap."""
        ranges = list(chunk_ranges(10, 3))

        assert ranges[0][0] == 0
        assert ranges[-1][1] == 10
        assert all(a[1] == b[0] for a, b in zip(ranges, ranges[1:]))

    def test_chunk_ranges_empty(self):
        """Test that zero items give no chunks."""
        assert list(chunk_ranges(0, 4)) == []

    def test_resolve_workers(self):
        """Test the parallel_workers convention."""
        assert resolve_workers(0) == 0
        assert resolve_workers(3) == 3
        assert resolve_workers(-1) >= 1
