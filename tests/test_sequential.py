"""
Tests for sequential stable cluster extraction.
"""

import pytest
import numpy as np

from stableclust.clustering.registry import default_registry
from stableclust.clustering.sequential import (
    ExtractorState,
    SequentialClusterExtractor,
    overlap,
)
from stableclust.errors import ConfigurationError


@pytest.fixture
def registry():
    return default_registry()


def _direct_extractor(registry, **kwargs):
    params = dict(
        k0=2, k_steps=3, beta=0.6, similarity=0.7,
        remain_n=5, top_can=5, min_size=5, subsample=False, seed=11,
    )
    params.update(kwargs)
    return SequentialClusterExtractor(registry.get('kmeans'), **params)


class TestOverlap:
    """Test the near-identity measure."""

    def test_identical_sets(self):
        assert overlap(frozenset({1, 2}), frozenset({1, 2})) == 1.0

    def test_disjoint_sets(self):
        assert overlap(frozenset({1}), frozenset({2})) == 0.0

    def test_partial_overlap(self):
        assert overlap(frozenset({1, 2, 3}), frozenset({2, 3, 4})) == pytest.approx(0.5)


class TestSequentialClusterExtractor:
    """Test the extract-and-remove state machine."""

    def test_extracted_clusters_are_pure(self, registry, three_groups):
        """Test that every extracted cluster lies within one true group."""
        points, truth = three_groups
        result = _direct_extractor(registry).run(points)

        assert result.n_clusters >= 1
        for cluster_id in set(result.labels.tolist()) - {-1}:
            members = truth[result.labels == cluster_id]
            assert len(set(members.tolist())) == 1

    def test_clusters_numbered_in_discovery_order(self, registry, three_groups):
        """Test that round i produces cluster id i."""
        points, _ = three_groups
        result = _direct_extractor(registry).run(points)
        found = [r for r in result.rounds if r.state is ExtractorState.STABLE_FOUND]

        assert [r.cluster_id for r in found] == list(range(result.n_clusters))

    def test_always_ends_exhausted(self, registry, three_groups):
        """Test that the trace ends in the exhausted state with a reason."""
        points, _ = three_groups
        result = _direct_extractor(registry).run(points)

        assert result.rounds[-1].state is ExtractorState.EXHAUSTED
        assert result.rounds[-1].reason

    def test_idempotent_on_residual(self, registry, three_groups):
        """Test that re-running on the leftover samples finds nothing new."""
        points, _ = three_groups
        extractor = _direct_extractor(registry)
        first = extractor.run(points)
        residual = first.residual

        second = extractor.run(points[residual])

        assert second.n_clusters == 0
        assert second.rounds[-1].state is ExtractorState.EXHAUSTED

    def test_small_input_exhausts_immediately(self, registry, two_groups):
        """Test that fewer than remain_n samples stop before any scan."""
        result = _direct_extractor(registry, remain_n=20).run(two_groups)

        assert result.n_clusters == 0
        assert len(result.rounds) == 1
        assert "remain_n" in result.rounds[0].reason

    def test_max_rounds_stops(self, registry, three_groups):
        """Test that extraction stops after max_rounds clusters."""
        points, _ = three_groups
        result = _direct_extractor(registry, max_rounds=1).run(points)

        assert result.n_clusters <= 1
        assert result.rounds[-1].state is ExtractorState.EXHAUSTED

    def test_deterministic(self, registry, three_groups):
        """Test that a fixed seed gives a fixed result."""
        points, _ = three_groups
        a = _direct_extractor(registry).run(points)
        b = _direct_extractor(registry).run(points)

        assert np.array_equal(a.labels, b.labels)

    def test_subsample_mode(self, registry, three_groups):
        """Test extraction with co-clustering per k."""
        points, truth = three_groups
        extractor = SequentialClusterExtractor(
            registry.get('kmeans'),
            k0=2, k_steps=3, beta=0.6, remain_n=5, min_size=5,
            subsample=True, final_function=registry.get('hierarchical01'),
            alpha=0.3, n_subsample=8, fraction=0.7, seed=4,
        )
        result = extractor.run(points)

        for cluster_id in set(result.labels.tolist()) - {-1}:
            assert len(set(truth[result.labels == cluster_id].tolist())) == 1

    def test_distance_function_rejected(self, registry):
        """Test that scanning k needs a partition function."""
        with pytest.raises(ConfigurationError):
            SequentialClusterExtractor(registry.get('hierarchical01'))

    def test_subsample_needs_final_function(self, registry):
        """Test that subsample mode needs a cut function."""
        with pytest.raises(ConfigurationError):
            SequentialClusterExtractor(registry.get('kmeans'), subsample=True, final_function=None)

    def test_invalid_beta(self, registry):
        """Test fail-fast validation of beta."""
        with pytest.raises(ConfigurationError):
            _direct_extractor(registry, beta=0.0)

    def test_candidate_ks_bounded_by_residual(self, registry):
        """Test that k never reaches the residual size."""
        extractor = _direct_extractor(registry, k0=3, k_steps=4)

        assert extractor.candidate_ks(100) == [3, 4, 5, 6]
        assert extractor.candidate_ks(5) == [3, 4]
