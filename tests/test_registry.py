"""
Tests for the cluster function and reduction registries.
"""

import pytest
import numpy as np

from stableclust.clustering.registry import (
    ClusterFunctionRegistry,
    FunctionKind,
    default_registry,
    hierarchical01_distance,
    dbscan_distance,
)
from stableclust.clustering.reduction import ReductionRegistry, default_reductions
from stableclust.errors import ConfigurationError, UnknownClusterFunction


def _block_dissimilarity():
    D = np.ones((6, 6))
    D[:3, :3] = 0.05
    D[3:, 3:] = 0.05
    np.fill_diagonal(D, 0.0)
    return D


class TestClusterFunctionRegistry:
    """Test registration and lookup."""

    def test_default_names_and_kinds(self):
        """Test the default registry contents."""
        registry = default_registry()

        assert set(registry.names()) == {'kmeans', 'hierarchicalK', 'hierarchical01', 'dbscan'}
        assert registry.kind_of('kmeans') is FunctionKind.PARTITION
        assert registry.kind_of('hierarchical01') is FunctionKind.DISTANCE
        assert set(registry.names(FunctionKind.DISTANCE)) == {'hierarchical01', 'dbscan'}

    def test_unknown_name_raises(self):
        """Test that unknown names raise UnknownClusterFunction."""
        registry = default_registry()

        with pytest.raises(UnknownClusterFunction, match="Unknown cluster function"):
            registry.get('spectral')

    def test_unknown_name_is_configuration_and_key_error(self):
        """Test that the lookup error fits both error families."""
        registry = default_registry()

        with pytest.raises(ConfigurationError):
            registry.get('spectral')
        with pytest.raises(KeyError):
            registry.get('spectral')

    def test_register_string_kind(self):
        """Test registering with the string form of the kind."""
        registry = ClusterFunctionRegistry()
        registry.register('halves', 'partition', lambda x, k, **kw: np.arange(len(x)) % k)

        assert 'halves' in registry
        assert len(registry) == 1
        assert registry.get('halves')(np.zeros((4, 2)), 2).tolist() == [0, 1, 0, 1]

    def test_duplicate_registration_raises(self):
        """Test that registering the same name twice needs overwrite."""
        registry = default_registry()

        with pytest.raises(ConfigurationError, match="already registered"):
            registry.register('kmeans', FunctionKind.PARTITION, lambda x, k, **kw: x)

        registry.register('kmeans', FunctionKind.PARTITION, lambda x, k, **kw: np.zeros(len(x)), overwrite=True)
        assert registry.get('kmeans')(np.ones((3, 2)), 2).tolist() == [0, 0, 0]

    def test_bad_kind_raises(self):
        """Test that an unknown kind is rejected."""
        registry = ClusterFunctionRegistry()

        with pytest.raises(ConfigurationError, match="Unknown function kind"):
            registry.register('x', 'graph', lambda x, k: x)

    def test_non_callable_raises(self):
        """Test that a non-callable is rejected."""
        registry = ClusterFunctionRegistry()

        with pytest.raises(ConfigurationError, match="not callable"):
            registry.register('x', FunctionKind.PARTITION, 42)

    def test_wrong_label_count_raises(self):
        """Test that output of the wrong length is caught."""
        registry = ClusterFunctionRegistry()
        registry.register('short', FunctionKind.PARTITION, lambda x, k, **kw: np.zeros(len(x) - 1))

        with pytest.raises(ValueError, match="returned 3 labels"):
            registry.get('short')(np.zeros((4, 2)), 2)

    def test_negative_labels_normalized(self):
        """Test that any negative label becomes -1."""
        registry = ClusterFunctionRegistry()
        registry.register('noisy', FunctionKind.DISTANCE, lambda d, c: np.array([0, -5, 1]))

        assert registry.get('noisy')(np.zeros((3, 3)), 0.5).tolist() == [0, -1, 1]

    def test_registered_defaults_passed(self):
        """Test that registration defaults reach the function and can be overridden."""
        seen = {}

        def record(points, k, **kwargs):
            seen.update(kwargs)
            return np.zeros(len(points))

        registry = ClusterFunctionRegistry()
        registry.register('rec', FunctionKind.PARTITION, record, n_init=3)
        registry.get('rec')(np.zeros((2, 2)), 1, random_state=7)

        assert seen == {'n_init': 3, 'random_state': 7}


class TestDefaultFunctions:
    """Test the sklearn/scipy backed defaults."""

    def test_kmeans_separates_groups(self, two_groups):
        """Test k-means on two separated groups."""
        labels = default_registry().get('kmeans')(two_groups, 2, random_state=0)

        assert len(set(labels[:5])) == 1
        assert len(set(labels[5:])) == 1
        assert labels[0] != labels[5]

    def test_hierarchical01_cuts_blocks(self):
        """Test that the threshold cut recovers two blocks."""
        labels = hierarchical01_distance(_block_dissimilarity(), 0.3)

        assert labels[:3].tolist() == [labels[0]] * 3
        assert labels[3:].tolist() == [labels[3]] * 3
        assert labels[0] != labels[3]

    def test_hierarchical01_zero_cutoff_splits_all(self):
        """Test that alpha=0 keeps every non-identical sample apart."""
        labels = hierarchical01_distance(_block_dissimilarity(), 0.0)

        assert len(set(labels.tolist())) == 6

    def test_hierarchical01_single_sample(self):
        """Test the one-sample edge case."""
        assert hierarchical01_distance(np.zeros((1, 1)), 0.1).tolist() == [0]

    def test_distance_function_ignores_random_state(self):
        """Test that random_state is dropped for distance functions."""
        fn = default_registry().get('hierarchical01')
        labels = fn(_block_dissimilarity(), 0.3, random_state=3)

        assert len(set(labels.tolist())) == 2

    def test_dbscan_requires_positive_eps(self):
        """Test that DBSCAN rejects eps <= 0."""
        with pytest.raises(ValueError, match="eps > 0"):
            dbscan_distance(_block_dissimilarity(), 0.0)


class TestReductionRegistry:
    """Test projection lookup."""

    def test_none_returns_input(self, two_groups):
        """Test that 'none' passes points through."""
        reduced = default_reductions().project(two_groups, 'none')

        assert np.array_equal(reduced, two_groups)

    def test_pca_clips_dims(self, two_groups):
        """Test that PCA never asks for more components than available."""
        reduced = default_reductions().project(two_groups, 'pca', 50)

        assert reduced.shape == (10, 2)

    def test_most_variable_keeps_order(self):
        """Test that 'var' keeps the most variable features in column order."""
        points = np.column_stack([np.zeros(5), np.arange(5) * 3.0, np.arange(5) * 1.0])
        reduced = default_reductions().project(points, 'var', 2)

        assert np.array_equal(reduced, points[:, [1, 2]])

    def test_unknown_method_raises(self, two_groups):
        """Test that unknown methods raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Unknown reduction method"):
            default_reductions().project(two_groups, 'umap', 2)

    def test_missing_dims_raises(self, two_groups):
        """Test that dimension-based methods need dims."""
        with pytest.raises(ConfigurationError, match="needs dims"):
            default_reductions().project(two_groups, 'pca')

    def test_uses_dims(self):
        """Test which methods depend on dims."""
        reductions = default_reductions()

        assert reductions.uses_dims('pca') is True
        assert reductions.uses_dims('none') is False

    def test_custom_registration(self, two_groups):
        """Test registering a custom projector."""
        reductions = ReductionRegistry()
        reductions.register('first', lambda x, d: x[:, :d])

        assert reductions.project(two_groups, 'first', 1).shape == (10, 1)
        with pytest.raises(ConfigurationError, match="already registered"):
            reductions.register('first', lambda x, d: x)
