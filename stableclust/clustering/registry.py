"""
Cluster Function Registry

Puts partitioning algorithms behind one interface so the rest of the
pipeline never needs to know which concrete algorithm runs.

Two kinds are supported:
- PARTITION: fn(points, k, **extra) -> labels
- DISTANCE:  fn(dissimilarity, cutoff, **extra) -> labels
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, Optional
import logging

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from sklearn.cluster import KMeans, DBSCAN, AgglomerativeClustering

from config.settings import (
    KMEANS_MAX_ITER,
    KMEANS_N_INIT,
    HIERARCHICAL_LINKAGE,
    HIERARCHICAL01_LINKAGE,
    DBSCAN_MIN_SAMPLES,
)
from ..errors import ConfigurationError, UnknownClusterFunction
from ..utils import normalize_labels

logger = logging.getLogger(__name__)


class FunctionKind(str, Enum):
    PARTITION = "partition"
    DISTANCE = "distance"


@dataclass(frozen=True)
class ClusterFunction:
    """A registered clustering capability."""
    name: str
    kind: FunctionKind
    fn: Callable[..., np.ndarray]
    defaults: Dict[str, object] = field(default_factory=dict)

    @property
    def is_partition(self) -> bool:
        return self.kind is FunctionKind.PARTITION

    def __call__(self, data: np.ndarray, param, **extra) -> np.ndarray:
        """
        Run the function and normalize its output.

        Args:
            data: Point matrix (PARTITION) or square dissimilarity (DISTANCE)
            param: k for PARTITION, cutoff for DISTANCE
            **extra: Extra arguments, overriding registered defaults

        Returns:
            Integer labels, negatives mapped to -1
        """
        kwargs = {**self.defaults, **extra}
        if not self.is_partition:
            # random_state only makes sense for algorithms that draw
            kwargs.pop('random_state', None)
        labels = normalize_labels(self.fn(data, param, **kwargs))
        if len(labels) != len(data):
            raise ValueError(
                f"{self.name} returned {len(labels)} labels for {len(data)} samples"
            )
        return labels


class ClusterFunctionRegistry:
    """Name -> ClusterFunction lookup."""

    def __init__(self):
        self._functions: Dict[str, ClusterFunction] = {}

    def register(
        self,
        name: str,
        kind,
        fn: Callable[..., np.ndarray],
        overwrite: bool = False,
        **defaults,
    ) -> ClusterFunction:
        """
        Register a clustering function.

        Args:
            name: Lookup name
            kind: FunctionKind or its string value ('partition' / 'distance')
            fn: The callable
            overwrite: Replace an existing registration with the same name
            **defaults: Extra keyword arguments passed on every call

        Returns:
            The registered ClusterFunction
        """
        try:
            kind = FunctionKind(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown function kind: {kind!r}") from None

        if not callable(fn):
            raise ConfigurationError(f"Cluster function {name!r} is not callable")
        if name in self._functions and not overwrite:
            raise ConfigurationError(f"Cluster function {name!r} already registered")

        entry = ClusterFunction(name=name, kind=kind, fn=fn, defaults=dict(defaults))
        self._functions[name] = entry
        logger.debug(f"Registered {kind.value} function {name!r}")
        return entry

    def get(self, name: str) -> ClusterFunction:
        if name not in self._functions:
            raise UnknownClusterFunction(name, self._functions)
        return self._functions[name]

    def kind_of(self, name: str) -> FunctionKind:
        return self.get(name).kind

    def names(self, kind: Optional[FunctionKind] = None):
        return [
            name for name, entry in self._functions.items()
            if kind is None or entry.kind is FunctionKind(kind)
        ]

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(self._functions)

    def __len__(self) -> int:
        return len(self._functions)


# =============================================================================
# Default capabilities
# =============================================================================

def kmeans_partition(points: np.ndarray, k: int, random_state=None, **kwargs) -> np.ndarray:
    """K-Means on a point matrix."""
    model = KMeans(
        n_clusters=k,
        max_iter=kwargs.get('max_iter', KMEANS_MAX_ITER),
        n_init=kwargs.get('n_init', KMEANS_N_INIT),
        random_state=random_state,
    )
    return model.fit_predict(points)


def hierarchical_partition(points: np.ndarray, k: int, random_state=None, **kwargs) -> np.ndarray:
    """Agglomerative clustering cut at k clusters."""
    model = AgglomerativeClustering(
        n_clusters=k,
        linkage=kwargs.get('linkage', HIERARCHICAL_LINKAGE),
    )
    return model.fit_predict(points)


def hierarchical01_distance(dissimilarity: np.ndarray, alpha: float, **kwargs) -> np.ndarray:
    """
    Cut an agglomerative tree over a [0, 1] dissimilarity at height alpha.

    On 1 - co-clustering with average linkage, every returned cluster has
    average co-clustering of at least 1 - alpha between its members.
    """
    n = len(dissimilarity)
    if n == 1:
        return np.zeros(1, dtype=int)

    D = np.asarray(dissimilarity, dtype=float).copy()
    D = (D + D.T) / 2
    np.fill_diagonal(D, 0.0)
    Z = linkage(squareform(D, checks=False), method=kwargs.get('linkage', HIERARCHICAL01_LINKAGE))
    # fcluster numbers from 1
    return fcluster(Z, t=alpha, criterion='distance') - 1


def dbscan_distance(dissimilarity: np.ndarray, eps: float, **kwargs) -> np.ndarray:
    """
    DBSCAN on a precomputed dissimilarity.

    Labels of -1 indicate noise, which is also the unassigned sentinel.
    """
    if eps <= 0:
        raise ValueError(f"DBSCAN needs eps > 0, got {eps}")
    model = DBSCAN(
        eps=eps,
        min_samples=kwargs.get('min_samples', DBSCAN_MIN_SAMPLES),
        metric='precomputed',
    )
    return model.fit_predict(np.asarray(dissimilarity, dtype=float))


def default_registry() -> ClusterFunctionRegistry:
    """Registry with the sklearn/scipy backed defaults."""
    registry = ClusterFunctionRegistry()
    registry.register('kmeans', FunctionKind.PARTITION, kmeans_partition)
    registry.register('hierarchicalK', FunctionKind.PARTITION, hierarchical_partition)
    registry.register('hierarchical01', FunctionKind.DISTANCE, hierarchical01_distance)
    registry.register('dbscan', FunctionKind.DISTANCE, dbscan_distance)
    return registry
