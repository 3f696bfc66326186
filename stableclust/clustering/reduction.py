"""
Dimensionality Reduction Capability

project(matrix, method, dims) -> matrix, behind a registry so that any
reduction can be plugged in. Defaults wrap scikit-learn.
"""

from typing import Callable, Dict, Optional
import logging

import numpy as np
from sklearn.decomposition import PCA
from sklearn.manifold import TSNE

from config.settings import TSNE_PERPLEXITY, RANDOM_SEED
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

# fn(points, dims) -> reduced points
Projector = Callable[[np.ndarray, int], np.ndarray]


def _pca(points: np.ndarray, dims: int) -> np.ndarray:
    n_components = min(dims, points.shape[0], points.shape[1])
    reduced = PCA(n_components=n_components, svd_solver='full').fit_transform(points)
    logger.debug(f"Reduced dimensions: {points.shape[1]} -> {reduced.shape[1]}")
    return reduced


def _most_variable(points: np.ndarray, dims: int) -> np.ndarray:
    """Keep the dims features with highest variance, in original order."""
    dims = min(dims, points.shape[1])
    variances = points.var(axis=0)
    keep = np.sort(np.argsort(-variances, kind='stable')[:dims])
    return points[:, keep]


def _tsne(points: np.ndarray, dims: int) -> np.ndarray:
    perplexity = min(TSNE_PERPLEXITY, max(1.0, (points.shape[0] - 1) / 3))
    model = TSNE(
        n_components=dims,
        perplexity=perplexity,
        method='barnes_hut' if dims <= 3 else 'exact',
        random_state=RANDOM_SEED,
    )
    return model.fit_transform(points)


class ReductionRegistry:
    """Named dimensionality reductions."""

    # Methods whose output does not depend on dims
    DIMENSIONLESS = {'none'}

    def __init__(self):
        self._projectors: Dict[str, Optional[Projector]] = {'none': None}

    def register(self, name: str, fn: Projector, overwrite: bool = False):
        if name in self._projectors and not overwrite:
            raise ConfigurationError(f"Reduction {name!r} already registered")
        self._projectors[name] = fn

    def uses_dims(self, method: str) -> bool:
        self._check(method)
        return method not in self.DIMENSIONLESS

    def names(self):
        return list(self._projectors)

    def _check(self, method: str):
        if method not in self._projectors:
            raise ConfigurationError(
                f"Unknown reduction method: {method!r}. Available: {sorted(self._projectors)}"
            )

    def project(self, points: np.ndarray, method: str, dims: Optional[int] = None) -> np.ndarray:
        """
        Project points into a reduced representation.

        Args:
            points: Sample matrix (n_samples, n_features)
            method: Registered method name
            dims: Number of dimensions to keep (ignored for 'none')

        Returns:
            Reduced matrix with the same number of rows
        """
        self._check(method)
        points = np.asarray(points, dtype=float)
        fn = self._projectors[method]
        if fn is None:
            return points
        if dims is None or dims <= 0:
            raise ConfigurationError(f"Reduction {method!r} needs dims > 0, got {dims}")
        return np.asarray(fn(points, int(dims)), dtype=float)

    def __contains__(self, method: str) -> bool:
        return method in self._projectors


def default_reductions() -> ReductionRegistry:
    registry = ReductionRegistry()
    registry.register('pca', _pca)
    registry.register('var', _most_variable)
    registry.register('tsne', _tsne)
    return registry
