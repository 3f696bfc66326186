"""
Discriminative Feature Ranking

Turns a final clustering into contrasts between clusters and ranks the
features that separate each contrast best.

Contrast types:
- OneAgainstAll: each cluster vs. all other assigned samples
- Pairs: every pair of clusters
- Dendro: the two sides of every internal dendrogram node
"""

from dataclasses import dataclass
from itertools import combinations
from typing import Callable, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

from config.settings import TOP_FEATURES
from ..errors import ConfigurationError, InsufficientDataError
from ..hierarchy.dendrogram import Dendrogram
from ..hierarchy.stat_tests import feature_tests
from ..utils import UNASSIGNED, normalize_labels

logger = logging.getLogger(__name__)

# fn(group_a, group_b) -> (statistics, p-values, adjusted p-values)
FeatureTest = Callable[[np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray, np.ndarray]]


@dataclass(frozen=True)
class Contrast:
    """Clusters on each side of a comparison."""
    name: str
    group_a: Tuple[int, ...]
    group_b: Tuple[int, ...]


def build_contrasts(
    labels: np.ndarray,
    contrast_type: str = "OneAgainstAll",
    dendrogram: Optional[Dendrogram] = None,
) -> List[Contrast]:
    """
    Build the contrasts of a given type.

    Args:
        labels: Final cluster labels
        contrast_type: 'OneAgainstAll', 'Pairs' or 'Dendro'
        dendrogram: Required for 'Dendro'; leaves must be the clusters of labels

    Returns:
        List of Contrast
    """
    labels = normalize_labels(labels)
    clusters = sorted(set(labels.tolist()) - {UNASSIGNED})
    if len(clusters) < 2:
        raise InsufficientDataError(f"Need at least 2 clusters for contrasts, got {len(clusters)}")

    if contrast_type == "OneAgainstAll":
        return [
            Contrast(f"{c}-all", (c,), tuple(o for o in clusters if o != c))
            for c in clusters
        ]

    if contrast_type == "Pairs":
        return [Contrast(f"{a}-{b}", (a,), (b,)) for a, b in combinations(clusters, 2)]

    if contrast_type == "Dendro":
        if dendrogram is None:
            raise ConfigurationError("Dendro contrasts need a dendrogram")
        if set(dendrogram.cluster_ids) != set(clusters):
            raise ConfigurationError("Dendrogram leaves do not match the clusters being contrasted")
        return [
            Contrast(
                f"node{node.node_id}",
                dendrogram.node(node.left).clusters,
                dendrogram.node(node.right).clusters,
            )
            for node in dendrogram.internal_nodes
        ]

    raise ConfigurationError(f"Unknown contrast type: {contrast_type}")


def rank_features(
    labels: np.ndarray,
    data: np.ndarray,
    contrast_type: str = "OneAgainstAll",
    number: int = TOP_FEATURES,
    feature_names: Optional[Sequence[str]] = None,
    dendrogram: Optional[Dendrogram] = None,
    test: FeatureTest = feature_tests,
) -> pd.DataFrame:
    """
    Rank features per contrast.

    Args:
        labels: Final cluster labels (-1 samples are left out)
        data: Full-dimension sample matrix
        contrast_type: 'OneAgainstAll', 'Pairs' or 'Dendro'
        number: Features kept per contrast
        feature_names: Names of the data columns
        dendrogram: Needed for 'Dendro' contrasts
        test: Per-feature test returning (statistics, p-values, adjusted p-values)

    Returns:
        DataFrame with columns contrast, feature, statistic, p_value,
        adj_p_value, mean_a, mean_b; ordered by contrast, then adjusted
        p-value, then |statistic|
    """
    labels = normalize_labels(labels)
    data = np.asarray(data, dtype=float)
    if len(labels) != len(data):
        raise ConfigurationError(f"{len(labels)} labels for {len(data)} samples")
    if number < 1:
        raise ConfigurationError(f"number must be >= 1, got {number}")

    if feature_names is None:
        feature_names = [f"f{i}" for i in range(data.shape[1])]
    elif len(feature_names) != data.shape[1]:
        raise ConfigurationError(f"{len(feature_names)} feature names for {data.shape[1]} features")

    frames = []
    for contrast in build_contrasts(labels, contrast_type, dendrogram):
        group_a = data[np.isin(labels, contrast.group_a)]
        group_b = data[np.isin(labels, contrast.group_b)]
        statistic, pvalues, adjusted = test(group_a, group_b)

        frame = pd.DataFrame({
            'contrast': contrast.name,
            'feature': list(feature_names),
            'statistic': statistic,
            'p_value': pvalues,
            'adj_p_value': adjusted,
            'mean_a': group_a.mean(axis=0),
            'mean_b': group_b.mean(axis=0),
        })
        frame['_abs'] = frame['statistic'].abs()
        frame = frame.sort_values(['adj_p_value', '_abs'], ascending=[True, False], kind='stable')
        frames.append(frame.drop(columns='_abs').head(number))

    result = pd.concat(frames, ignore_index=True)
    logger.info(f"Ranked features for {len(frames)} {contrast_type} contrasts")
    return result
