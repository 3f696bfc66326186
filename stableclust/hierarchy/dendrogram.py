"""
Dendrogram over Clusters

Builds a hierarchy whose leaves are clusters (not samples): each cluster
is represented by its medoid (or mean) in a reduced space, and the
representatives are joined by agglomerative clustering.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import cdist

from config.settings import (
    DENDRO_REDUCE,
    DENDRO_DIMS,
    DENDRO_LINKAGE,
    DENDRO_REPRESENTATIVE,
)
from ..clustering.reduction import ReductionRegistry, default_reductions
from ..errors import ConfigurationError, InsufficientDataError
from ..utils import UNASSIGNED, normalize_labels

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DendrogramNode:
    """Leaf (one cluster) or internal join of two subtrees."""
    node_id: int
    left: Optional[int]
    right: Optional[int]
    height: float
    clusters: Tuple[int, ...]
    n_samples: int

    @property
    def is_leaf(self) -> bool:
        return self.left is None


@dataclass(frozen=True)
class Dendrogram:
    """
    Binary tree over cluster ids.

    Nodes 0..m-1 are the leaves (one per cluster id, ascending); internal
    nodes follow in merge order, so children always precede parents.
    """
    nodes: Tuple[DendrogramNode, ...]
    linkage_matrix: np.ndarray
    cluster_ids: Tuple[int, ...]
    params: Optional[Dict[str, object]] = None

    @property
    def n_leaves(self) -> int:
        return len(self.cluster_ids)

    @property
    def root(self) -> DendrogramNode:
        return self.nodes[-1]

    @property
    def leaves(self) -> List[DendrogramNode]:
        return [node for node in self.nodes if node.is_leaf]

    @property
    def internal_nodes(self) -> List[DendrogramNode]:
        """Internal nodes bottom-up (every child before its parent)."""
        return [node for node in self.nodes if not node.is_leaf]

    def node(self, node_id: int) -> DendrogramNode:
        return self.nodes[node_id]

    def leaf_for(self, cluster_id: int) -> DendrogramNode:
        return self.nodes[self.cluster_ids.index(cluster_id)]

    def leaf_order(self) -> Tuple[int, ...]:
        """Cluster ids in left-to-right plotting order."""
        if self.n_leaves == 1:
            return self.cluster_ids
        return tuple(self.cluster_ids[i] for i in leaves_list(self.linkage_matrix))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([
            {
                'node_id': node.node_id,
                'left': node.left,
                'right': node.right,
                'height': node.height,
                'clusters': node.clusters,
                'n_samples': node.n_samples,
            }
            for node in self.nodes
        ]).set_index('node_id')


def cluster_representatives(
    points: np.ndarray,
    labels: np.ndarray,
    cluster_ids,
    representative: str = DENDRO_REPRESENTATIVE,
) -> np.ndarray:
    """One row per cluster: its medoid or mean."""
    rows = []
    for cluster_id in cluster_ids:
        members = points[labels == cluster_id]
        if representative == "mean":
            rows.append(members.mean(axis=0))
        elif representative == "medoid":
            total = cdist(members, members).sum(axis=1)
            rows.append(members[int(np.argmin(total))])
        else:
            raise ConfigurationError(f"Unknown representative: {representative}")
    return np.vstack(rows)


def make_dendrogram(
    labels: np.ndarray,
    data: np.ndarray,
    reduce_method: str = DENDRO_REDUCE,
    dims: Optional[int] = DENDRO_DIMS,
    linkage_method: str = DENDRO_LINKAGE,
    representative: str = DENDRO_REPRESENTATIVE,
    reductions: Optional[ReductionRegistry] = None,
) -> Dendrogram:
    """
    Build a dendrogram over the non-(-1) clusters of a labeling.

    Args:
        labels: Cluster labels, -1 samples are ignored
        data: Sample matrix (n_samples, n_features)
        reduce_method: Reduction used for the distances
        dims: Dimensions kept by the reduction
        linkage_method: scipy linkage method ('average', 'complete', ...)
        representative: 'medoid' or 'mean'
        reductions: Reduction registry (defaults if None)

    Returns:
        Dendrogram whose leaf count equals the number of clusters
    """
    labels = normalize_labels(labels)
    data = np.asarray(data, dtype=float)
    if len(labels) != len(data):
        raise ConfigurationError(f"{len(labels)} labels for {len(data)} samples")

    cluster_ids = tuple(sorted(set(labels.tolist()) - {UNASSIGNED}))
    if not cluster_ids:
        raise InsufficientDataError("No assigned samples to build a dendrogram from")

    reductions = reductions or default_reductions()
    points = reductions.project(data, reduce_method, dims if reductions.uses_dims(reduce_method) else None)

    sizes = [int((labels == c).sum()) for c in cluster_ids]
    nodes = [
        DendrogramNode(i, None, None, 0.0, (cluster_id,), size)
        for i, (cluster_id, size) in enumerate(zip(cluster_ids, sizes))
    ]

    if len(cluster_ids) == 1:
        Z = np.empty((0, 4))
    else:
        reps = cluster_representatives(points, labels, cluster_ids, representative)
        Z = linkage(reps, method=linkage_method, metric='euclidean')
        for row, (a, b, height, _) in enumerate(Z):
            left, right = nodes[int(a)], nodes[int(b)]
            nodes.append(DendrogramNode(
                node_id=len(cluster_ids) + row,
                left=left.node_id,
                right=right.node_id,
                height=float(height),
                clusters=left.clusters + right.clusters,
                n_samples=left.n_samples + right.n_samples,
            ))

    logger.info(f"Dendrogram over {len(cluster_ids)} clusters ({reduce_method}, {linkage_method})")
    return Dendrogram(
        nodes=tuple(nodes),
        linkage_matrix=Z,
        cluster_ids=cluster_ids,
        params={
            'reduce_method': reduce_method,
            'dims': dims,
            'linkage': linkage_method,
            'representative': representative,
        },
    )
