"""
Consensus Clustering (combineMany)

Collapses many clusterings of the same samples into one. Two samples are
linked when they share a cluster in at least `proportion` of the runs in
which both were assigned; connected components of that graph are the
consensus clusters.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging

import networkx as nx
import numpy as np

from config.settings import (
    COMBINE_PROPORTION,
    COMBINE_MIN_SIZE,
    COMBINE_PROP_UNASSIGNED,
    TIE_BREAK,
)
from ..errors import ConfigurationError
from ..utils import UNASSIGNED, cluster_sizes, filter_min_size, relabel_by_size
from .cluster_many import ClusteringMatrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusResult:
    """Consensus labels plus what they were built from."""
    labels: np.ndarray
    proportions: np.ndarray
    run_names: Tuple[str, ...]
    # final id -> run name -> original labels of its members in that run
    contributing: Dict[int, Dict[str, List[int]]] = field(default_factory=dict)
    params: Dict[str, object] = field(default_factory=dict)

    @property
    def n_clusters(self) -> int:
        return len(set(self.labels.tolist()) - {UNASSIGNED})

    def get_cluster_sizes(self) -> Dict[int, int]:
        return cluster_sizes(self.labels)


def coclustering_proportions(labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pairwise agreement across runs.

    Args:
        labels: N x R label matrix, -1 = unassigned

    Returns:
        Tuple of (proportions, denominators); proportion is 0 where the pair
        was never assigned in the same run
    """
    labels = np.asarray(labels, dtype=int)
    n, n_runs = labels.shape
    assigned = (labels >= 0).astype(np.int64)
    denominator = assigned @ assigned.T
    shared = np.zeros((n, n), dtype=np.int64)
    for r in range(n_runs):
        column = labels[:, r]
        shared += (column[:, None] == column[None, :]) & (column[:, None] >= 0)

    with np.errstate(divide='ignore', invalid='ignore'):
        proportions = np.where(denominator > 0, shared / np.maximum(denominator, 1), 0.0)
    return proportions, denominator


def _first_run_label(labels: np.ndarray, members) -> float:
    """Smallest label the members got in the first run that assigned any of them."""
    rows = labels[sorted(members)]
    for r in range(rows.shape[1]):
        assigned = rows[rows[:, r] >= 0, r]
        if len(assigned):
            return float(assigned.min())
    return float('inf')


def combine_many(
    clusterings: Union[ClusteringMatrix, np.ndarray],
    proportion: float = COMBINE_PROPORTION,
    min_size: int = COMBINE_MIN_SIZE,
    prop_unassigned: float = COMBINE_PROP_UNASSIGNED,
    tie_break: str = TIE_BREAK,
    run_names: Optional[Sequence[str]] = None,
) -> ConsensusResult:
    """
    Combine many clusterings into a single consensus clustering.

    Args:
        clusterings: ClusteringMatrix or N x R label array
        proportion: Minimum fraction of shared runs for two samples to be linked
        min_size: Components smaller than this become -1
        prop_unassigned: Samples unassigned in more than this fraction of runs
            are left out of the consensus
        tie_break: "index" orders equal-size clusters by lowest sample index,
            "none" keeps the order of their labels in the first run
        run_names: Column names when clusterings is a plain array

    Returns:
        ConsensusResult with ids ordered by descending size
    """
    if isinstance(clusterings, ClusteringMatrix):
        labels = clusterings.labels
        run_names = clusterings.names
    else:
        labels = np.asarray(clusterings, dtype=int)
        if labels.ndim == 1:
            labels = labels[:, None]

    n, n_runs = labels.shape
    if n_runs == 0:
        raise ConfigurationError("Need at least one clustering to combine")
    if not 0 <= proportion <= 1:
        raise ConfigurationError(f"proportion must be in [0, 1], got {proportion}")
    if not 0 <= prop_unassigned <= 1:
        raise ConfigurationError(f"prop_unassigned must be in [0, 1], got {prop_unassigned}")
    if min_size < 1:
        raise ConfigurationError(f"min_size must be >= 1, got {min_size}")
    if tie_break not in ("index", "none"):
        raise ConfigurationError(f"Unknown tie_break policy: {tie_break}")
    run_names = tuple(run_names) if run_names is not None else tuple(f"run{r}" for r in range(n_runs))

    proportions, denominator = coclustering_proportions(labels)

    unassigned_frac = (labels < 0).mean(axis=1)
    eligible = (unassigned_frac <= prop_unassigned) & (labels >= 0).any(axis=1)

    graph = nx.Graph()
    graph.add_nodes_from(np.flatnonzero(eligible).tolist())
    linked = (proportions >= proportion) & (denominator > 0)
    linked &= eligible[:, None] & eligible[None, :]
    rows, cols = np.nonzero(np.triu(linked, k=1))
    graph.add_edges_from(zip(rows.tolist(), cols.tolist()))

    consensus = np.full(n, UNASSIGNED, dtype=int)
    components = list(nx.connected_components(graph))
    if tie_break == "index":
        components.sort(key=min)
    else:
        components.sort(key=lambda members: (_first_run_label(labels, members), min(members)))
    for component_id, members in enumerate(components):
        consensus[sorted(members)] = component_id

    consensus = filter_min_size(consensus, min_size)
    consensus = relabel_by_size(consensus, tie_break=tie_break)

    contributing = {}
    for cluster_id in sorted(set(consensus.tolist()) - {UNASSIGNED}):
        members = consensus == cluster_id
        contributing[cluster_id] = {
            name: sorted(set(labels[members, r].tolist()) - {UNASSIGNED})
            for r, name in enumerate(run_names)
        }

    n_clusters = len(contributing)
    logger.info(
        f"Consensus over {n_runs} runs: {n_clusters} clusters, "
        f"{int((consensus == UNASSIGNED).sum())} unassigned samples"
    )
    return ConsensusResult(
        labels=consensus,
        proportions=proportions,
        run_names=run_names,
        contributing=contributing,
        params={
            'proportion': proportion,
            'min_size': min_size,
            'prop_unassigned': prop_unassigned,
            'tie_break': tie_break,
        },
    )
