"""
Merging Clusters along a Dendrogram (mergeClusters)

Walks the cluster dendrogram bottom-up. At each internal node the samples
of its two sides are compared with a statistical test; nodes whose sides
cannot be told apart are merged. A node can only merge when both of its
children merged fully, so a split that was kept is never merged across
again higher up.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np

from config.settings import MERGE_METHOD, MERGE_CUTOFF
from ..errors import ConfigurationError, FailureReport, MergeTestFailure
from ..utils import UNASSIGNED, normalize_labels
from .dendrogram import Dendrogram
from .stat_tests import MergeTestRegistry, default_merge_tests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeDecision:
    """Outcome at one internal node."""
    node_id: int
    merge: bool
    left_clusters: Tuple[int, ...]
    right_clusters: Tuple[int, ...]
    value: Optional[float] = None
    kind: Optional[str] = None
    statistic: Optional[float] = None
    blocked: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class MergeResult:
    labels: np.ndarray
    mapping: Dict[int, int]
    decisions: Tuple[MergeDecision, ...]
    method: str
    cutoff: float
    failures: Tuple[FailureReport, ...] = field(default_factory=tuple)

    @property
    def n_clusters(self) -> int:
        return len(set(self.mapping.values()))

    def decision_for(self, node_id: int) -> MergeDecision:
        for decision in self.decisions:
            if decision.node_id == node_id:
                return decision
        raise KeyError(node_id)

    @property
    def merged_nodes(self) -> List[int]:
        return [d.node_id for d in self.decisions if d.merge]


def merge_clusters(
    labels: np.ndarray,
    data: np.ndarray,
    dendrogram: Dendrogram,
    method: str = MERGE_METHOD,
    cutoff: float = MERGE_CUTOFF,
    tests: Optional[MergeTestRegistry] = None,
) -> MergeResult:
    """
    Merge statistically indistinguishable neighbours of a cluster dendrogram.

    Args:
        labels: Cluster labels the dendrogram was built on
        data: Full-dimension sample matrix used for testing
        dendrogram: Dendrogram over the clusters of labels
        method: Registered merge test name
        cutoff: Significance cutoff handed to the test result
        tests: Merge test registry (defaults if None)

    Returns:
        MergeResult; every merged group takes its smallest cluster id,
        -1 samples stay -1
    """
    labels = normalize_labels(labels)
    data = np.asarray(data, dtype=float)
    if len(labels) != len(data):
        raise ConfigurationError(f"{len(labels)} labels for {len(data)} samples")
    present = set(labels.tolist()) - {UNASSIGNED}
    if present != set(dendrogram.cluster_ids):
        raise ConfigurationError(
            f"Dendrogram leaves {sorted(dendrogram.cluster_ids)} do not match clusters {sorted(present)}"
        )

    test = (tests or default_merge_tests()).get(method)

    coalesced = {leaf.node_id: True for leaf in dendrogram.leaves}
    decisions: List[MergeDecision] = []
    failures: List[FailureReport] = []

    for node in dendrogram.internal_nodes:
        left, right = dendrogram.node(node.left), dendrogram.node(node.right)

        # Blocked nodes are tested for their value but never merge
        blocked = not (coalesced[left.node_id] and coalesced[right.node_id])

        side_a = data[np.isin(labels, left.clusters)]
        side_b = data[np.isin(labels, right.clusters)]
        try:
            result = test(side_a, side_b)
        except Exception as exc:
            failure = MergeTestFailure(f"Test {method!r} failed at node {node.node_id}: {exc}")
            logger.warning(f"{failure}; keeping the split")
            failures.append(FailureReport.from_exception(
                'merge', f"node={node.node_id}", failure, cause=type(exc).__name__,
            ))
            coalesced[node.node_id] = False
            decisions.append(MergeDecision(
                node.node_id, False, left.clusters, right.clusters,
                blocked=blocked, error=str(exc),
            ))
            continue

        merge = not blocked and bool(result.should_merge(cutoff))
        coalesced[node.node_id] = merge
        decisions.append(MergeDecision(
            node_id=node.node_id,
            merge=merge,
            left_clusters=left.clusters,
            right_clusters=right.clusters,
            value=result.value,
            kind=result.kind.value if hasattr(result.kind, 'value') else str(result.kind),
            statistic=result.statistic,
            blocked=blocked,
        ))
        logger.debug(
            f"Node {node.node_id} {left.clusters} vs {right.clusters}: "
            f"{result.kind}={result.value:.4g} -> "
            f"{'blocked' if blocked else 'merge' if merge else 'keep'}"
        )

    mapping = {cluster_id: cluster_id for cluster_id in dendrogram.cluster_ids}
    for node in dendrogram.internal_nodes:
        if coalesced[node.node_id]:
            target = min(node.clusters)
            for cluster_id in node.clusters:
                mapping[cluster_id] = target

    merged = labels.copy()
    for cluster_id, target in mapping.items():
        merged[labels == cluster_id] = target

    logger.info(
        f"Merged {len(mapping)} clusters into {len(set(mapping.values()))} "
        f"({method}, cutoff={cutoff})"
    )
    return MergeResult(
        labels=merged,
        mapping=mapping,
        decisions=tuple(decisions),
        method=method,
        cutoff=cutoff,
        failures=tuple(failures),
    )
