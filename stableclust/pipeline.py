"""
Clustering Pipeline and History

Each stage takes a ClusterHistory and returns a new one with its result
layered on top; nothing is mutated in place. The "primary" clustering is
the most recent authoritative labeling and can be read back without
re-running earlier stages.

Stages:
1. cluster_many: one clustering per parameter combination
2. combine_many: consensus of those clusterings
3. make_dendrogram: hierarchy over the consensus clusters
4. merge_clusters: statistical merging along the hierarchy
5. rank_features: discriminative features of the final clusters
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import pickle

import numpy as np
import pandas as pd

from config.settings import HISTORY_SCHEMA, OUTPUTS_DIR
from config.project_config import ProjectConfig
from .analysis.features import rank_features
from .clustering.cluster_many import ClusterMany, ClusteringMatrix
from .clustering.coclustering import CoClusteringMatrix
from .clustering.consensus import ConsensusResult, combine_many
from .clustering.reduction import ReductionRegistry, default_reductions
from .clustering.registry import ClusterFunctionRegistry, default_registry
from .errors import ConfigurationError, FailureReport
from .hierarchy.dendrogram import Dendrogram, make_dendrogram
from .hierarchy.merge import MergeResult, merge_clusters
from .hierarchy.stat_tests import MergeTestRegistry, default_merge_tests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    """One labeling produced by a stage."""
    name: str
    step: str
    labels: np.ndarray
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClusterHistory:
    """Versioned, append-only record of what the pipeline produced."""
    entries: Tuple[HistoryEntry, ...] = ()
    primary_index: Optional[int] = None
    clustering_matrix: Optional[ClusteringMatrix] = None
    coclustering: Dict[str, CoClusteringMatrix] = field(default_factory=dict)
    consensus: Optional[ConsensusResult] = None
    dendrogram: Optional[Dendrogram] = None
    dendrogram_source: Optional[str] = None
    # position of the entry the dendrogram was built on; names can repeat
    dendrogram_index: Optional[int] = None
    merge: Optional[MergeResult] = None
    failures: Tuple[FailureReport, ...] = ()
    version: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]

    @property
    def primary(self) -> HistoryEntry:
        if self.primary_index is None:
            raise LookupError("History has no clustering yet")
        return self.entries[self.primary_index]

    @property
    def primary_labels(self) -> np.ndarray:
        return self.primary.labels

    def index(self, name: str) -> int:
        """Position of the latest entry with this name."""
        for i in range(len(self.entries) - 1, -1, -1):
            if self.entries[i].name == name:
                return i
        raise KeyError(name)

    def get(self, name: str) -> HistoryEntry:
        """Latest entry with this name."""
        return self.entries[self.index(name)]

    def add(
        self,
        entries: Sequence[HistoryEntry],
        primary: int = -1,
        failures: Sequence[FailureReport] = (),
        **artifacts,
    ) -> "ClusterHistory":
        """
        New history with entries appended.

        Args:
            entries: Entries to append
            primary: Which of the new entries becomes primary (default last)
            failures: Failure reports from the stage
            **artifacts: Replaced fields (consensus, dendrogram, ...)
        """
        if not entries:
            raise ValueError("Nothing to add")
        frozen = []
        for entry in entries:
            labels = np.array(entry.labels, copy=True)
            labels.setflags(write=False)
            frozen.append(replace(entry, labels=labels))
        entries = tuple(frozen)
        primary_index = len(self.entries) + (primary % len(entries))
        return replace(
            self,
            entries=self.entries + entries,
            primary_index=primary_index,
            failures=self.failures + tuple(failures),
            version=self.version + 1,
            **artifacts,
        )

    def set_primary(self, name: str) -> "ClusterHistory":
        return replace(self, primary_index=self.index(name), version=self.version + 1)


def save_history(history: ClusterHistory, path: Optional[Union[str, Path]] = None) -> Path:
    """Persist a history as an opaque, schema-tagged payload (default: OUTPUTS_DIR/history.pkl)."""
    path = Path(path) if path is not None else OUTPUTS_DIR / "history.pkl"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        pickle.dump({'schema': HISTORY_SCHEMA, 'history': history}, f)
    logger.info(f"Saved history v{history.version} to {path}")
    return path


def load_history(path: Union[str, Path]) -> ClusterHistory:
    with open(path, 'rb') as f:
        payload = pickle.load(f)
    schema = payload.get('schema') if isinstance(payload, dict) else None
    if schema != HISTORY_SCHEMA:
        raise ConfigurationError(f"Unsupported history schema {schema!r}, expected {HISTORY_SCHEMA!r}")
    return payload['history']


class ClusteringPipeline:
    """
    Runs the ensemble clustering stages over one sample matrix.

    The sample matrix is read-only; every stage returns a new history.
    """

    def __init__(
        self,
        data: np.ndarray,
        config: Optional[ProjectConfig] = None,
        registry: Optional[ClusterFunctionRegistry] = None,
        reductions: Optional[ReductionRegistry] = None,
        tests: Optional[MergeTestRegistry] = None,
        feature_names: Optional[Sequence[str]] = None,
        verbose: bool = False,
    ):
        data = np.array(data, dtype=float)
        if data.ndim != 2:
            raise ConfigurationError(f"Sample matrix must be 2-D, got shape {data.shape}")
        data.setflags(write=False)

        self.data = data
        self.config = (config or ProjectConfig()).validate()
        self.registry = registry or default_registry()
        self.reductions = reductions or default_reductions()
        self.tests = tests or default_merge_tests()
        self.feature_names = list(feature_names) if feature_names is not None else None
        self.verbose = verbose

    @property
    def n_samples(self) -> int:
        return self.data.shape[0]

    def _engine(self, keep_coclustering: bool) -> ClusterMany:
        cfg = self.config
        return ClusterMany(
            registry=self.registry,
            reductions=self.reductions,
            subsample_function=cfg.subsample_function,
            final_function=cfg.final_function,
            n_subsample=cfg.n_subsample,
            fraction=cfg.subsample_fraction,
            seed=cfg.random_seed,
            n_workers=cfg.parallel_workers,
            missing_dissimilarity=cfg.missing_dissimilarity,
            k_steps=cfg.k_steps,
            similarity=cfg.similarity,
            remain_n=cfg.remain_n,
            top_can=cfg.top_can,
            keep_coclustering=keep_coclustering,
            verbose=self.verbose,
        )

    def cluster_many(
        self,
        history: Optional[ClusterHistory] = None,
        keep_coclustering: bool = True,
        **grid,
    ) -> ClusterHistory:
        """
        Run the parameter grid; grid keywords override the config lists.

        The first produced column becomes primary.
        """
        history = history or ClusterHistory()
        cfg = self.config
        settings = {
            'reduce_methods': cfg.reduce_methods,
            'dims': cfg.dims,
            'cluster_functions': cfg.cluster_functions,
            'ks': cfg.ks,
            'alphas': cfg.alphas,
            'betas': cfg.betas,
            'min_sizes': cfg.min_sizes,
            'subsample': cfg.subsample,
            'sequential': cfg.sequential,
        }
        unknown = set(grid) - set(settings)
        if unknown:
            raise ConfigurationError(f"Unknown grid parameters: {sorted(unknown)}")
        settings.update(grid)

        result = self._engine(keep_coclustering).run(self.data, **settings)
        matrix = result.matrix
        entries = [
            HistoryEntry(name, 'cluster_many', matrix.labels[:, i].copy(), params.to_dict())
            for i, (name, params) in enumerate(zip(matrix.names, matrix.params))
        ]
        return history.add(
            entries,
            primary=0,
            failures=result.skipped + result.failures,
            clustering_matrix=matrix,
            coclustering=dict(result.coclustering),
        )

    def combine_many(
        self,
        history: ClusterHistory,
        which: Optional[Sequence[str]] = None,
        proportion: Optional[float] = None,
        min_size: Optional[int] = None,
        name: str = "combineMany",
    ) -> ClusterHistory:
        """Consensus over the clusterMany columns (or the named subset)."""
        if history.clustering_matrix is None:
            raise ConfigurationError("combine_many needs a clustering matrix; run cluster_many first")
        matrix = history.clustering_matrix
        if which is not None:
            matrix = matrix.subset(list(which))

        cfg = self.config
        result = combine_many(
            matrix,
            proportion=cfg.combine_proportion if proportion is None else proportion,
            min_size=cfg.combine_min_size if min_size is None else min_size,
            prop_unassigned=cfg.prop_unassigned,
            tie_break=cfg.tie_break,
        )
        entry = HistoryEntry(name, 'combine_many', result.labels, dict(result.params))
        return history.add([entry], consensus=result)

    @staticmethod
    def _resolve(history: ClusterHistory, which: Optional[str]) -> int:
        if which:
            return history.index(which)
        if history.primary_index is None:
            raise LookupError("History has no clustering yet")
        return history.primary_index

    def _build_dendrogram(self, labels: np.ndarray) -> Dendrogram:
        cfg = self.config
        return make_dendrogram(
            labels,
            self.data,
            reduce_method=cfg.dendro_reduce,
            dims=cfg.dendro_dims,
            linkage_method=cfg.dendro_linkage,
            representative=cfg.dendro_representative,
            reductions=self.reductions,
        )

    def make_dendrogram(self, history: ClusterHistory, which: Optional[str] = None) -> ClusterHistory:
        """Dendrogram over the clusters of the primary (or named) labeling."""
        index = self._resolve(history, which)
        entry = history.entries[index]
        return replace(
            history,
            dendrogram=self._build_dendrogram(entry.labels),
            dendrogram_source=entry.name,
            dendrogram_index=index,
            version=history.version + 1,
        )

    def merge_clusters(
        self,
        history: ClusterHistory,
        method: Optional[str] = None,
        cutoff: Optional[float] = None,
        preview: bool = False,
        name: str = "mergeClusters",
    ) -> Union[ClusterHistory, MergeResult]:
        """
        Merge along the stored dendrogram.

        With preview=True the MergeResult is returned and nothing is stored,
        for trying out cutoffs; otherwise a new history is returned whose
        primary labeling is the merged one.
        """
        if history.dendrogram is None:
            raise ConfigurationError("merge_clusters needs a dendrogram; run make_dendrogram first")
        labels = history.entries[history.dendrogram_index].labels
        method = method or self.config.merge_method
        cutoff = self.config.merge_cutoff if cutoff is None else cutoff

        result = merge_clusters(
            labels, self.data, history.dendrogram,
            method=method, cutoff=cutoff, tests=self.tests,
        )
        if preview:
            return result

        entry = HistoryEntry(name, 'merge_clusters', result.labels, {
            'method': method,
            'cutoff': cutoff,
            'source': history.dendrogram_source,
        })
        return history.add([entry], failures=result.failures, merge=result)

    def rank_features(
        self,
        history: ClusterHistory,
        contrast_type: Optional[str] = None,
        number: Optional[int] = None,
        which: Optional[str] = None,
    ) -> pd.DataFrame:
        """Top features per contrast of the primary (or named) labeling."""
        index = self._resolve(history, which)
        entry = history.entries[index]
        contrast_type = contrast_type or self.config.contrast_type
        dendrogram = None
        if contrast_type == "Dendro":
            dendrogram = history.dendrogram
            if dendrogram is None or history.dendrogram_index != index:
                dendrogram = self._build_dendrogram(entry.labels)
        return rank_features(
            entry.labels,
            self.data,
            contrast_type=contrast_type,
            number=number or self.config.top_features,
            feature_names=self.feature_names,
            dendrogram=dendrogram,
        )

    def run(self) -> ClusterHistory:
        """All clustering stages with the configured parameters."""
        history = self.cluster_many()
        history = self.combine_many(history)
        history = self.make_dendrogram(history)
        history = self.merge_clusters(history)
        logger.info(f"Pipeline finished: {len(history)} clusterings, primary = {history.primary.name}")
        return history
