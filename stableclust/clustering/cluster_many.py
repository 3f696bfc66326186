"""
Cluster Many

Runs one clustering per combination of a parameter grid
(reduction x dims x cluster function x k x alpha x beta x min size x
subsample x sequential) and collects the labels as the columns of a
clustering matrix, in grid order.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field, asdict
from itertools import product
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from config.settings import (
    N_SUBSAMPLE,
    SUBSAMPLE_FRACTION,
    SUBSAMPLE_FUNCTION,
    FINAL_DISTANCE_FUNCTION,
    RANDOM_SEED,
    MISSING_DISSIMILARITY,
    SEQ_K_STEPS,
    SEQ_SIMILARITY,
    SEQ_REMAIN_N,
    SEQ_TOP_CAN,
    MIN_CLUSTER_SIZE,
    DEFAULT_ALPHA,
    SEQ_BETA,
)
from ..errors import (
    ConfigurationError,
    DegenerateCoClustering,
    FailureReport,
    InsufficientDataError,
    InsufficientSubsampleCoverage,
)
from ..utils import UNASSIGNED, derive_seed, filter_min_size, make_rng, resolve_workers
from .coclustering import (
    CoClusteringBuilder,
    CoClusteringMatrix,
    cluster_subsampled,
    euclidean_dissimilarity,
)
from .reduction import ReductionRegistry, default_reductions
from .registry import ClusterFunctionRegistry, FunctionKind, default_registry
from .sequential import SequentialClusterExtractor

logger = logging.getLogger(__name__)

# Failures that cost one column, not the whole run
COMBINATION_ERRORS = (InsufficientDataError, DegenerateCoClustering, InsufficientSubsampleCoverage)


@dataclass(frozen=True)
class ClusterParams:
    """One point of the parameter grid; irrelevant parameters are None."""
    reduce: str
    dims: Optional[int]
    function: str
    k: Optional[int]
    alpha: Optional[float]
    beta: Optional[float]
    min_size: int
    subsample: bool
    sequential: bool

    @property
    def name(self) -> str:
        parts = [f"{self.reduce}={self.dims}" if self.dims is not None else self.reduce, self.function]
        if self.k is not None:
            parts.append(f"k={self.k}")
        if self.alpha is not None:
            parts.append(f"alpha={self.alpha:g}")
        if self.beta is not None:
            parts.append(f"beta={self.beta:g}")
        parts.append(f"minSize={self.min_size}")
        if self.subsample:
            parts.append("subsample")
        if self.sequential:
            parts.append("sequential")
        return ",".join(parts)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ClusteringMatrix:
    """N x R labels, one column per parameter combination."""
    labels: np.ndarray
    params: Tuple[ClusterParams, ...]

    def __post_init__(self):
        if self.labels.ndim != 2 or self.labels.shape[1] != len(self.params):
            raise ValueError(
                f"Label matrix of shape {self.labels.shape} does not match {len(self.params)} columns"
            )

    @property
    def n_samples(self) -> int:
        return self.labels.shape[0]

    @property
    def n_runs(self) -> int:
        return self.labels.shape[1]

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.params]

    def column(self, key: Union[int, str]) -> np.ndarray:
        if isinstance(key, str):
            key = self.names.index(key)
        return self.labels[:, key]

    def subset(self, keys: Sequence[Union[int, str]]) -> "ClusteringMatrix":
        idx = [self.names.index(k) if isinstance(k, str) else k for k in keys]
        return ClusteringMatrix(labels=self.labels[:, idx], params=tuple(self.params[i] for i in idx))

    def parameter_table(self) -> pd.DataFrame:
        """One row of generating parameters per column."""
        table = pd.DataFrame([p.to_dict() for p in self.params])
        table.index = self.names
        return table

    def to_frame(self, sample_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
        return pd.DataFrame(self.labels, index=sample_names, columns=self.names)


@dataclass(frozen=True)
class ClusterManyResult:
    matrix: ClusteringMatrix
    skipped: Tuple[FailureReport, ...] = field(default_factory=tuple)
    failures: Tuple[FailureReport, ...] = field(default_factory=tuple)
    coclustering: Dict[str, CoClusteringMatrix] = field(default_factory=dict)


def _as_list(values) -> list:
    if values is None:
        return [None]
    if isinstance(values, (str, bytes)) or not hasattr(values, '__iter__'):
        return [values]
    values = list(values)
    return values or [None]


class ClusterMany:
    """
    Grid driver over the co-clustering and sequential engines.

    Functions and reductions must be picklable (module-level callables)
    when n_workers > 0.
    """

    def __init__(
        self,
        registry: Optional[ClusterFunctionRegistry] = None,
        reductions: Optional[ReductionRegistry] = None,
        subsample_function: str = SUBSAMPLE_FUNCTION,
        final_function: str = FINAL_DISTANCE_FUNCTION,
        n_subsample: int = N_SUBSAMPLE,
        fraction: float = SUBSAMPLE_FRACTION,
        seed: Optional[int] = RANDOM_SEED,
        n_workers: int = 0,
        missing_dissimilarity: Optional[float] = MISSING_DISSIMILARITY,
        k_steps: int = SEQ_K_STEPS,
        similarity: float = SEQ_SIMILARITY,
        remain_n: int = SEQ_REMAIN_N,
        top_can: int = SEQ_TOP_CAN,
        keep_coclustering: bool = False,
        verbose: bool = False,
    ):
        self.registry = registry or default_registry()
        self.reductions = reductions or default_reductions()
        self.subsample_function = subsample_function
        self.final_function = final_function
        self.n_subsample = n_subsample
        self.fraction = fraction
        self.seed = seed
        self.n_workers = resolve_workers(n_workers)
        self.missing_dissimilarity = missing_dissimilarity
        self.k_steps = k_steps
        self.similarity = similarity
        self.remain_n = remain_n
        self.top_can = top_can
        self.keep_coclustering = keep_coclustering
        self.verbose = verbose

    # ------------------------------------------------------------------
    # Grid
    # ------------------------------------------------------------------

    def _validate(self, reduce_methods, functions, ks, alphas, betas):
        if not 0 < self.fraction <= 1:
            raise ConfigurationError(f"Subsample fraction must be in (0, 1], got {self.fraction}")
        for method in reduce_methods:
            if method not in self.reductions:
                raise ConfigurationError(f"Unknown reduction method: {method!r}")
        for name in functions:
            self.registry.get(name)
        if self.registry.kind_of(self.subsample_function) is not FunctionKind.PARTITION:
            raise ConfigurationError(f"Subsample function {self.subsample_function} must be a partition function")
        if self.registry.kind_of(self.final_function) is not FunctionKind.DISTANCE:
            raise ConfigurationError(f"Final function {self.final_function} must be a distance function")
        if any(k is not None and k <= 0 for k in ks):
            raise ConfigurationError(f"k must be positive, got {ks}")
        if any(a is not None and not 0 <= a <= 1 for a in alphas):
            raise ConfigurationError(f"alpha must be in [0, 1], got {alphas}")
        if any(b is not None and not 0 < b <= 1 for b in betas):
            raise ConfigurationError(f"beta must be in (0, 1], got {betas}")

    def _normalize(self, reduce, dims, function, k, alpha, beta, min_size, subsample, sequential):
        """Blank out parameters the combination ignores; return (params, reason to skip)."""
        if not self.reductions.uses_dims(reduce):
            dims = None
        elif dims is None:
            return None, f"{reduce} needs dims"

        is_partition = self.registry.kind_of(function) is FunctionKind.PARTITION
        if not sequential:
            beta = None
        if is_partition and not subsample:
            alpha = None
        if not is_partition and not subsample:
            if sequential:
                return None, f"{function} is a distance function; sequential needs subsampling to scan k"
            k = None

        if (is_partition or subsample) and k is None:
            return None, f"{function} needs k"
        if (subsample or not is_partition) and alpha is None:
            return None, f"{function} needs alpha"
        if sequential and beta is None:
            return None, "sequential needs beta"

        return ClusterParams(
            reduce=reduce,
            dims=None if dims is None else int(dims),
            function=function,
            k=None if k is None else int(k),
            alpha=None if alpha is None else float(alpha),
            beta=None if beta is None else float(beta),
            min_size=max(1, int(min_size or 1)),
            subsample=bool(subsample),
            sequential=bool(sequential),
        ), None

    def expand_grid(
        self,
        reduce_methods=("none",),
        dims=None,
        cluster_functions=(FINAL_DISTANCE_FUNCTION,),
        ks=None,
        alphas=(DEFAULT_ALPHA,),
        betas=(SEQ_BETA,),
        min_sizes=(MIN_CLUSTER_SIZE,),
        subsample=(True,),
        sequential=(False,),
    ) -> Tuple[List[ClusterParams], List[FailureReport]]:
        """
        Enumerate the grid in deterministic order.

        Returns:
            Tuple of (unique combinations, skipped-combination reports)
        """
        grid = [
            _as_list(reduce_methods), _as_list(dims), _as_list(cluster_functions),
            _as_list(ks), _as_list(alphas), _as_list(betas), _as_list(min_sizes),
            _as_list(subsample), _as_list(sequential),
        ]
        self._validate(grid[0], grid[2], grid[3], grid[4], grid[5])

        combos: List[ClusterParams] = []
        seen = set()
        skipped: List[FailureReport] = []
        for values in product(*grid):
            params, reason = self._normalize(*values)
            if params is None:
                key = ",".join(str(v) for v in values)
                if key not in seen:
                    seen.add(key)
                    skipped.append(FailureReport('cluster_many', key, 'Incompatible', reason))
                continue
            if params in seen:
                continue
            seen.add(params)
            combos.append(params)

        logger.info(f"Parameter grid: {len(combos)} combinations, {len(skipped)} skipped")
        return combos, skipped

    # ------------------------------------------------------------------
    # Single combination
    # ------------------------------------------------------------------

    def cluster_one(self, points: np.ndarray, params: ClusterParams, index: int = 0):
        """
        Cluster already-projected points with one parameter combination.

        Returns:
            Tuple of (labels, failure reports, co-clustering matrix or None)
        """
        function = self.registry.get(params.function)
        is_partition = function.is_partition

        if params.sequential:
            scan_function = function if is_partition else self.registry.get(self.subsample_function)
            final = self.registry.get(self.final_function) if is_partition else function
            extractor = SequentialClusterExtractor(
                scan_function,
                k0=params.k,
                k_steps=self.k_steps,
                beta=params.beta,
                similarity=self.similarity,
                remain_n=self.remain_n,
                top_can=self.top_can,
                min_size=params.min_size,
                subsample=params.subsample,
                final_function=final,
                alpha=params.alpha if params.alpha is not None else DEFAULT_ALPHA,
                n_subsample=self.n_subsample,
                fraction=self.fraction,
                seed=self.seed,
                stream=(index,),
                missing_dissimilarity=self.missing_dissimilarity,
            )
            result = extractor.run(points)
            return result.labels, list(result.failures), None

        if params.subsample:
            sub_function = function if is_partition else self.registry.get(self.subsample_function)
            final = self.registry.get(self.final_function) if is_partition else function
            builder = CoClusteringBuilder(
                sub_function,
                n_iterations=self.n_subsample,
                fraction=self.fraction,
                seed=self.seed,
                stream=(index,),
            )
            result = cluster_subsampled(
                points, params.k, params.alpha, builder, final,
                min_size=params.min_size,
                missing_dissimilarity=self.missing_dissimilarity,
            )
            return result.labels, list(result.failures), result.coclustering

        if is_partition:
            if params.k > len(points):
                raise InsufficientDataError(f"Cannot form k={params.k} clusters from {len(points)} samples")
            rng = make_rng(self.seed, index)
            labels = function(points, params.k, random_state=derive_seed(rng))
        else:
            labels = function(euclidean_dissimilarity(points), params.alpha)
        return filter_min_size(labels, params.min_size), [], None

    # ------------------------------------------------------------------
    # Grid run
    # ------------------------------------------------------------------

    def run(self, points: np.ndarray, **grid) -> ClusterManyResult:
        """
        Run every combination of the grid.

        Args:
            points: Sample matrix (n_samples, n_features)
            **grid: Lists for reduce_methods, dims, cluster_functions, ks,
                alphas, betas, min_sizes, subsample, sequential

        Returns:
            ClusterManyResult; columns follow grid order whatever the
            completion order of the workers
        """
        points = np.asarray(points, dtype=float)
        combos, skipped = self.expand_grid(**grid)
        if not combos:
            raise ConfigurationError("Parameter grid produced no runnable combination")

        projections, projection_errors = {}, {}
        for params in combos:
            key = (params.reduce, params.dims)
            if key in projections or key in projection_errors:
                continue
            try:
                projections[key] = self.reductions.project(points, params.reduce, params.dims)
            except Exception as exc:
                logger.warning(f"Reduction {params.reduce} (dims={params.dims}) failed: {exc}")
                projection_errors[key] = exc

        outcomes = {}
        for i, p in enumerate(combos):
            if (p.reduce, p.dims) in projection_errors:
                empty = np.full(len(points), UNASSIGNED, dtype=int)
                outcomes[i] = (empty, [], None, projection_errors[(p.reduce, p.dims)])
        pending = [(i, p) for i, p in enumerate(combos) if i not in outcomes]

        if self.n_workers > 0 and len(pending) > 1:
            with ProcessPoolExecutor(max_workers=self.n_workers) as executor:
                futures = {
                    executor.submit(_run_combination, self, projections[(p.reduce, p.dims)], p, i): i
                    for i, p in pending
                }
                for future in tqdm(as_completed(futures), total=len(futures),
                                   desc="Clustering", unit="run", disable=not self.verbose):
                    outcomes[futures[future]] = future.result()
        else:
            for i, p in tqdm(pending, desc="Clustering", unit="run", disable=not self.verbose):
                outcomes[i] = _run_combination(self, projections[(p.reduce, p.dims)], p, i)

        columns, kept, failures, errors = [], [], [], []
        coclustering = {}
        for i, params in enumerate(combos):
            labels, notes, matrix, error = outcomes[i]
            failures.extend(notes)
            if error is not None:
                errors.append(error)
                logger.warning(f"Combination {params.name} failed: {error}")
                failures.append(FailureReport.from_exception('cluster_many', params.name, error))
                continue
            columns.append(labels)
            kept.append(params)
            if self.keep_coclustering and matrix is not None:
                coclustering[params.name] = matrix

        if not kept:
            if len(errors) == 1:
                raise errors[0]
            raise InsufficientDataError(f"All {len(combos)} combinations failed")

        labels = np.column_stack(columns).astype(int)
        logger.info(f"Produced {len(kept)} clusterings ({len(errors)} failed)")
        return ClusterManyResult(
            matrix=ClusteringMatrix(labels=labels, params=tuple(kept)),
            skipped=tuple(skipped),
            failures=tuple(failures),
            coclustering=coclustering,
        )


def _run_combination(engine: ClusterMany, points: np.ndarray, params: ClusterParams, index: int):
    """Worker entry point; per-combination errors come back as values."""
    try:
        labels, notes, matrix = engine.cluster_one(points, params, index)
    except COMBINATION_ERRORS as exc:
        empty = np.full(len(points), UNASSIGNED, dtype=int)
        return empty, [], None, exc
    return labels, notes, matrix, None
