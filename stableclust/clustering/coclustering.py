"""
Co-clustering over Random Subsamples

Repeatedly clusters random subsets of the samples and records, for every
pair, how often the two landed in the same cluster among the iterations in
which both were drawn. The ratio of the two counts is the co-clustering
proportion; 1 - proportion is the dissimilarity handed to a distance-based
clusterer for the final labels.

References
----------
Fred, A.L.N., & Jain, A.K. (2005). Combining multiple clusterings using
evidence accumulation. IEEE TPAMI, 27(6), 835-850.
"""

from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np
from scipy.spatial.distance import pdist, squareform

from config.settings import (
    N_SUBSAMPLE,
    SUBSAMPLE_FRACTION,
    RANDOM_SEED,
    MISSING_DISSIMILARITY,
)
from ..errors import (
    ConfigurationError,
    DegenerateCoClustering,
    FailureReport,
    InsufficientDataError,
    InsufficientSubsampleCoverage,
)
from ..utils import (
    chunk_ranges,
    derive_seed,
    filter_min_size,
    make_rng,
    resolve_workers,
)
from .registry import ClusterFunction, FunctionKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoClusteringMatrix:
    """
    Co-occurrence (numerator) and co-presence (denominator) counts.

    Pairs never drawn together have a zero denominator: they are missing,
    neither similar nor dissimilar, until a policy fills them in.
    """
    numerator: np.ndarray
    denominator: np.ndarray
    n_iterations: int

    @classmethod
    def empty(cls, n_samples: int) -> "CoClusteringMatrix":
        return cls(
            numerator=np.zeros((n_samples, n_samples), dtype=np.int64),
            denominator=np.zeros((n_samples, n_samples), dtype=np.int64),
            n_iterations=0,
        )

    def __add__(self, other: "CoClusteringMatrix") -> "CoClusteringMatrix":
        if self.numerator.shape != other.numerator.shape:
            raise ValueError("Cannot add co-clustering matrices of different size")
        return CoClusteringMatrix(
            numerator=self.numerator + other.numerator,
            denominator=self.denominator + other.denominator,
            n_iterations=self.n_iterations + other.n_iterations,
        )

    @property
    def n_samples(self) -> int:
        return self.numerator.shape[0]

    def _off_diagonal(self) -> np.ndarray:
        return ~np.eye(self.n_samples, dtype=bool)

    @property
    def n_missing_pairs(self) -> int:
        """Unordered pairs that were never subsampled together."""
        missing = (self.denominator == 0) & self._off_diagonal()
        return int(missing.sum() // 2)

    @property
    def is_degenerate(self) -> bool:
        if self.n_samples < 2:
            return self.n_iterations == 0
        return not (self.denominator[self._off_diagonal()] > 0).any()

    @property
    def coverage(self) -> float:
        """Fraction of unordered pairs observed at least once."""
        n_pairs = self.n_samples * (self.n_samples - 1) // 2
        if n_pairs == 0:
            return 1.0
        return 1.0 - self.n_missing_pairs / n_pairs

    def proportions(self) -> np.ndarray:
        """Co-clustering proportions; NaN where the pair was never drawn together."""
        with np.errstate(divide='ignore', invalid='ignore'):
            ratio = self.numerator / self.denominator
        ratio[self.denominator == 0] = np.nan
        np.fill_diagonal(ratio, 1.0)
        return ratio

    def dissimilarity(self, missing: Optional[float] = MISSING_DISSIMILARITY) -> np.ndarray:
        """
        1 - proportions, with missing pairs filled by policy.

        Args:
            missing: Value for never co-subsampled pairs. None raises
                InsufficientSubsampleCoverage if any such pair exists.

        Returns:
            Symmetric dissimilarity with zero diagonal
        """
        D = 1.0 - self.proportions()
        gaps = np.isnan(D)
        if gaps.any():
            if missing is None:
                raise InsufficientSubsampleCoverage(
                    f"{self.n_missing_pairs} pairs were never subsampled together"
                )
            D[gaps] = missing
        np.fill_diagonal(D, 0.0)
        return D


def _accumulate(
    data: np.ndarray,
    param,
    function: ClusterFunction,
    subsample_size: int,
    seed: Optional[int],
    stream: Tuple[int, ...],
    start: int,
    stop: int,
    precomputed: bool,
    extra: dict,
) -> CoClusteringMatrix:
    """Run iterations [start, stop) and return their partial counts."""
    n = len(data)
    partial = CoClusteringMatrix.empty(n)
    numerator, denominator = partial.numerator, partial.denominator

    for b in range(start, stop):
        rng = make_rng(seed, *stream, b)
        idx = np.sort(rng.choice(n, size=subsample_size, replace=False))
        if precomputed:
            subset = data[np.ix_(idx, idx)]
        else:
            subset = data[idx]

        if function.is_partition:
            labels = function(subset, param, random_state=derive_seed(rng), **extra)
        else:
            labels = function(subset, param, **extra)

        same = (labels[:, None] == labels[None, :]) & (labels[:, None] >= 0)
        block = np.ix_(idx, idx)
        denominator[block] += 1
        numerator[block] += same

    return CoClusteringMatrix(numerator, denominator, stop - start)


class CoClusteringBuilder:
    """
    Builds a CoClusteringMatrix from B subsample-and-cluster iterations.

    Iteration b always draws from make_rng(seed, *stream, b), so the result
    is identical for any number of workers.
    """

    def __init__(
        self,
        function: ClusterFunction,
        n_iterations: int = N_SUBSAMPLE,
        fraction: float = SUBSAMPLE_FRACTION,
        seed: Optional[int] = RANDOM_SEED,
        n_workers: int = 0,
        stream: Sequence[int] = (),
        **extra,
    ):
        """
        Initialize builder.

        Args:
            function: Clustering run on every subsample
            n_iterations: Number of subsample iterations (B)
            fraction: Fraction of samples drawn per iteration (p)
            seed: Base seed
            n_workers: 0 = sequential, -1 = auto
            stream: Extra key (e.g. combination index) separating seed streams
            **extra: Extra arguments for the clustering function
        """
        if not 0 < fraction <= 1:
            raise ConfigurationError(f"Subsample fraction must be in (0, 1], got {fraction}")
        if n_iterations < 0:
            raise ConfigurationError(f"Number of subsamples must be >= 0, got {n_iterations}")

        self.function = function
        self.n_iterations = int(n_iterations)
        self.fraction = fraction
        self.seed = seed
        self.n_workers = resolve_workers(n_workers)
        self.stream = tuple(stream)
        self.extra = extra

    def subsample_size(self, n_samples: int) -> int:
        # round() guards against 0.7 * 10 == 7.000000000000001
        return max(1, int(np.ceil(round(self.fraction * n_samples, 9))))

    def _check_param(self, n_samples: int, param):
        if self.function.is_partition:
            if param is None or int(param) != param or param <= 0:
                raise ConfigurationError(f"k must be a positive integer, got {param}")
            if self.subsample_size(n_samples) < param:
                raise InsufficientDataError(
                    f"Subsample of {self.subsample_size(n_samples)} samples "
                    f"cannot form k={param} clusters"
                )
        elif param is None:
            raise ConfigurationError(f"{self.function.name} needs a cutoff")

    def build(self, data: np.ndarray, param, precomputed: bool = False) -> CoClusteringMatrix:
        """
        Accumulate co-clustering counts.

        Args:
            data: Point matrix, or square dissimilarity if precomputed
            param: k for PARTITION functions, cutoff for DISTANCE functions
            precomputed: Whether data is a dissimilarity matrix

        Returns:
            CoClusteringMatrix

        Raises:
            DegenerateCoClustering: No pair was ever drawn together (including B=0)
        """
        data = np.asarray(data, dtype=float)
        n = len(data)

        if self.function.is_partition and precomputed:
            raise ConfigurationError(
                f"{self.function.name} clusters points and cannot use a precomputed dissimilarity"
            )
        if not self.function.is_partition and not precomputed:
            data = euclidean_dissimilarity(data)
            precomputed = True

        self._check_param(n, param)
        m = self.subsample_size(n)

        ranges = list(chunk_ranges(self.n_iterations, max(1, self.n_workers)))
        args = (data, param, self.function, m, self.seed, self.stream)

        if self.n_workers > 0 and len(ranges) > 1:
            with ProcessPoolExecutor(max_workers=self.n_workers) as executor:
                futures = [
                    executor.submit(_accumulate, *args, start, stop, precomputed, self.extra)
                    for start, stop in ranges
                ]
                partials = [f.result() for f in futures]
        else:
            partials = [
                _accumulate(*args, start, stop, precomputed, self.extra)
                for start, stop in ranges
            ]

        matrix = CoClusteringMatrix.empty(n)
        for partial in partials:
            matrix = matrix + partial

        logger.debug(
            f"Co-clustering: {matrix.n_iterations} iterations of {m}/{n} samples, "
            f"coverage {matrix.coverage:.3f}"
        )

        if matrix.n_iterations == 0 or matrix.is_degenerate:
            raise DegenerateCoClustering(
                f"No pair co-subsampled in {matrix.n_iterations} iterations "
                f"(subsample size {m} of {n})",
                matrix=matrix,
            )
        return matrix


def euclidean_dissimilarity(points: np.ndarray) -> np.ndarray:
    """Pairwise Euclidean distances scaled into [0, 1]."""
    points = np.asarray(points, dtype=float)
    if len(points) < 2:
        return np.zeros((len(points), len(points)))
    D = squareform(pdist(points))
    top = D.max()
    return D / top if top > 0 else D


@dataclass(frozen=True)
class SubsampleClusteringResult:
    """Final labels of a subsampled clustering and what produced them."""
    labels: np.ndarray
    coclustering: CoClusteringMatrix
    failures: Tuple[FailureReport, ...] = field(default_factory=tuple)


def cluster_subsampled(
    data: np.ndarray,
    param,
    cutoff: float,
    builder: CoClusteringBuilder,
    final_function: ClusterFunction,
    min_size: int = 1,
    missing_dissimilarity: Optional[float] = MISSING_DISSIMILARITY,
    precomputed: bool = False,
    **final_extra,
) -> SubsampleClusteringResult:
    """
    Co-cluster over subsamples, then cut 1 - co-clustering.

    Args:
        data: Point matrix (or dissimilarity if precomputed)
        param: k (or cutoff) for the per-subsample clustering
        cutoff: Cutoff (alpha) for the final distance clustering
        builder: Configured CoClusteringBuilder
        final_function: DISTANCE function applied to 1 - co-clustering
        min_size: Clusters smaller than this become -1
        missing_dissimilarity: Policy for never co-subsampled pairs
        precomputed: Whether data is a dissimilarity matrix
        **final_extra: Extra arguments for the final function

    Returns:
        SubsampleClusteringResult
    """
    if final_function.kind is not FunctionKind.DISTANCE:
        raise ConfigurationError(
            f"Final clustering needs a distance function, {final_function.name} is a partition function"
        )

    failures: List[FailureReport] = []
    try:
        matrix = builder.build(data, param, precomputed=precomputed)
        D = matrix.dissimilarity(missing_dissimilarity)
    except DegenerateCoClustering as exc:
        if exc.matrix is None or exc.matrix.n_iterations == 0:
            raise
        logger.warning(f"{exc}; treating every pair as maximally dissimilar")
        failures.append(FailureReport.from_exception('coclustering', f"k={param}", exc))
        matrix = exc.matrix
        D = matrix.dissimilarity(missing=1.0)

    labels = final_function(D, cutoff, **final_extra)
    labels = filter_min_size(labels, min_size)
    return SubsampleClusteringResult(labels=labels, coclustering=matrix, failures=tuple(failures))
