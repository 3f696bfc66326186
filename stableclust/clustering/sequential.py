"""
Sequential Stable Cluster Extraction

Finds one stable cluster at a time: cluster the residual samples for a
range of k, look for a cluster whose membership keeps reappearing across
those k, remove it, and repeat on what is left.

It favours many small, robust clusters over a few large
ones picked by a variance criterion.

References
----------
Tseng, G.C., & Wong, W.H. (2005). Tight clustering: a resampling-based
approach for identifying stable and tight patterns in data. Biometrics,
61(1), 10-16.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple
import logging

import numpy as np

from config.settings import (
    SEQ_K0,
    SEQ_K_STEPS,
    SEQ_BETA,
    SEQ_SIMILARITY,
    SEQ_REMAIN_N,
    SEQ_TOP_CAN,
    SEQ_MAX_ROUNDS,
    N_SUBSAMPLE,
    SUBSAMPLE_FRACTION,
    DEFAULT_ALPHA,
    RANDOM_SEED,
    MISSING_DISSIMILARITY,
)
from ..errors import (
    ConfigurationError,
    DegenerateCoClustering,
    FailureReport,
    InsufficientDataError,
)
from ..utils import UNASSIGNED, derive_seed, filter_min_size, make_rng
from .coclustering import CoClusteringBuilder, cluster_subsampled
from .registry import ClusterFunction, FunctionKind

logger = logging.getLogger(__name__)


class ExtractorState(str, Enum):
    SCANNING = "scanning"
    STABLE_FOUND = "stable_found"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class StableCandidate:
    """A cluster seen at one k, with how widely it recurs."""
    members: FrozenSet[int]
    k: int
    persistence: float

    @property
    def size(self) -> int:
        return len(self.members)

    def rank_key(self):
        return (-self.persistence, -self.size, min(self.members))


@dataclass(frozen=True)
class SequentialRound:
    """Trace of one pass through the state machine."""
    round: int
    state: ExtractorState
    residual_size: int
    ks: Tuple[int, ...] = ()
    cluster_id: Optional[int] = None
    size: int = 0
    persistence: float = 0.0
    n_stable: int = 0
    reason: str = ""


@dataclass(frozen=True)
class SequentialResult:
    labels: np.ndarray
    rounds: Tuple[SequentialRound, ...]
    failures: Tuple[FailureReport, ...] = field(default_factory=tuple)

    @property
    def n_clusters(self) -> int:
        return len(set(self.labels.tolist()) - {UNASSIGNED})

    @property
    def residual(self) -> np.ndarray:
        """Indices left unassigned when extraction stopped."""
        return np.flatnonzero(self.labels == UNASSIGNED)


def overlap(a: FrozenSet[int], b: FrozenSet[int]) -> float:
    """|A & B| / |A | B|."""
    union = len(a | b)
    return len(a & b) / union if union else 0.0


class SequentialClusterExtractor:
    """
    Extract-and-remove search for stable clusters.

    Randomness for a scan depends on k only, not on the round, so re-running
    on an exhausted residual set with the same parameters repeats the
    exhausting scan and finds nothing new.
    """

    def __init__(
        self,
        function: ClusterFunction,
        k0: int = SEQ_K0,
        k_steps: int = SEQ_K_STEPS,
        beta: float = SEQ_BETA,
        similarity: float = SEQ_SIMILARITY,
        remain_n: int = SEQ_REMAIN_N,
        top_can: int = SEQ_TOP_CAN,
        min_size: int = 1,
        max_rounds: int = SEQ_MAX_ROUNDS,
        subsample: bool = True,
        final_function: Optional[ClusterFunction] = None,
        alpha: float = DEFAULT_ALPHA,
        n_subsample: int = N_SUBSAMPLE,
        fraction: float = SUBSAMPLE_FRACTION,
        seed: Optional[int] = RANDOM_SEED,
        stream: Sequence[int] = (),
        n_workers: int = 0,
        missing_dissimilarity: Optional[float] = MISSING_DISSIMILARITY,
    ):
        """
        Initialize extractor.

        Args:
            function: PARTITION function clustering the residual (per subsample
                when subsample=True)
            k0: Smallest k tried per round
            k_steps: Number of k values tried per round (k0 .. k0 + k_steps - 1)
            beta: Fraction of tried k values a cluster must reappear in
            similarity: Overlap needed to call two clusters near-identical
            remain_n: Stop once fewer residual samples remain
            top_can: Largest clusters per k kept as candidates
            min_size: Smallest cluster considered
            max_rounds: Upper bound on extracted clusters
            subsample: Use co-clustering over subsamples + final_function cut
            final_function: DISTANCE function for the cut (subsample mode)
            alpha: Cutoff for final_function
            n_subsample: Subsample iterations per scan
            fraction: Subsample fraction
            seed: Base seed
            stream: Seed stream key (e.g. combination index)
            n_workers: Workers for the co-clustering iterations
            missing_dissimilarity: Policy for never co-subsampled pairs
        """
        if function.kind is not FunctionKind.PARTITION:
            raise ConfigurationError(
                f"Sequential extraction scans k and needs a partition function, got {function.name}"
            )
        if subsample and final_function is None:
            raise ConfigurationError("Subsample mode needs a final distance function")
        if k0 < 1 or k_steps < 1:
            raise ConfigurationError(f"Need k0 >= 1 and k_steps >= 1, got {k0}, {k_steps}")
        if not 0 < beta <= 1:
            raise ConfigurationError(f"beta must be in (0, 1], got {beta}")
        if not 0 < similarity <= 1:
            raise ConfigurationError(f"similarity must be in (0, 1], got {similarity}")
        if top_can < 1:
            raise ConfigurationError(f"top_can must be >= 1, got {top_can}")

        self.function = function
        self.k0 = int(k0)
        self.k_steps = int(k_steps)
        self.beta = beta
        self.similarity = similarity
        self.remain_n = remain_n
        self.top_can = top_can
        self.min_size = max(1, min_size)
        self.max_rounds = max_rounds
        self.subsample = subsample
        self.final_function = final_function
        self.alpha = alpha
        self.n_subsample = n_subsample
        self.fraction = fraction
        self.seed = seed
        self.stream = tuple(stream)
        self.n_workers = n_workers
        self.missing_dissimilarity = missing_dissimilarity

    def candidate_ks(self, residual_size: int) -> List[int]:
        """k values worth trying on a residual of this size."""
        return [
            k for k in range(self.k0, self.k0 + self.k_steps)
            if k < residual_size
        ]

    def _label(self, points: np.ndarray, k: int) -> Tuple[np.ndarray, List[FailureReport]]:
        if not self.subsample:
            rng = make_rng(self.seed, *self.stream, k)
            labels = self.function(points, k, random_state=derive_seed(rng))
            return filter_min_size(labels, self.min_size), []

        builder = CoClusteringBuilder(
            self.function,
            n_iterations=self.n_subsample,
            fraction=self.fraction,
            seed=self.seed,
            n_workers=self.n_workers,
            stream=self.stream + (k,),
        )
        result = cluster_subsampled(
            points, k, self.alpha, builder, self.final_function,
            min_size=self.min_size,
            missing_dissimilarity=self.missing_dissimilarity,
        )
        return result.labels, list(result.failures)

    def _candidates(self, labels: np.ndarray, residual: np.ndarray) -> List[FrozenSet[int]]:
        """The top_can largest clusters, as sets of original sample indices."""
        clusters = [
            frozenset(residual[labels == c].tolist())
            for c in np.unique(labels) if c != UNASSIGNED
        ]
        clusters = [c for c in clusters if len(c) >= self.min_size]
        clusters.sort(key=lambda c: (-len(c), min(c)))
        return clusters[:self.top_can]

    def _stable(self, per_k: Dict[int, List[FrozenSet[int]]]) -> List[StableCandidate]:
        """Candidates recurring in at least beta of the tried k values."""
        n_tried = len(per_k)
        found = {}
        for k, candidates in per_k.items():
            for members in candidates:
                if members in found:
                    continue
                hits = sum(
                    any(overlap(members, other) >= self.similarity for other in others)
                    for others in per_k.values()
                )
                persistence = hits / n_tried
                if persistence >= self.beta:
                    found[members] = StableCandidate(members, k, persistence)
        stable = sorted(found.values(), key=StableCandidate.rank_key)
        return stable[:self.top_can]

    def _scan(self, points: np.ndarray, residual: np.ndarray, ks: List[int], failures: List[FailureReport]):
        per_k: Dict[int, List[FrozenSet[int]]] = {}
        for k in ks:
            try:
                labels, notes = self._label(points[residual], k)
            except (InsufficientDataError, DegenerateCoClustering) as exc:
                logger.warning(f"Skipping k={k} on {len(residual)} residual samples: {exc}")
                failures.append(FailureReport.from_exception('sequential', f"k={k}", exc))
                continue
            failures.extend(notes)
            per_k[k] = self._candidates(labels, residual)
        return per_k

    def run(self, points: np.ndarray) -> SequentialResult:
        """
        Extract stable clusters until exhausted.

        Args:
            points: Sample matrix (n_samples, n_features)

        Returns:
            SequentialResult with labels in discovery order; leftover samples are -1
        """
        points = np.asarray(points, dtype=float)
        n = len(points)
        labels = np.full(n, UNASSIGNED, dtype=int)
        residual = np.arange(n)
        rounds: List[SequentialRound] = []
        failures: List[FailureReport] = []
        next_id = 0
        state = ExtractorState.SCANNING

        for round_idx in range(self.max_rounds):
            if len(residual) < self.remain_n:
                rounds.append(SequentialRound(
                    round_idx, ExtractorState.EXHAUSTED, len(residual),
                    reason=f"residual below remain_n={self.remain_n}",
                ))
                state = ExtractorState.EXHAUSTED
                break

            ks = self.candidate_ks(len(residual))
            per_k = self._scan(points, residual, ks, failures) if ks else {}
            stable = self._stable(per_k) if per_k else []

            if not stable:
                reason = "no valid k" if not per_k else "no stable cluster"
                rounds.append(SequentialRound(
                    round_idx, ExtractorState.EXHAUSTED, len(residual),
                    ks=tuple(per_k), reason=reason,
                ))
                state = ExtractorState.EXHAUSTED
                break

            best = stable[0]
            members = np.array(sorted(best.members))
            labels[members] = next_id
            residual = np.setdiff1d(residual, members)
            rounds.append(SequentialRound(
                round_idx, ExtractorState.STABLE_FOUND, len(residual) + len(members),
                ks=tuple(per_k), cluster_id=next_id, size=best.size,
                persistence=best.persistence, n_stable=len(stable),
            ))
            logger.info(
                f"Round {round_idx}: cluster {next_id} with {best.size} samples "
                f"(persistence {best.persistence:.2f}), {len(residual)} remaining"
            )
            next_id += 1
            state = ExtractorState.SCANNING

        if state is ExtractorState.SCANNING:
            rounds.append(SequentialRound(
                self.max_rounds, ExtractorState.EXHAUSTED, len(residual),
                reason=f"reached max_rounds={self.max_rounds}",
            ))

        logger.info(f"Sequential extraction found {next_id} clusters, {len(residual)} unassigned")
        return SequentialResult(labels=labels, rounds=tuple(rounds), failures=tuple(failures))
