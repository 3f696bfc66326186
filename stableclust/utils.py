"""
Common utility functions for StableClust.
"""

import logging
import multiprocessing
from typing import Dict, Generator, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

UNASSIGNED = -1


def resolve_workers(n_workers: int) -> int:
    """Translate the parallel_workers setting (0=sequential, -1=auto)."""
    if n_workers == -1:
        return max(1, multiprocessing.cpu_count() - 1)
    return max(0, int(n_workers))


def make_rng(seed: Optional[int], *key: int) -> np.random.Generator:
    """
    Random generator for one unit of work.

    The stream depends only on (seed, key), never on which worker or in
    which order the unit runs.
    """
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=tuple(int(k) for k in key)))


def derive_seed(rng: np.random.Generator) -> int:
    """Draw an int seed for libraries that take random_state."""
    return int(rng.integers(0, 2**31 - 1))


def chunk_ranges(n_items: int, n_chunks: int) -> Generator[Tuple[int, int], None, None]:
    """
    Yields contiguous (start, stop) ranges covering range(n_items).

    Args:
        n_items: Number of items to split
        n_chunks: Desired number of chunks (at most n_items are produced)

    Yields:
        Tuple of (start, stop)
    """
    n_chunks = max(1, min(n_chunks, n_items))
    bounds = np.linspace(0, n_items, n_chunks + 1).astype(int)
    for start, stop in zip(bounds[:-1], bounds[1:]):
        if stop > start:
            yield int(start), int(stop)


def normalize_labels(labels) -> np.ndarray:
    """Integer label array with every negative label mapped to -1."""
    labels = np.asarray(labels).astype(int).ravel()
    labels[labels < 0] = UNASSIGNED
    return labels


def cluster_sizes(labels: np.ndarray) -> Dict[int, int]:
    """Size of each cluster, excluding unassigned samples."""
    labels = np.asarray(labels)
    unique, counts = np.unique(labels[labels != UNASSIGNED], return_counts=True)
    return dict(zip(unique.tolist(), counts.tolist()))


def filter_min_size(labels: np.ndarray, min_size: int) -> np.ndarray:
    """Relabel members of clusters smaller than min_size as -1."""
    labels = normalize_labels(labels)
    for cluster_id, size in cluster_sizes(labels).items():
        if size < min_size:
            labels[labels == cluster_id] = UNASSIGNED
    return labels


def relabel_by_size(labels: np.ndarray, tie_break: str = "index") -> np.ndarray:
    """
    Renumber clusters 0..m-1 by descending size.

    With tie_break="index" equal sizes are ordered by the lowest sample
    index in each cluster; with "none" they keep ascending order of the
    incoming label values.
    """
    labels = normalize_labels(labels)
    ids = sorted(set(labels.tolist()) - {UNASSIGNED})
    sizes = cluster_sizes(labels)
    first_index = {c: int(np.flatnonzero(labels == c)[0]) for c in ids}

    if tie_break == "index":
        order = sorted(ids, key=lambda c: (-sizes[c], first_index[c]))
    else:
        order = sorted(ids, key=lambda c: -sizes[c])

    out = np.full_like(labels, UNASSIGNED)
    for new_id, old_id in enumerate(order):
        out[labels == old_id] = new_id
    return out
