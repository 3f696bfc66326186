"""
Statistical Tests for Merge Decisions

A merge test compares the samples on two sides of a dendrogram node and
returns either a p-value (small = different) or a proportion of
differentially expressed features (large = different). Defaults use
per-feature Welch t-tests with Benjamini-Hochberg adjustment.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple
import logging

import numpy as np
from scipy import stats

from config.settings import MERGE_DE_LEVEL
from ..errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)


class ResultKind(str, Enum):
    PVALUE = "pvalue"
    PROPORTION = "proportion"


@dataclass(frozen=True)
class MergeTestResult:
    value: float
    kind: ResultKind
    statistic: Optional[float] = None

    def should_merge(self, cutoff: float) -> bool:
        """True when there is not enough evidence that the sides differ."""
        if self.kind is ResultKind.PVALUE:
            return self.value >= cutoff
        return self.value < cutoff


# fn(group_a, group_b) -> MergeTestResult; rows are samples
MergeTest = Callable[[np.ndarray, np.ndarray], MergeTestResult]


def feature_tests(group_a: np.ndarray, group_b: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Welch t-test per feature.

    Features with no variance on either side give no p-value and are
    counted as not different (p = 1).

    Returns:
        Tuple of (statistics, p-values, BH-adjusted p-values)
    """
    group_a = np.atleast_2d(np.asarray(group_a, dtype=float))
    group_b = np.atleast_2d(np.asarray(group_b, dtype=float))
    if len(group_a) < 2 or len(group_b) < 2:
        raise InsufficientDataError(
            f"Need at least 2 samples per group, got {len(group_a)} and {len(group_b)}"
        )

    with np.errstate(divide='ignore', invalid='ignore'):
        statistic, pvalues = stats.ttest_ind(group_a, group_b, axis=0, equal_var=False)
    statistic = np.atleast_1d(statistic)
    pvalues = np.atleast_1d(pvalues)

    untestable = np.isnan(pvalues)
    if untestable.all():
        raise ValueError("No feature varies within the compared groups")
    pvalues = np.where(untestable, 1.0, pvalues)
    statistic = np.where(untestable, 0.0, statistic)
    adjusted = stats.false_discovery_control(pvalues, method='bh')
    return statistic, pvalues, adjusted


def min_adjusted_pvalue(group_a: np.ndarray, group_b: np.ndarray) -> MergeTestResult:
    """Smallest BH-adjusted feature p-value."""
    statistic, _, adjusted = feature_tests(group_a, group_b)
    best = int(np.argmin(adjusted))
    return MergeTestResult(float(adjusted[best]), ResultKind.PVALUE, float(statistic[best]))


def proportion_de(group_a: np.ndarray, group_b: np.ndarray, level: float = MERGE_DE_LEVEL) -> MergeTestResult:
    """Fraction of features with BH-adjusted p-value below level."""
    statistic, _, adjusted = feature_tests(group_a, group_b)
    significant = adjusted < level
    return MergeTestResult(
        float(significant.mean()),
        ResultKind.PROPORTION,
        float(np.abs(statistic).mean()),
    )


class MergeTestRegistry:
    """Named merge tests."""

    def __init__(self):
        self._tests: Dict[str, MergeTest] = {}

    def register(self, name: str, fn: MergeTest, overwrite: bool = False):
        if name in self._tests and not overwrite:
            raise ConfigurationError(f"Merge test {name!r} already registered")
        self._tests[name] = fn

    def get(self, name: str) -> MergeTest:
        if name not in self._tests:
            raise ConfigurationError(
                f"Unknown merge method: {name!r}. Available: {sorted(self._tests)}"
            )
        return self._tests[name]

    def names(self):
        return list(self._tests)


def default_merge_tests() -> MergeTestRegistry:
    registry = MergeTestRegistry()
    registry.register('pvalue', min_adjusted_pvalue)
    registry.register('adjP', proportion_de)
    return registry
